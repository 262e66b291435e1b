"""Pytest configuration for the scopelift test suite."""

import sys
from pathlib import Path

import pytest

# Add the repository root to path for scopelift imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from scopelift import ids  # noqa: E402


@pytest.fixture
def fixed_ids():
    """Deterministic scope ids: s1, s2, ... for the duration of one test."""
    with ids.using(ids.CounterIds(prefix="s")) as generator:
        yield generator
