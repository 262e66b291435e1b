"""Instrumentation options and the pragma comments that set them."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

logger = logging.getLogger(__name__)

PRAGMA_PREFIX = "scopelift:"


@dataclass(frozen=True)
class Options:
    """What the instrumenter emits.

    hooks: add the sentinel guard so `scope()` asks the live function.
    record_source: keep each closure's source on its tag for `serialize`.
    skip: leave the module untouched.
    """

    hooks: bool = True
    record_source: bool = True
    skip: bool = False


_PRAGMAS = {
    "skip": {"skip": True},
    "no-hooks": {"hooks": False},
    "no-source": {"record_source": False},
}


def read_pragmas(source: str, options: Options | None = None) -> Options:
    """Apply `# scopelift: ...` comments from the leading comment block."""
    result = options or Options()
    for line in source.split("\n"):
        stripped = line.strip()
        if stripped == "":
            continue
        if not stripped.startswith("#"):
            break
        body = stripped[1:].strip()
        if not body.startswith(PRAGMA_PREFIX):
            continue
        for word in body[len(PRAGMA_PREFIX) :].split():
            changes = _PRAGMAS.get(word)
            if changes is None:
                logger.warning("ignoring unknown pragma %r", word)
                continue
            result = replace(result, **changes)
    return result
