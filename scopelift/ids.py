"""Identity generation for scope objects.

Every Scope gets an id from the current generator. The default is a
process-wide counter, so ids are never reused, even after the scope that
held one is collected. Tests swap in their own generator with `using`.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class IdGenerator:
    """Produces unique identifiers, one per call."""

    def next(self) -> str:
        raise NotImplementedError


class CounterIds(IdGenerator):
    """Monotonic counter ids: gensym_1, gensym_2, ..."""

    def __init__(self, prefix: str = "gensym_", start: int = 1) -> None:
        self.prefix = prefix
        self._count = start
        self._lock = threading.Lock()

    def next(self) -> str:
        with self._lock:
            n = self._count
            self._count += 1
        return self.prefix + str(n)


_generator: IdGenerator = CounterIds()


def next_id() -> str:
    return _generator.next()


def get_generator() -> IdGenerator:
    return _generator


def set_generator(generator: IdGenerator) -> IdGenerator:
    """Install `generator` process-wide and return the one it replaces."""
    global _generator
    previous = _generator
    _generator = generator
    return previous


@contextmanager
def using(generator: IdGenerator) -> Iterator[IdGenerator]:
    previous = set_generator(generator)
    try:
        yield generator
    finally:
        set_generator(previous)
