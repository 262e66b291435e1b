"""Runtime support for instrumented code.

Generated code imports this module as `__scopelift__` and uses three names
from it: `Scope` to build a closure's scope, `SENTINEL` in the guard at the
top of each hooked function, and `attach` to bind the scope to the function
once it exists.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Callable

from .constants import PROBE, TAG
from .errors import NotInstrumented
from .scope import UNBOUND, Scope

__all__ = ["SENTINEL", "UNBOUND", "ClosureTag", "Scope", "attach", "probe", "tag_of"]


class _Sentinel:
    def __repr__(self) -> str:
        return "<scopelift sentinel>"


SENTINEL = _Sentinel()


@dataclass(frozen=True)
class ClosureTag:
    """Marks a function built by instrumented code."""

    scope: Scope
    free: tuple[str, ...]
    source: str | None
    hooked: bool


def attach(
    fn: Callable,
    scope: Scope,
    free: tuple[str, ...] = (),
    source: str | None = None,
) -> Callable:
    """Bind `scope` to `fn`'s closure cells and tag `fn`."""
    code = fn.__code__
    cells = dict(zip(code.co_freevars, fn.__closure__ or ()))
    scope.adopt(cells)
    hooked = PROBE in code.co_varnames[: code.co_argcount + code.co_kwonlyargcount]
    setattr(fn, TAG, ClosureTag(scope, tuple(free), source, hooked))
    return fn


def tag_of(fn: object) -> ClosureTag | None:
    tag = getattr(fn, TAG, None)
    return tag if isinstance(tag, ClosureTag) else None


def probe(fn: Callable) -> Scope:
    """Invoke `fn` with the sentinel and return the scope it hands back.

    Required parameters get None; the guard returns before any of them is
    looked at.
    """
    target = inspect.unwrap(fn)
    try:
        sig = inspect.signature(target)
    except (TypeError, ValueError) as e:
        raise NotInstrumented(f"{fn!r} has no inspectable signature") from e
    args: list[object] = []
    kwargs: dict[str, object] = {PROBE: SENTINEL}
    for param in sig.parameters.values():
        if param.name == PROBE or param.default is not param.empty:
            continue
        if param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD):
            args.append(None)
        elif param.kind == param.KEYWORD_ONLY:
            kwargs[param.name] = None
    try:
        result = target(*args, **kwargs)
    except Exception as e:
        raise NotInstrumented(f"{fn!r} rejected the reflection sentinel") from e
    if not isinstance(result, Scope):
        raise NotInstrumented(f"{fn!r} did not answer the reflection sentinel")
    return result
