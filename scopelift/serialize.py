"""Serialization of instrumented closures to JSON-compatible dicts.

A closure is written as {"source": ..., "scope": ...}: the function's
source as written and its scope chain. Reading it back parses the source
and lifts it onto the rebuilt chain. Module globals are not written out;
pass the namespace the closure should see when reading.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Callable

from . import reflect, syntax
from .errors import SerializationError
from .scope import Scope


def serialize(fn: Callable) -> dict[str, object]:
    text = reflect.source(fn)
    if text is None:
        raise SerializationError(
            f"{getattr(fn, '__qualname__', fn)!r} was instrumented without recording its source"
        )
    return {"source": text, "scope": reflect.scope(fn).to_dict()}


def deserialize(
    data: Mapping[str, object],
    namespace: dict[str, object] | None = None,
    registry: dict[str, Scope] | None = None,
) -> Callable:
    """Inverse of `serialize`.

    Closures read with the same `registry` share scopes that had the same id
    when they were written.
    """
    try:
        text = data["source"]
        scope_data = data["scope"]
    except (KeyError, TypeError) as e:
        raise SerializationError(f"malformed closure record: {e}") from e
    if not isinstance(text, str) or not isinstance(scope_data, Mapping):
        raise SerializationError("malformed closure record: bad source or scope")
    s = Scope.from_dict(scope_data, registry)
    return reflect.lift(syntax.parse(text), s, namespace)


def dumps(fn: Callable, **kwargs: object) -> str:
    try:
        return json.dumps(serialize(fn), **kwargs)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"scope holds a value JSON cannot represent: {e}") from e


def loads(
    text: str,
    namespace: dict[str, object] | None = None,
    registry: dict[str, Scope] | None = None,
) -> Callable:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SerializationError(f"invalid JSON: {e}") from e
    return deserialize(data, namespace, registry)
