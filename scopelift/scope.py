"""Scope objects: the runtime record of one closure's captured bindings.

A Scope has an id, an optional parent Scope and a fixed set of names. Its
bindings are backed by the same cells the running closure reads, so they are
always current and writes through `bindings` are seen by the closure. A
Scope built before its closure exists (or rebuilt from a persisted record)
holds detached cells of its own.
"""

from __future__ import annotations

import types
from collections.abc import Iterator, Mapping, MutableMapping

from . import ids
from .errors import AnalysisError, SerializationError


class _Unbound:
    """Value read from a cell that has not been assigned yet."""

    _instance: _Unbound | None = None

    def __new__(cls) -> _Unbound:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "<unbound>"

    def __reduce__(self):
        return (_Unbound, ())


UNBOUND = _Unbound()


class ScopeBindings(MutableMapping):
    """Live name -> value view over a scope's cells. Keys are fixed."""

    def __init__(self, scope: Scope) -> None:
        self._scope = scope

    def __getitem__(self, name: str) -> object:
        cell = self._scope._cells[name]
        try:
            return cell.cell_contents
        except ValueError:
            return UNBOUND

    def __setitem__(self, name: str, value: object) -> None:
        if name not in self._scope._cells:
            raise KeyError(name)
        if value is UNBOUND:
            self._clear(name)
            return
        self._scope._cells[name].cell_contents = value

    def __delitem__(self, name: str) -> None:
        if not self._clear(name):
            raise KeyError(name)

    def _clear(self, name: str) -> bool:
        cell = self._scope._cells[name]
        try:
            cell.cell_contents
        except ValueError:
            return False
        del cell.cell_contents
        return True

    def __iter__(self) -> Iterator[str]:
        return iter(self._scope.names)

    def __len__(self) -> int:
        return len(self._scope.names)

    def __repr__(self) -> str:
        return repr(dict(self))


class Scope:
    """One construction of a closing function's scope."""

    def __init__(
        self,
        parent: Scope | None = None,
        names: tuple[str, ...] | list[str] = (),
        scope_id: str | None = None,
    ) -> None:
        self.id: str = scope_id if scope_id is not None else ids.next_id()
        self.parent: Scope | None = parent
        self.names: tuple[str, ...] = tuple(names)
        self._cells: dict[str, types.CellType] = {n: types.CellType() for n in self.names}
        self.bindings = ScopeBindings(self)

    def adopt(self, cells: Mapping[str, types.CellType]) -> None:
        """Back this scope's names with `cells` (usually a closure's)."""
        missing = [n for n in self.names if n not in cells]
        if missing:
            raise AnalysisError(
                "closure does not capture " + ", ".join(missing) + " of scope " + self.id
            )
        for n in self.names:
            self._cells[n] = cells[n]

    def chain(self) -> Iterator[Scope]:
        """This scope, then each ancestor outward."""
        scope: Scope | None = self
        while scope is not None:
            yield scope
            scope = scope.parent

    def cell(self, name: str) -> types.CellType:
        for scope in self.chain():
            if name in scope._cells:
                return scope._cells[name]
        raise KeyError(name)

    def lookup(self, name: str) -> object:
        for scope in self.chain():
            if name in scope._cells:
                return scope.bindings[name]
        raise KeyError(name)

    def available(self) -> set[str]:
        """Every name bound somewhere on the chain."""
        names: set[str] = set()
        for scope in self.chain():
            names.update(scope.names)
        return names

    def flatten(self) -> dict[str, object]:
        """All bindings on the chain; inner scopes shadow outer ones."""
        result: dict[str, object] = {}
        for scope in self.chain():
            for name in scope.names:
                if name not in result:
                    result[name] = scope.bindings[name]
        return result

    def to_dict(self) -> dict[str, object]:
        bindings: dict[str, object] = {}
        unbound: list[str] = []
        for name in self.names:
            value = self.bindings[name]
            if value is UNBOUND:
                unbound.append(name)
            else:
                bindings[name] = value
        result: dict[str, object] = {
            "id": self.id,
            "bindings": bindings,
            "parent": self.parent.to_dict() if self.parent is not None else None,
        }
        if unbound:
            result["unbound"] = unbound
        return result

    @classmethod
    def from_dict(
        cls, data: Mapping[str, object], registry: dict[str, Scope] | None = None
    ) -> Scope:
        """Rebuild a detached scope chain from `to_dict` output.

        Scopes already in `registry` are reused by id, so closures that shared
        a parent when written out share it again when read back.
        """
        if registry is None:
            registry = {}
        try:
            scope_id = data["id"]
            bindings = data["bindings"]
            unbound = data.get("unbound", [])
            parent_data = data.get("parent")
        except (KeyError, TypeError, AttributeError) as e:
            raise SerializationError(f"malformed scope record: {e}") from e
        if not isinstance(scope_id, str) or not isinstance(bindings, Mapping):
            raise SerializationError("malformed scope record: bad id or bindings")
        if not isinstance(unbound, list) or not all(isinstance(n, str) for n in unbound):
            raise SerializationError(f"malformed scope record {scope_id}: bad unbound list")
        repeated = sorted(n for n in set(unbound) if n in bindings or unbound.count(n) > 1)
        if repeated:
            raise SerializationError(
                f"malformed scope record {scope_id}: {', '.join(repeated)} listed twice"
            )
        existing = registry.get(scope_id)
        if existing is not None:
            return existing
        parent = cls.from_dict(parent_data, registry) if parent_data is not None else None
        scope = cls(parent, list(bindings) + list(unbound), scope_id=scope_id)
        for name, value in bindings.items():
            scope.bindings[name] = value
        registry[scope_id] = scope
        return scope

    def __repr__(self) -> str:
        parts = [repr(self.id), repr(self.bindings)]
        if self.parent is not None:
            parts.append("parent=" + repr(self.parent))
        return "Scope(" + ", ".join(parts) + ")"
