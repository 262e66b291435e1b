"""scopelift: reflection over Python closures - public API."""

from __future__ import annotations

from . import syntax
from .analysis import FunctionScope, ScopeIndex, analyze
from .config import Options, read_pragmas
from .errors import (
    AnalysisError,
    IncompatibleScopeShape,
    NotInstrumented,
    ScopeliftError,
    SerializationError,
)
from .ids import CounterIds, IdGenerator, set_generator, using
from .instrument import instrument
from .reflect import Instrumented, Plain, classify, lift, reflective, scope, source, state
from .runtime import SENTINEL, UNBOUND
from .scope import Scope
from .serialize import deserialize, dumps, loads, serialize
from .syntax import parse, unparse


def transform(source: str, options: Options | None = None) -> str:
    """Source in, instrumented source out. Pragmas in `source` apply first."""
    options = read_pragmas(source, options)
    if options.skip:
        return source
    tree = parse(source)
    return unparse(instrument(tree, analyze(tree), options))


def execute(
    source: str,
    namespace: dict[str, object] | None = None,
    filename: str = "<scopelift>",
) -> dict[str, object]:
    """Instrument and run `source` as a module; return its namespace."""
    options = read_pragmas(source)
    tree = instrument(parse(source, filename), options=options)
    if namespace is None:
        namespace = {"__name__": "scopelift.executed"}
    exec(compile(tree, filename, "exec", dont_inherit=True), namespace)
    return namespace


__all__ = [
    "AnalysisError",
    "CounterIds",
    "FunctionScope",
    "IdGenerator",
    "IncompatibleScopeShape",
    "Instrumented",
    "NotInstrumented",
    "Options",
    "Plain",
    "SENTINEL",
    "Scope",
    "ScopeIndex",
    "ScopeliftError",
    "SerializationError",
    "UNBOUND",
    "analyze",
    "classify",
    "deserialize",
    "dumps",
    "execute",
    "instrument",
    "lift",
    "loads",
    "parse",
    "reflective",
    "scope",
    "serialize",
    "set_generator",
    "source",
    "state",
    "syntax",
    "transform",
    "unparse",
    "using",
]
