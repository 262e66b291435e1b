"""Reflection over instrumented closures.

`classify` sorts any callable into Plain (nothing to see) or Instrumented
(built by instrumented code). `scope` and `state` read an instrumented
closure's scope chain, and `lift` goes the other way: from a function's
syntax tree and a captured scope to a live function bound to that scope.
"""

from __future__ import annotations

import __future__
import ast
import builtins
import functools
import inspect
import logging
import textwrap
import types
from dataclasses import dataclass
from typing import Callable, Union

from . import runtime, syntax
from .analysis import analyze
from .constants import LIFT, LIFTED, RUNTIME, SCOPE
from .errors import AnalysisError, IncompatibleScopeShape, NotInstrumented
from .instrument import instrument, strip_hook
from .scope import Scope

logger = logging.getLogger(__name__)


# ============================================================
# VARIANTS
# ============================================================


@dataclass(frozen=True)
class Plain:
    """A callable with no scope to report."""

    native: Callable


@dataclass(frozen=True)
class Instrumented:
    """A closure built by instrumented code."""

    native: Callable
    scope_provider: Callable[[], Scope]
    free: tuple[str, ...]
    source: str | None


Function = Union[Plain, Instrumented]


def classify(fn: Callable) -> Function:
    tag = runtime.tag_of(fn)
    if tag is None:
        return Plain(fn)
    if tag.hooked:
        provider = functools.partial(runtime.probe, fn)
    else:
        provider = functools.partial(_tagged_scope, tag)
    return Instrumented(fn, provider, tag.free, tag.source)


def _tagged_scope(tag: runtime.ClosureTag) -> Scope:
    return tag.scope


def _instrumented(fn: Callable) -> Instrumented:
    variant = classify(fn)
    if isinstance(variant, Plain):
        name = getattr(fn, "__qualname__", repr(fn))
        raise NotInstrumented(f"{name} was not built by instrumented code")
    return variant


def scope(fn: Callable) -> Scope:
    """The live scope of `fn`, parent chain included."""
    return _instrumented(fn).scope_provider()


def state(fn: Callable) -> dict[str, object]:
    """Current values of every name `fn` closes over.

    Each name is looked up along the scope chain, so a closure nested two
    levels deep reports the outer function's variables next to its own.
    """
    variant = _instrumented(fn)
    s = variant.scope_provider()
    return {name: s.lookup(name) for name in variant.free}


def source(fn: Callable) -> str | None:
    """Source of the closure as written, or None if it was not recorded."""
    return _instrumented(fn).source


# ============================================================
# LIFT
# ============================================================

_SCAFFOLD = """\
def {lift}({params}):
    _BODY_
    return {result}
"""


def _annotation_names(node: ast.AST) -> list[str]:
    """Names read by a def's parameter and return annotations."""
    if isinstance(node, ast.Lambda):
        return []
    args = node.args
    exprs = [a.annotation for a in args.posonlyargs + args.args + args.kwonlyargs]
    for extra in (args.vararg, args.kwarg):
        if extra is not None:
            exprs.append(extra.annotation)
    exprs.append(node.returns)
    names: list[str] = []
    for expr in exprs:
        if expr is None:
            continue
        for sub in ast.walk(expr):
            if isinstance(sub, ast.Name) and sub.id not in names:
                names.append(sub.id)
    return names


def _check_shape(
    qualname: str, external: list[str], s: Scope, namespace: dict[str, object]
) -> list[str]:
    """Names the tree reads from the chain; raise if `s` does not fit."""
    stray = [n for n in s.names if n not in external]
    if stray:
        raise IncompatibleScopeShape(
            f"scope {s.id} binds {', '.join(stray)}, which {qualname} never reads"
        )
    available = s.available()
    missing = [
        n
        for n in external
        if n not in available and n not in namespace and not hasattr(builtins, n)
    ]
    if missing:
        raise IncompatibleScopeShape(
            f"{qualname} reads {', '.join(missing)}, which scope {s.id} does not bind"
        )
    captured = [n for n in external if n in available]
    if not captured:
        raise IncompatibleScopeShape(f"{qualname} reads nothing from scope {s.id}")
    return captured


def lift(
    tree: ast.AST, s: Scope, namespace: dict[str, object] | None = None
) -> Callable:
    """Rebuild the function in `tree` as a closure over `s`.

    The result reads and writes the same cells as `s` and gets a fresh
    scope whose parent is `s.parent`. Names the tree reads from module scope
    come from `namespace` (a new, empty module namespace by default).
    """
    node = strip_hook(syntax.function_literal(tree))
    info = analyze(node, validate=False)[node]
    if namespace is None:
        namespace = {"__name__": "scopelift.lifted", "__builtins__": builtins}
    external = info.external()
    # annotations are evaluated in the scaffold
    external += [n for n in _annotation_names(node) if n not in external]
    captured = _check_shape(info.qualname, external, s, namespace)

    if isinstance(node, ast.Lambda):
        body = [ast.Assign(targets=[ast.Name(id=LIFTED, ctx=ast.Store())], value=node)]
        result = LIFTED
    else:
        body = [node]
        result = node.name
    text = _SCAFFOLD.format(lift=LIFT, params=", ".join(captured), result=result)
    scaffold = ast.parse(text)
    scaffold.body[0].body[0:1] = body
    instrumented = instrument(ast.fix_missing_locations(scaffold))
    try:
        code = compile(instrumented, "<scopelift lift>", "exec", dont_inherit=True)
    except (SyntaxError, TypeError, ValueError) as e:
        raise AnalysisError(f"cannot compile lifted {info.qualname}: {e}") from e
    exec(code, namespace)
    made = namespace.pop(LIFT)(*[s.lookup(n) for n in captured])

    # names read only by annotations are not captured by the result
    read = [n for n in captured if n in made.__code__.co_freevars]
    fresh = Scope(s.parent, [n for n in s.names if n in read])
    closure = []
    for name in made.__code__.co_freevars:
        if name == SCOPE:
            closure.append(types.CellType(fresh))
        else:
            closure.append(s.cell(name))
    rebuilt = types.FunctionType(
        made.__code__, made.__globals__, made.__name__, made.__defaults__, tuple(closure)
    )
    rebuilt.__kwdefaults__ = made.__kwdefaults__
    rebuilt.__annotations__ = made.__annotations__
    rebuilt.__doc__ = made.__doc__
    rebuilt.__qualname__ = info.name
    tag = runtime.tag_of(made)
    runtime.attach(rebuilt, fresh, tuple(read), tag.source if tag else None)
    logger.debug("lifted %s onto scope %s as %s", info.qualname, s.id, fresh.id)
    return rebuilt


# ============================================================
# DECORATOR
# ============================================================


def reflective(fn: Callable) -> Callable:
    """Recompile a module-level function with its closures instrumented.

    Use as the innermost decorator: the function is rebuilt from its source
    with outer decorators stripped, then handed back to them.
    """
    code = getattr(fn, "__code__", None)
    if code is None:
        raise AnalysisError(f"{fn!r} is not a Python function")
    if code.co_freevars:
        raise AnalysisError(
            f"{fn.__qualname__} is itself a closure; only module-level functions can be made reflective"
        )
    try:
        text = textwrap.dedent(inspect.getsource(fn))
    except (OSError, TypeError) as e:
        raise AnalysisError(f"no source for {fn.__qualname__}") from e
    tree = syntax.parse(text, code.co_filename)
    node = syntax.function_literal(tree)
    if isinstance(node, ast.Lambda):
        raise AnalysisError("reflective() needs a def statement, not a lambda", code.co_firstlineno)
    node.decorator_list = []
    ast.increment_lineno(tree, code.co_firstlineno - 1)
    body: list[ast.stmt] = [node]
    if code.co_flags & __future__.annotations.compiler_flag:
        body.insert(
            0,
            ast.ImportFrom(module="__future__", names=[ast.alias(name="annotations")], level=0),
        )
    rebuilt = instrument(ast.Module(body=body, type_ignores=[]))
    namespace: dict[str, object] = {}
    fn.__globals__.setdefault(RUNTIME, runtime)
    exec(compile(rebuilt, code.co_filename, "exec", dont_inherit=True), fn.__globals__, namespace)
    result = namespace[node.name]
    result.__qualname__ = fn.__qualname__
    result.__module__ = fn.__module__
    return result
