"""Closure instrumentation.

Rewrites every closing function literal so that building it also builds a
Scope, and so the function hands that Scope back when called with the
reflection sentinel. A closing def

    def C(z):
        return x + y + z

becomes

    def __scopelift_make_C__(__scopelift_scope__):
        def C(z, *, __scopelift_probe__=None):
            if __scopelift_probe__ is __scopelift__.SENTINEL:
                return __scopelift_scope__
            return x + y + z
        return __scopelift__.attach(C, __scopelift_scope__, ('x', 'y'), '...')
    C = __scopelift_make_C__(__scopelift__.Scope(PARENT, ('x', 'y')))
    del __scopelift_make_C__

and a closing lambda becomes an immediately invoked lambda doing the same.
C stays lexically where it was, so its free names still resolve to the
enclosing cells and late binding is unchanged. PARENT is the scope parameter
of the nearest instrumented enclosing function, or None.

Decorators move to the assignment and apply in the same order. Generators
and coroutines get no guard, since calling them does not run their body.
Non-closing functions pass through unmodified.
"""

from __future__ import annotations

import ast
import copy
import logging

from . import syntax
from .analysis import FunctionScope, ScopeIndex, analyze
from .config import Options
from .constants import MAKE_PREFIX, PROBE, RUNTIME, RUNTIME_MODULE, SCOPE, make_name

logger = logging.getLogger(__name__)

# ============================================================
# TEMPLATES
# ============================================================

_NAMES = {"scope": SCOPE, "runtime": RUNTIME, "probe": PROBE, "module": RUNTIME_MODULE}

_DEF_TEMPLATE = """\
def {make}({scope}):
    _INNER_
    return {runtime}.attach({name}, {scope}, {free}, {source})
{name} = _SITE_
del {make}
"""

_REBIND_TEMPLATE = "nonlocal {name}"

_SITE_TEMPLATE = "{make}({runtime}.Scope(_PARENT_, {captures}))"

_LAMBDA_TEMPLATE = (
    "(lambda {scope}: {runtime}.attach(_INNER_, {scope}, {free}, {source}))"
    "({runtime}.Scope(_PARENT_, {captures}))"
)

_HOOK_TEMPLATE = """\
if {probe} is {runtime}.SENTINEL:
    return {scope}
"""

_LAMBDA_HOOK_TEMPLATE = "{scope} if {probe} is {runtime}.SENTINEL else _BODY_"

_IMPORT_TEMPLATE = "import {module} as {runtime}"

_POSITION = ("lineno", "col_offset", "end_lineno", "end_col_offset")


class _Substitute(ast.NodeTransformer):
    """Replace placeholder names (and placeholder statements) with nodes."""

    def __init__(self, subs: dict[str, ast.AST]) -> None:
        self.subs = subs

    def visit_Expr(self, node: ast.Expr) -> ast.AST:
        if isinstance(node.value, ast.Name) and node.value.id in self.subs:
            return self.subs[node.value.id]
        return self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> ast.AST:
        return self.subs.get(node.id, node)


def _build(text: str, origin: ast.AST | None, subs: dict[str, ast.AST], mode: str = "exec"):
    """Parse a template, place it at `origin`, then splice in `subs`."""
    tree = ast.parse(text, mode=mode)
    if origin is not None and hasattr(origin, "lineno"):
        for node in ast.walk(tree):
            if "lineno" in node._attributes:
                for attr in _POSITION:
                    setattr(node, attr, getattr(origin, attr, None))
    tree = _Substitute(subs).visit(tree)
    return tree.body


# ============================================================
# RECOGNIZING GENERATED CODE
# ============================================================


def _hooked(fn: ast.AST) -> bool:
    return any(a.arg == PROBE for a in fn.args.kwonlyargs)


def _is_def_wrapper(node: ast.AST) -> bool:
    return isinstance(node, ast.FunctionDef) and node.name.startswith(MAKE_PREFIX)


def _is_lambda_wrapper(node: ast.Lambda) -> bool:
    args = node.args
    return (
        len(args.args) == 1
        and args.args[0].arg == SCOPE
        and not (args.posonlyargs or args.kwonlyargs or args.vararg or args.kwarg)
    )


def _is_guard(test: ast.AST) -> bool:
    return (
        isinstance(test, ast.Compare)
        and isinstance(test.left, ast.Name)
        and test.left.id == PROBE
    )


def _is_docstring(stmt: ast.stmt) -> bool:
    return (
        isinstance(stmt, ast.Expr)
        and isinstance(stmt.value, ast.Constant)
        and isinstance(stmt.value.value, str)
    )


def strip_hook(fn: ast.AST) -> ast.AST:
    """Copy of a function literal without the sentinel guard and parameter."""
    copied, _ = syntax.copy_tree(fn)
    if not _hooked(copied):
        return copied
    args = copied.args
    at = [a.arg for a in args.kwonlyargs].index(PROBE)
    del args.kwonlyargs[at]
    del args.kw_defaults[at]
    if isinstance(copied, ast.Lambda):
        if isinstance(copied.body, ast.IfExp) and _is_guard(copied.body.test):
            copied.body = copied.body.orelse
    else:
        copied.body = [
            s for s in copied.body if not (isinstance(s, ast.If) and _is_guard(s.test))
        ]
    return copied


# ============================================================
# INSTRUMENTER
# ============================================================


class _Instrumenter(ast.NodeTransformer):
    def __init__(self, index: ScopeIndex, options: Options) -> None:
        self.index = index
        self.options = options
        # `.parent` hops from the visible scope parameter to the scope new
        # closures link to; None while no instrumented function encloses us
        self.hops: int | None = None
        self.done: set[int] = set()
        self.wrapped = 0
        self.in_function = False

    def _parent_ref(self) -> ast.expr:
        if self.hops is None:
            return ast.Constant(value=None)
        ref: ast.expr = ast.Name(id=SCOPE, ctx=ast.Load())
        for _ in range(self.hops):
            ref = ast.Attribute(value=ref, attr="parent", ctx=ast.Load())
        return ref

    def _plan(self, node: ast.AST) -> tuple[FunctionScope | None, bool]:
        """(scope info if `node` needs wrapping, whether its body sees a scope)."""
        if id(node) in self.done or _hooked(node):
            return None, True
        info = self.index.get(node)
        if info is None or not info.closing:
            return None, False
        return info, True

    def _source(self, node: ast.AST) -> str | None:
        if not self.options.record_source:
            return None
        if isinstance(node, ast.Lambda):
            return syntax.unparse(node)
        bare = copy.copy(node)
        bare.decorator_list = []
        return syntax.unparse(bare)

    def _visit_arguments(self, args: ast.arguments, scoped: bool) -> None:
        # defaults of a wrapped function run inside its wrapper, where the
        # visible scope is the function's own; its parent is ours
        hops = self.hops
        if scoped and hops is not None:
            self.hops = 1
        args.defaults = [self.visit(d) for d in args.defaults]
        args.kw_defaults = [d if d is None else self.visit(d) for d in args.kw_defaults]
        self.hops = hops

    def _visit_body(self, stmts: list[ast.stmt]) -> list[ast.stmt]:
        result: list[ast.stmt] = []
        for stmt in stmts:
            new = self.visit(stmt)
            if new is None:
                continue
            if isinstance(new, list):
                result.extend(new)
            else:
                result.append(new)
        return result

    def _add_hook(self, node: ast.FunctionDef) -> None:
        guard = _build(_HOOK_TEMPLATE.format(**_NAMES), node, {})
        at = 1 if node.body and _is_docstring(node.body[0]) else 0
        node.body = node.body[:at] + guard + node.body[at:]
        node.args.kwonlyargs.append(ast.arg(arg=PROBE))
        node.args.kw_defaults.append(ast.Constant(value=None))

    def _add_lambda_hook(self, node: ast.Lambda) -> None:
        text = _LAMBDA_HOOK_TEMPLATE.format(**_NAMES)
        node.body = _build(text, node.body, {"_BODY_": node.body}, mode="eval")
        node.args.kwonlyargs.append(ast.arg(arg=PROBE))
        node.args.kw_defaults.append(ast.Constant(value=None))

    def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.AST | list[ast.stmt]:
        if _is_def_wrapper(node):
            for stmt in node.body:
                if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    self.done.add(id(stmt))
            node.body = self._visit_body(node.body)
            return node
        info, scoped = self._plan(node)
        source = self._source(node) if info is not None else None
        # a function reading its own name must see the decorated binding
        rebind = info is not None and self.in_function and node.name in info.free
        parent = self._parent_ref()
        decorators = [self.visit(d) for d in node.decorator_list]
        self._visit_arguments(node.args, scoped)
        hops, in_function = self.hops, self.in_function
        if scoped:
            self.hops = 0
        self.in_function = True
        node.body = self._visit_body(node.body)
        self.hops, self.in_function = hops, in_function
        if info is None:
            node.decorator_list = decorators
            return node
        node.decorator_list = []
        if (
            self.options.hooks
            and isinstance(node, ast.FunctionDef)
            and not syntax.is_generator(node)
        ):
            self._add_hook(node)
        return self._wrap_def(node, info, parent, decorators, source, rebind)

    visit_AsyncFunctionDef = visit_FunctionDef

    def _wrap_def(
        self,
        node: ast.FunctionDef | ast.AsyncFunctionDef,
        info: FunctionScope,
        parent: ast.expr,
        decorators: list[ast.expr],
        source: str | None,
        rebind: bool,
    ) -> list[ast.stmt]:
        make = make_name(node.name)
        site = _build(
            _SITE_TEMPLATE.format(make=make, captures=repr(tuple(info.captures)), **_NAMES),
            node,
            {"_PARENT_": parent},
            mode="eval",
        )
        for d in reversed(decorators):
            site = ast.Call(func=d, args=[site], keywords=[])
        text = _DEF_TEMPLATE.format(
            make=make,
            name=node.name,
            free=repr(tuple(info.free)),
            source=repr(source),
            **_NAMES,
        )
        self.wrapped += 1
        logger.debug("wrapped %s, own fields %s", info.qualname, info.captures)
        stmts = _build(text, node, {"_INNER_": node, "_SITE_": site})
        if rebind:
            stmts[0].body[:0] = _build(_REBIND_TEMPLATE.format(name=node.name), node, {})
        return stmts

    def visit_ClassDef(self, node: ast.ClassDef) -> ast.AST:
        in_function = self.in_function
        self.in_function = False
        node = self.generic_visit(node)
        self.in_function = in_function
        return node

    def visit_Lambda(self, node: ast.Lambda) -> ast.AST:
        if _is_lambda_wrapper(node):
            call = node.body
            if isinstance(call, ast.Call) and call.args and isinstance(call.args[0], ast.Lambda):
                self.done.add(id(call.args[0]))
            node.body = self.visit(node.body)
            return node
        info, scoped = self._plan(node)
        source = self._source(node) if info is not None else None
        parent = self._parent_ref()
        self._visit_arguments(node.args, scoped)
        hops = self.hops
        if scoped:
            self.hops = 0
        node.body = self.visit(node.body)
        self.hops = hops
        if info is None:
            return node
        if self.options.hooks and not syntax.is_generator(node):
            self._add_lambda_hook(node)
        text = _LAMBDA_TEMPLATE.format(
            free=repr(tuple(info.free)),
            source=repr(source),
            captures=repr(tuple(info.captures)),
            **_NAMES,
        )
        self.wrapped += 1
        logger.debug("wrapped %s at line %d, own fields %s", info.qualname, info.lineno, info.captures)
        return _build(text, node, {"_INNER_": node, "_PARENT_": parent}, mode="eval")


def _insert_import(module: ast.Module) -> None:
    for stmt in module.body:
        if isinstance(stmt, ast.Import) and any(a.asname == RUNTIME for a in stmt.names):
            return
    body = module.body
    at = 1 if body and _is_docstring(body[0]) else 0
    while at < len(body) and isinstance(body[at], ast.ImportFrom) and body[at].module == "__future__":
        at += 1
    origin = body[at] if at < len(body) else None
    body[at:at] = _build(_IMPORT_TEMPLATE.format(**_NAMES), origin, {})


def instrument(
    tree: ast.AST,
    annotations: ScopeIndex | None = None,
    options: Options | None = None,
) -> ast.AST:
    """Return an instrumented copy of `tree`; `tree` itself is not touched.

    `annotations` must come from `analyze(tree)`; without them the copy is
    analyzed here.
    """
    options = options or Options()
    copied, memo = syntax.copy_tree(tree)
    if options.skip:
        return copied
    if annotations is None:
        index = analyze(copied)
    else:
        index = annotations.remap(memo)
    instrumenter = _Instrumenter(index, options)
    result = instrumenter.visit(copied)
    if instrumenter.wrapped and isinstance(result, ast.Module):
        _insert_import(result)
    return ast.fix_missing_locations(result)
