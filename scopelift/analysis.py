"""Free-variable analysis for nested function literals.

Walks a syntax tree and computes, for every function literal (def, async
def, lambda), the names it reads from enclosing function scopes. A function
that reads at least one such name is a closing function; everything else is
left alone by the instrumenter.

Scopes are blocks on a stack:
- root: the module level. Names resolving here, or not at all, are globals.
- function: params plus names bound in the body.
- comprehension: its iteration targets.
- class: names bound in the class body, invisible to nested functions.

A name read in block B is resolved by walking outward from B. Every
function block passed on the way gets the name as free; the outermost of
those (the one directly inside the resolving block) also records it as a
capture, i.e. a field of its own scope object.

Reserved scopelift names are ignored, so analyzing instrumented output gives
the same answer as analyzing the original.
"""

from __future__ import annotations

import ast
import logging
from dataclasses import dataclass, field

from . import syntax
from .constants import is_reserved
from .errors import AnalysisError

logger = logging.getLogger(__name__)

BLOCK_ROOT = "root"
BLOCK_FUNCTION = "function"
BLOCK_COMPREHENSION = "comprehension"
BLOCK_CLASS = "class"


@dataclass(eq=False)
class FunctionScope:
    """Static facts about one function literal."""

    node: ast.AST = field(repr=False)
    name: str
    qualname: str
    lineno: int
    params: list[str]
    locals: list[str]
    free: list[str] = field(default_factory=list)
    captures: list[str] = field(default_factory=list)
    globals: list[str] = field(default_factory=list)
    parent: FunctionScope | None = field(default=None, repr=False)
    children: list[FunctionScope] = field(default_factory=list, repr=False)

    @property
    def closing(self) -> bool:
        return len(self.free) > 0

    def external(self) -> list[str]:
        """Names read from outside this function: free names, then globals."""
        return self.free + [n for n in self.globals if n not in self.free]

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "qualname": self.qualname,
            "lineno": self.lineno,
            "params": list(self.params),
            "locals": list(self.locals),
            "free": list(self.free),
            "captures": list(self.captures),
            "globals": list(self.globals),
            "closing": self.closing,
        }


class ScopeIndex:
    """Function literal node -> FunctionScope, keyed by node identity."""

    def __init__(self) -> None:
        self.functions: dict[ast.AST, FunctionScope] = {}
        self.roots: list[FunctionScope] = []

    def add(self, info: FunctionScope) -> None:
        self.functions[info.node] = info

    def get(self, node: ast.AST) -> FunctionScope | None:
        return self.functions.get(node)

    def __getitem__(self, node: ast.AST) -> FunctionScope:
        return self.functions[node]

    def __contains__(self, node: object) -> bool:
        return node in self.functions

    def __iter__(self):
        return iter(self.functions.values())

    def __len__(self) -> int:
        return len(self.functions)

    def closing(self) -> list[FunctionScope]:
        return [info for info in self.functions.values() if info.closing]

    def find(self, qualname: str) -> FunctionScope | None:
        for info in self.functions.values():
            if info.qualname == qualname:
                return info
        return None

    def remap(self, memo: dict[int, object]) -> ScopeIndex:
        """The same index keyed by the copies `syntax.copy_tree` made."""
        result = ScopeIndex()
        result.roots = self.roots
        for node, info in self.functions.items():
            copied = memo.get(id(node))
            if copied is None:
                raise AnalysisError(
                    f"annotations for {info.qualname} do not belong to this tree",
                    info.lineno,
                )
            result.functions[copied] = info
        return result

    def to_dict(self) -> dict[str, object]:
        return {"functions": [info.to_dict() for info in self.functions.values()]}


# ============================================================
# DECLARATIONS
# ============================================================


def _param_names(args: ast.arguments) -> list[str]:
    names = [a.arg for a in args.posonlyargs + args.args]
    if args.vararg is not None:
        names.append(args.vararg.arg)
    names.extend(a.arg for a in args.kwonlyargs)
    if args.kwarg is not None:
        names.append(args.kwarg.arg)
    return names


class _Declarations(ast.NodeVisitor):
    """Names bound directly in one block, without entering nested scopes."""

    def __init__(self) -> None:
        self.names: list[str] = []
        self.globals: set[str] = set()
        self.nonlocals: set[str] = set()
        self.in_comprehension = False

    def bind(self, name: str) -> None:
        if name not in self.names and not is_reserved(name):
            self.names.append(name)

    def declared(self) -> set[str]:
        return set(self.names) - self.globals - self.nonlocals

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, (ast.Store, ast.Del)) and not self.in_comprehension:
            self.bind(node.id)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        # binds in the enclosing block even from inside a comprehension
        self.bind(node.target.id)
        self.visit(node.value)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        self.bind(node.name)
        for d in node.decorator_list:
            self.visit(d)
        self._visit_defaults(node.args)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda) -> None:
        self._visit_defaults(node.args)

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        self.bind(node.name)
        for e in node.decorator_list + node.bases:
            self.visit(e)
        for kw in node.keywords:
            self.visit(kw.value)

    def _visit_defaults(self, args: ast.arguments) -> None:
        for d in args.defaults:
            self.visit(d)
        for d in args.kw_defaults:
            if d is not None:
                self.visit(d)

    def _visit_comprehension(self, node: ast.AST) -> None:
        saved = self.in_comprehension
        self.in_comprehension = True
        self.generic_visit(node)
        self.in_comprehension = saved

    visit_ListComp = _visit_comprehension
    visit_SetComp = _visit_comprehension
    visit_DictComp = _visit_comprehension
    visit_GeneratorExp = _visit_comprehension

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self.bind(alias.asname or alias.name.split(".")[0])

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            if alias.name != "*":
                self.bind(alias.asname or alias.name)

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.name:
            self.bind(node.name)
        self.generic_visit(node)

    def visit_Global(self, node: ast.Global) -> None:
        self.globals.update(node.names)

    def visit_Nonlocal(self, node: ast.Nonlocal) -> None:
        self.nonlocals.update(node.names)

    def visit_MatchAs(self, node: ast.MatchAs) -> None:
        if node.name:
            self.bind(node.name)
        self.generic_visit(node)

    def visit_MatchStar(self, node: ast.MatchStar) -> None:
        if node.name:
            self.bind(node.name)

    def visit_MatchMapping(self, node: ast.MatchMapping) -> None:
        if node.rest:
            self.bind(node.rest)
        self.generic_visit(node)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        self.visit(node.target)
        if node.value is not None:
            self.visit(node.value)


def _declarations(body: list[ast.AST], params: list[str] | None = None) -> _Declarations:
    decl = _Declarations()
    for p in params or []:
        decl.bind(p)
    for node in body:
        decl.visit(node)
    return decl


# ============================================================
# RESOLUTION
# ============================================================


@dataclass
class _Block:
    kind: str
    declared: set[str]
    globals: set[str]
    info: FunctionScope | None = None


class _Resolver(ast.NodeVisitor):
    def __init__(self, index: ScopeIndex) -> None:
        self.index = index
        self.stack: list[_Block] = []
        self.functions: list[FunctionScope] = []
        self.qual: list[str] = []
        self.lazy_annotations = False

    def run(self, tree: ast.AST) -> None:
        self.lazy_annotations = _postpones_annotations(tree)
        self.stack.append(_Block(BLOCK_ROOT, set(), set()))
        self.visit(tree)
        self.stack.pop()

    def _resolve(self, name: str) -> None:
        if is_reserved(name):
            return
        innermost = self.stack[-1]
        traversed: list[FunctionScope] = []
        for block in reversed(self.stack):
            if block.kind == BLOCK_CLASS and block is not innermost:
                continue
            if block.kind == BLOCK_ROOT or name in block.globals:
                break
            if name in block.declared:
                for info in traversed:
                    if name not in info.free:
                        info.free.append(name)
                if traversed and name not in traversed[-1].captures:
                    traversed[-1].captures.append(name)
                return
            if block.info is not None:
                traversed.append(block.info)
        for info in traversed:
            if name not in info.globals:
                info.globals.append(name)

    def _visit_defaults(self, args: ast.arguments) -> None:
        for d in args.defaults:
            self.visit(d)
        for d in args.kw_defaults:
            if d is not None:
                self.visit(d)

    def _enter_function(self, node: ast.AST, name: str, body: list[ast.AST]) -> None:
        params = _param_names(node.args)
        decl = _declarations(body, params)
        parent = self.functions[-1] if self.functions else None
        info = FunctionScope(
            node=node,
            name=name,
            qualname=".".join(self.qual + [name]),
            lineno=getattr(node, "lineno", 0),
            params=params,
            locals=[n for n in decl.names if n in decl.declared()],
            parent=parent,
        )
        if parent is None:
            self.index.roots.append(info)
        else:
            parent.children.append(info)
        self.index.add(info)
        self.stack.append(_Block(BLOCK_FUNCTION, decl.declared(), decl.globals, info))
        self.functions.append(info)
        self.qual.append(name)
        for n in sorted(decl.nonlocals):
            self._resolve(n)
        for stmt in body:
            self.visit(stmt)
        self.qual.pop()
        self.functions.pop()
        self.stack.pop()

    def _visit_annotations(self, node: ast.FunctionDef) -> None:
        if self.lazy_annotations:
            return
        args = node.args
        params = args.posonlyargs + args.args + args.kwonlyargs
        for extra in (args.vararg, args.kwarg):
            if extra is not None:
                params.append(extra)
        for a in params:
            if a.annotation is not None:
                self.visit(a.annotation)
        if node.returns is not None:
            self.visit(node.returns)

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        for d in node.decorator_list:
            self.visit(d)
        self._visit_defaults(node.args)
        # evaluated by the def statement, in the enclosing block
        self._visit_annotations(node)
        self._enter_function(node, node.name, node.body)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda) -> None:
        self._visit_defaults(node.args)
        self._enter_function(node, "<lambda>", [node.body])

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        for e in node.decorator_list + node.bases:
            self.visit(e)
        for kw in node.keywords:
            self.visit(kw.value)
        decl = _declarations(node.body)
        self.stack.append(_Block(BLOCK_CLASS, decl.declared(), decl.globals))
        self.qual.append(node.name)
        for n in sorted(decl.nonlocals):
            self._resolve(n)
        for stmt in node.body:
            self.visit(stmt)
        self.qual.pop()
        self.stack.pop()

    def _visit_comprehension(self, node: ast.AST) -> None:
        generators = node.generators
        # the first iterable is evaluated in the enclosing block
        self.visit(generators[0].iter)
        targets = _Declarations()
        for gen in generators:
            targets.visit(gen.target)
        self.stack.append(_Block(BLOCK_COMPREHENSION, set(targets.names), set()))
        for i, gen in enumerate(generators):
            if i > 0:
                self.visit(gen.iter)
            self.visit(gen.target)
            for cond in gen.ifs:
                self.visit(cond)
        if isinstance(node, ast.DictComp):
            self.visit(node.key)
            self.visit(node.value)
        else:
            self.visit(node.elt)
        self.stack.pop()

    visit_ListComp = _visit_comprehension
    visit_SetComp = _visit_comprehension
    visit_DictComp = _visit_comprehension
    visit_GeneratorExp = _visit_comprehension

    def visit_Name(self, node: ast.Name) -> None:
        if not isinstance(node.id, str):
            raise AnalysisError(
                "identifier without a name", getattr(node, "lineno", 0), getattr(node, "col_offset", 0)
            )
        if isinstance(node.ctx, ast.Load):
            self._resolve(node.id)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        # annotations on function locals are never evaluated
        if not self.lazy_annotations and self.stack[-1].kind in (BLOCK_ROOT, BLOCK_CLASS):
            self.visit(node.annotation)
        self.visit(node.target)
        if node.value is not None:
            self.visit(node.value)

    def visit_arg(self, node: ast.arg) -> None:
        pass


def _postpones_annotations(tree: ast.AST) -> bool:
    """True for a module that starts with `from __future__ import annotations`."""
    if not isinstance(tree, ast.Module):
        return False
    for stmt in tree.body:
        if isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Constant):
            continue
        if not (isinstance(stmt, ast.ImportFrom) and stmt.module == "__future__"):
            return False
        if any(alias.name == "annotations" for alias in stmt.names):
            return True
    return False


def analyze(tree: ast.AST, validate: bool = True) -> ScopeIndex:
    """Compute free variables for every function literal in `tree`.

    `tree` may be a module, a statement, or a bare function literal. With
    `validate` the tree must also compile on its own; lifting turns this
    off because a lone closure body may mention `nonlocal` names that only
    exist in the scope it is being lifted onto.
    """
    if validate:
        syntax.validate(tree)
    elif not isinstance(tree, ast.AST):
        raise AnalysisError(f"expected a syntax tree, got {type(tree).__name__}")
    index = ScopeIndex()
    _Resolver(index).run(tree)
    for info in index.closing():
        logger.debug(
            "%s closes over %s (own: %s)",
            info.qualname,
            ", ".join(info.free),
            ", ".join(info.captures) or "-",
        )
    return index
