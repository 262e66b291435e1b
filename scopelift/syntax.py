"""Syntax tree adapter over the stdlib ast module.

The rest of scopelift reaches the parser, the unparser and tree walking only
through this module. Trees handed in by callers are never modified: anything
that rewrites works on `copy_tree` output.
"""

from __future__ import annotations

import ast
import copy
from typing import Callable

from .errors import AnalysisError

# Node kinds
KIND_FUNCTION = "function"
KIND_IDENTIFIER = "identifier"
KIND_DECLARATION = "declaration"
KIND_BLOCK = "block"
KIND_OTHER = "other"

FUNCTION_NODES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda)
COMPREHENSION_NODES = (ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)
DECLARATION_NODES = (
    ast.Assign,
    ast.AnnAssign,
    ast.AugAssign,
    ast.Import,
    ast.ImportFrom,
    ast.Global,
    ast.Nonlocal,
    ast.ClassDef,
    ast.NamedExpr,
    ast.arg,
)
BLOCK_NODES = (ast.Module, ast.Interactive, ast.Expression) + COMPREHENSION_NODES


def node_kind(node: ast.AST) -> str:
    """Classify a node into the closed set of kinds the analyzer cares about."""
    if isinstance(node, FUNCTION_NODES):
        return KIND_FUNCTION
    if isinstance(node, ast.Name):
        return KIND_IDENTIFIER
    if isinstance(node, DECLARATION_NODES):
        return KIND_DECLARATION
    if isinstance(node, BLOCK_NODES):
        return KIND_BLOCK
    return KIND_OTHER


def parse(source: str, filename: str = "<scopelift>") -> ast.Module:
    try:
        return ast.parse(source, filename=filename)
    except SyntaxError as e:
        raise AnalysisError(e.msg, e.lineno or 0, e.offset or 0) from e


def unparse(tree: ast.AST) -> str:
    return ast.unparse(tree)


def traverse(
    tree: ast.AST,
    enter: Callable[[ast.AST], None] | None = None,
    exit: Callable[[ast.AST], None] | None = None,
) -> None:
    """Call `enter` before and `exit` after visiting each node's children."""
    if enter is not None:
        enter(tree)
    for child in ast.iter_child_nodes(tree):
        traverse(child, enter, exit)
    if exit is not None:
        exit(tree)


def function_literals(tree: ast.AST) -> list[ast.AST]:
    """All function literals in `tree`, outermost first."""
    found: list[ast.AST] = []

    def enter(node: ast.AST) -> None:
        if node_kind(node) == KIND_FUNCTION:
            found.append(node)

    traverse(tree, enter)
    return found


def function_literal(tree: ast.AST) -> ast.FunctionDef | ast.AsyncFunctionDef | ast.Lambda:
    """Match a tree holding exactly one function literal and return it.

    Accepts the literal itself, an expression or expression statement
    wrapping a lambda, or a module whose only statement is one of those.
    """
    node = tree
    if isinstance(node, (ast.Module, ast.Interactive)):
        if len(node.body) != 1:
            raise AnalysisError(
                f"expected a single function literal, found {len(node.body)} statements"
            )
        node = node.body[0]
    if isinstance(node, ast.Expression):
        node = node.body
    if isinstance(node, ast.Expr):
        node = node.value
    if node_kind(node) != KIND_FUNCTION:
        raise AnalysisError(
            f"expected a function literal, got {type(node).__name__}",
            getattr(node, "lineno", 0),
            getattr(node, "col_offset", 0),
        )
    return node


def copy_tree(tree: ast.AST) -> tuple[ast.AST, dict[int, object]]:
    """Deep copy `tree`; the memo maps id(original node) to its copy."""
    memo: dict[int, object] = {}
    return copy.deepcopy(tree, memo), memo


def is_generator(fn: ast.AST) -> bool:
    """True if the function literal's own body yields."""
    body = [fn.body] if isinstance(fn, ast.Lambda) else fn.body
    pending: list[ast.AST] = list(body)
    while pending:
        node = pending.pop()
        if isinstance(node, (ast.Yield, ast.YieldFrom)):
            return True
        if isinstance(node, FUNCTION_NODES + (ast.ClassDef,)):
            continue
        pending.extend(ast.iter_child_nodes(node))
    return False


# ============================================================
# VALIDATION
# ============================================================


_LEAF_TYPES = (ast.AST, str, bytes, int, float, complex, tuple, frozenset)

# list fields that hold bare identifiers instead of nodes
_IDENTIFIER_LISTS = {
    "names": (ast.Global, ast.Nonlocal),
    "kwd_attrs": (ast.MatchClass,),
}


def _as_module(tree: ast.AST) -> ast.Module:
    if isinstance(tree, ast.Module):
        return tree
    if isinstance(tree, ast.Interactive):
        return ast.Module(body=tree.body, type_ignores=[])
    if isinstance(tree, ast.Expression):
        return ast.Module(body=[ast.Expr(value=tree.body)], type_ignores=[])
    if isinstance(tree, ast.stmt):
        return ast.Module(body=[tree], type_ignores=[])
    if isinstance(tree, ast.expr):
        return ast.Module(body=[ast.Expr(value=tree)], type_ignores=[])
    raise AnalysisError(f"cannot analyze a bare {type(tree).__name__} node")


def _foreign_child(node: ast.AST, field: str, value: object) -> object | None:
    """The first value in `node.field` that has no place in a syntax tree."""
    if isinstance(value, list):
        names_ok = isinstance(node, _IDENTIFIER_LISTS.get(field, ()))
        for item in value:
            if item is None or isinstance(item, ast.AST):
                continue
            if names_ok and isinstance(item, str):
                continue
            return item
        return None
    if value is None or value is Ellipsis or isinstance(value, _LEAF_TYPES):
        return None
    return value


def validate(tree: object) -> None:
    """Reject anything that is not a complete, compilable syntax tree."""
    if not isinstance(tree, ast.AST):
        raise AnalysisError(f"expected a syntax tree, got {type(tree).__name__}")
    for node in ast.walk(tree):
        for field, value in ast.iter_fields(node):
            item = _foreign_child(node, field, value)
            if item is not None:
                raise AnalysisError(
                    f"{type(node).__name__}.{field} holds a {type(item).__name__}, not a syntax node",
                    getattr(node, "lineno", 0),
                    getattr(node, "col_offset", 0),
                )
    module = ast.fix_missing_locations(copy.deepcopy(_as_module(tree)))
    try:
        compile(module, "<scopelift>", "exec", dont_inherit=True)
    except SyntaxError as e:
        raise AnalysisError(e.msg, e.lineno or 0, e.offset or 0) from e
    except (TypeError, ValueError) as e:
        raise AnalysisError(str(e)) from e
