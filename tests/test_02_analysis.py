"""Free-variable analysis tests.

Test cases live in 02_analysis/*.tests files. Format:

    === test name
    python source
    ---
    qualname: free names | own names
    ---

Each expected line lists one closing function; functions not listed must
not be closing. `(none)` expects no closing functions at all, and
`error: message` expects an AnalysisError whose message contains `message`.
"""

import ast
from pathlib import Path

import pytest

from casefiles import discover_cases
from scopelift import syntax
from scopelift.analysis import analyze
from scopelift.errors import AnalysisError

ANALYSIS_DIR = Path(__file__).parent / "02_analysis"


def discover_analysis_tests() -> list[tuple[str, str, str]]:
    return [
        (test_id, "\n".join(input_lines), "\n".join(expected_lines).strip())
        for test_id, input_lines, expected_lines in discover_cases(ANALYSIS_DIR)
    ]


def pytest_generate_tests(metafunc):
    """Parametrize test_analysis over all .tests files."""
    if "analysis_input" in metafunc.fixturenames:
        params = [
            pytest.param(source, expected, id=test_id)
            for test_id, source, expected in discover_analysis_tests()
        ]
        metafunc.parametrize("analysis_input,analysis_expected", params)


def _names(text: str) -> set[str]:
    return {n.strip() for n in text.split(",") if n.strip()}


def _parse_expected(expected: str) -> dict[str, tuple[set[str], set[str]]]:
    result: dict[str, tuple[set[str], set[str]]] = {}
    if expected == "(none)":
        return result
    for line in expected.split("\n"):
        qualname, _, rest = line.partition(": ")
        free, _, own = rest.partition("|")
        result[qualname.strip()] = (_names(free), _names(own))
    return result


def test_analysis(analysis_input: str, analysis_expected: str) -> None:
    if analysis_expected.startswith("error:"):
        message = analysis_expected[len("error:") :].strip()
        with pytest.raises(AnalysisError) as info:
            analyze(syntax.parse(analysis_input))
        assert message in info.value.msg
        return
    index = analyze(syntax.parse(analysis_input))
    actual = {
        info.qualname: (set(info.free), set(info.captures)) for info in index.closing()
    }
    assert actual == _parse_expected(analysis_expected)


class TestScopeIndex:
    SOURCE = """\
def f(x, y):
    def middle(z):
        return lambda: x + y + z
    return middle
"""

    def test_keyed_by_node_identity(self):
        tree = syntax.parse(self.SOURCE)
        index = analyze(tree)
        f = tree.body[0]
        middle = f.body[0]
        assert index[f].closing is False
        assert index[middle].qualname == "f.middle"
        assert index.get(ast.parse(self.SOURCE).body[0]) is None

    def test_children_follow_nesting(self):
        index = analyze(syntax.parse(self.SOURCE))
        (root,) = index.roots
        assert root.name == "f"
        assert [c.name for c in root.children] == ["middle"]
        assert [c.name for c in root.children[0].children] == ["<lambda>"]
        assert root.children[0].children[0].parent is root.children[0]

    def test_free_names_keep_first_reference_order(self):
        index = analyze(syntax.parse(self.SOURCE))
        assert index.find("f.middle.<lambda>").free == ["x", "y", "z"]

    def test_params_and_locals(self):
        index = analyze(syntax.parse("def f(a, /, b, *c, d, **e):\n    g = 1\n    return g\n"))
        info = index.find("f")
        assert info.params == ["a", "b", "c", "d", "e"]
        assert info.locals == ["a", "b", "c", "d", "e", "g"]

    def test_globals_are_recorded(self):
        index = analyze(syntax.parse("def f():\n    return len(items)\n"))
        assert index.find("f").globals == ["len", "items"]

    def test_to_dict_is_json_ready(self):
        data = analyze(syntax.parse(self.SOURCE)).to_dict()
        names = [fn["qualname"] for fn in data["functions"]]
        assert names == ["f", "f.middle", "f.middle.<lambda>"]
        assert data["functions"][1]["captures"] == ["x", "y"]
        assert data["functions"][0]["closing"] is False

    def test_input_tree_is_not_modified(self):
        tree = syntax.parse(self.SOURCE)
        before = ast.dump(tree)
        analyze(tree)
        assert ast.dump(tree) == before


class TestAnalysisErrors:
    def test_rejects_non_tree(self):
        with pytest.raises(AnalysisError):
            analyze("def f(): pass")

    def test_rejects_foreign_children(self):
        tree = syntax.parse("def f():\n    pass\n")
        tree.body.append("not a node")
        with pytest.raises(AnalysisError) as info:
            analyze(tree)
        assert "Module.body" in info.value.msg

    def test_syntax_error_has_location(self):
        with pytest.raises(AnalysisError) as info:
            syntax.parse("def f(:\n    pass\n")
        assert info.value.lineno == 1

    def test_bare_function_literal_is_accepted(self):
        tree = syntax.parse("def g(a):\n    return lambda: a\n")
        index = analyze(tree.body[0])
        assert index.find("g.<lambda>").free == ["a"]

    def test_reserved_names_are_ignored(self):
        tree = syntax.parse(
            "def f(__scopelift_scope__):\n    return lambda: __scopelift_scope__\n"
        )
        assert analyze(tree).closing() == []
