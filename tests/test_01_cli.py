"""CLI tests for the scopelift entry point.

Test cases live in 01_cli/*.tests files. Format:

    === test name
    args: --stop-at analyze
    source code here
    (stdin for the instrumenter)
    ---
    exit: 0
    stdout-contains: "qualname"
    stderr-empty: true
    ---

Special directives in the input section:
    args:           CLI arguments (first line, required)
    stdin-bytes:    hex-encoded raw bytes instead of text (e.g. "ff fe")

Assertion directives in the expected section:
    exit:                 exact exit code
    exit-not:             exit code must NOT equal this
    stderr:               exact stderr content (trailing newline added)
    stderr-contains:      stderr must contain substring
    stderr-empty:         stderr must be empty
    stdout-contains:      stdout must contain substring
    stdout-not-contains:  stdout must not contain substring
    stdout-empty:         stdout must be empty
"""

import subprocess
import sys
from pathlib import Path

import pytest

from casefiles import discover_cases

CLI_DIR = Path(__file__).parent / "01_cli"
ROOT_DIR = Path(__file__).parent.parent


_DIRECTIVES = [
    ("exit-not:", int),
    ("exit:", int),
    ("stderr-contains:", str),
    ("stderr-empty:", None),
    ("stderr:", str),
    ("stdout-not-contains:", str),
    ("stdout-contains:", str),
    ("stdout-empty:", None),
]


def _parse_spec(input_lines: list[str], expected_lines: list[str]) -> dict:
    """Parse input + expected lines into a test spec dict."""
    spec: dict = {
        "args": [],
        "stdin": None,
        "stdin_bytes": None,
        "assertions": [],
    }
    body_start = 0
    if input_lines and input_lines[0].startswith("args:"):
        args_str = input_lines[0][5:].strip()
        spec["args"] = args_str.split() if args_str else []
        body_start = 1

    remaining = input_lines[body_start:]
    if remaining and remaining[0].startswith("stdin-bytes:"):
        hex_str = remaining[0][len("stdin-bytes:") :].strip()
        spec["stdin_bytes"] = bytes.fromhex(hex_str)
    else:
        spec["stdin"] = "\n".join(remaining)

    for line in expected_lines:
        line = line.strip()
        if not line:
            continue
        for prefix, convert in _DIRECTIVES:
            if line.startswith(prefix):
                value = line[len(prefix) :].strip()
                kind = prefix[:-1]
                spec["assertions"].append((kind, convert(value) if convert else None))
                break
        else:
            raise ValueError(f"unknown directive: {line!r}")
    return spec


def discover_cli_tests() -> list[tuple[str, dict]]:
    """Find all CLI tests across .tests files."""
    return [
        (test_id, _parse_spec(input_lines, expected_lines))
        for test_id, input_lines, expected_lines in discover_cases(CLI_DIR)
    ]


def run_cli(spec: dict) -> subprocess.CompletedProcess[bytes]:
    """Run the scopelift CLI from a test spec."""
    cmd = [sys.executable, "-m", "scopelift", *spec["args"]]
    if spec["stdin_bytes"] is not None:
        stdin_data = spec["stdin_bytes"]
    elif spec["stdin"] is not None:
        stdin_data = spec["stdin"].encode()
    else:
        stdin_data = b""
    return subprocess.run(
        cmd,
        input=stdin_data,
        capture_output=True,
        cwd=ROOT_DIR,
    )


def check_assertions(
    result: subprocess.CompletedProcess[bytes], assertions: list[tuple]
) -> None:
    """Check all assertions against a CLI result."""
    stdout = result.stdout.decode(errors="replace")
    stderr = result.stderr.decode(errors="replace")
    for kind, value in assertions:
        if kind == "exit":
            assert result.returncode == value, (
                f"expected exit {value}, got {result.returncode}\nstderr: {stderr}"
            )
        elif kind == "exit-not":
            assert result.returncode != value, (
                f"expected exit != {value}, got {result.returncode}"
            )
        elif kind == "stderr":
            actual = stderr.rstrip("\n")
            assert actual == value, f"expected stderr {value!r}, got {actual!r}"
        elif kind == "stderr-contains":
            assert value in stderr, f"expected stderr to contain {value!r}, got {stderr!r}"
        elif kind == "stderr-empty":
            assert result.stderr == b"", f"expected empty stderr, got {result.stderr!r}"
        elif kind == "stdout-contains":
            assert value in stdout, f"expected stdout to contain {value!r}, got {stdout!r}"
        elif kind == "stdout-not-contains":
            assert value not in stdout, f"expected stdout without {value!r}, got {stdout!r}"
        elif kind == "stdout-empty":
            assert result.stdout == b"", (
                f"expected empty stdout, got {result.stdout[:200]!r}"
            )


def pytest_generate_tests(metafunc):
    """Parametrize test_cli over all .tests files."""
    if "cli_spec" in metafunc.fixturenames:
        params = [pytest.param(spec, id=test_id) for test_id, spec in discover_cli_tests()]
        metafunc.parametrize("cli_spec", params)


def test_cli(cli_spec: dict) -> None:
    """Run a single CLI test case from a .tests file."""
    result = run_cli(cli_spec)
    check_assertions(result, cli_spec["assertions"])


def test_output_file(tmp_path: Path) -> None:
    out = tmp_path / "out.py"
    source = tmp_path / "in.py"
    source.write_text("def f(x):\n    return lambda: x\n")
    result = subprocess.run(
        [sys.executable, "-m", "scopelift", str(source), "-o", str(out)],
        capture_output=True,
        cwd=ROOT_DIR,
    )
    assert result.returncode == 0, result.stderr
    assert result.stdout == b""
    assert "__scopelift__.attach(" in out.read_text()
