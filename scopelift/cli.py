"""Command-line entry point: instrument Python source for closure reflection."""

from __future__ import annotations

import ast
import json
import logging
import sys
from dataclasses import dataclass, replace

from . import syntax
from .analysis import analyze
from .config import Options, read_pragmas
from .errors import AnalysisError
from .instrument import instrument

PHASES: list[str] = ["parse", "analyze", "instrument"]

USAGE: str = """\
scopelift [OPTIONS] [INPUT] [-o OUTPUT]

Options:
  --stop-at PHASE     Stop after phase: parse, analyze, instrument
  --no-hooks          Do not add the reflection guard to closures
  --no-source         Do not record closure source (disables serialize)
  --verbose           Log analysis and instrumentation decisions to stderr
  -o, --output FILE   Write output to FILE instead of stdout
  --help              Show this help message
"""


@dataclass
class Args:
    stop_at: str = "instrument"
    hooks: bool = True
    record_source: bool = True
    verbose: bool = False
    help: bool = False
    input_file: str | None = None
    output_file: str | None = None


class UsageError(Exception):
    pass


def parse_args(argv: list[str]) -> Args:
    args = Args()
    i = 0
    while i < len(argv):
        arg = argv[i]
        if arg == "--stop-at" or arg == "-o" or arg == "--output":
            if i + 1 >= len(argv):
                raise UsageError(arg + " requires an argument")
            if arg == "--stop-at":
                args.stop_at = argv[i + 1]
            else:
                args.output_file = argv[i + 1]
            i += 2
            continue
        if arg == "--help" or arg == "-h":
            args.help = True
        elif arg == "--no-hooks":
            args.hooks = False
        elif arg == "--no-source":
            args.record_source = False
        elif arg == "--verbose":
            args.verbose = True
        elif arg.startswith("-") and arg != "-":
            raise UsageError("unknown flag '" + arg + "'")
        elif args.input_file is not None:
            raise UsageError("unexpected argument '" + arg + "'")
        else:
            args.input_file = arg
        i += 1
    if args.stop_at not in PHASES:
        raise UsageError("unknown phase '" + args.stop_at + "'")
    return args


def read_source(input_file: str | None) -> str:
    if input_file is not None and input_file != "-":
        try:
            with open(input_file, "rb") as f:
                raw = f.read()
        except OSError:
            raise UsageError("cannot open '" + input_file + "'") from None
    else:
        raw = sys.stdin.buffer.read()
    try:
        return raw.decode("utf-8")
    except ValueError:
        raise UsageError("invalid utf-8 in input") from None


def write_output(output: str, output_file: str | None) -> int:
    if output_file is not None:
        try:
            with open(output_file, "w") as f:
                f.write(output + "\n")
        except OSError:
            print("error: cannot write '" + output_file + "'", file=sys.stderr)
            return 1
        return 0
    print(output)
    return 0


def run_pipeline(source: str, stop_at: str, options: Options) -> str:
    """Run phases up to `stop_at` and return what that phase prints."""
    tree = syntax.parse(source)
    if stop_at == "parse":
        return ast.dump(tree, indent=2)
    if options.skip:
        return source.rstrip("\n")
    index = analyze(tree)
    if stop_at == "analyze":
        return json.dumps(index.to_dict(), indent=2)
    return syntax.unparse(instrument(tree, index, options))


def main(argv: list[str] | None = None) -> int:
    try:
        args = parse_args(sys.argv[1:] if argv is None else argv)
    except UsageError as e:
        print("error: " + str(e), file=sys.stderr)
        print(USAGE, end="", file=sys.stderr)
        return 2
    if args.help:
        print(USAGE, end="")
        return 0
    if args.verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(name)s: %(message)s")
    try:
        source = read_source(args.input_file)
    except UsageError as e:
        print("error: " + str(e), file=sys.stderr)
        return 1
    if source.strip() == "":
        print("error: no input provided", file=sys.stderr)
        return 2
    options = read_pragmas(source)
    options = replace(
        options,
        hooks=options.hooks and args.hooks,
        record_source=options.record_source and args.record_source,
    )
    try:
        output = run_pipeline(source, args.stop_at, options)
    except AnalysisError as e:
        print("error:" + str(e.lineno) + ":" + str(e.col) + ": " + e.msg, file=sys.stderr)
        return 1
    return write_output(output, args.output_file)
