"""Ska entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import ExtensionError, load_extensions
from interpreter import Interpreter, TracebackFormatter
from lexer import SkaFileError, SkaRuntimeError
from sources import CharSource, FileSource, InteractiveSource


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ska", description="Ska interpreter")
    parser.add_argument("-f", "--file", help="Name of the file to be run; reads standard input when omitted")
    parser.add_argument("-e", "--explain", action="store_true", help="Reserved; currently ignored")
    parser.add_argument("--verbose", action="store_true", help="Add the call trace and registers to error reports")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit the error report as JSON")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension module (repeatable)")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        hooks = load_extensions(args.ext)
    except ExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    source: CharSource
    if args.file is not None:
        try:
            source = FileSource.open(args.file)
        except SkaFileError as error:
            print(error, file=sys.stderr)
            return 1
    else:
        source = InteractiveSource()

    interpreter = Interpreter(source=source, verbose=args.verbose, hooks=hooks)
    try:
        interpreter.run()
    except SkaRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


def main() -> None:
    sys.exit(run_cli())


if __name__ == "__main__":
    main()
