"""func entry point and REPL wiring."""
from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import FuncExtensionError, RuntimeServices, build_default_services, load_runtime_services
from interpreter import DEFAULT_MAX_DEPTH, FuncRuntimeError, Interpreter, TracebackFormatter
from lexer import LexingError
from parser import ParsingError

PROMPT = ":> "
CONTINUATION_PROMPT = ".. "


def _report_runtime_error(interpreter: Interpreter, error: FuncRuntimeError, *, traceback_json: bool = False) -> None:
    formatter = TracebackFormatter(interpreter)
    print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
    if traceback_json:
        print(formatter.to_json(error), file=sys.stderr)


def _starts_block(stripped: str) -> bool:
    first_word = stripped.split(None, 1)[0] if stripped else ""
    if first_word in ("func", "if"):
        return True
    return stripped.endswith("{")


def run_repl(
    verbose: bool,
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
    services: Optional[RuntimeServices] = None,
) -> int:
    loaded = services.extension_names if services is not None else []
    suffix = f" (extensions: {', '.join(loaded)})" if loaded else ""
    print(f"func REPL{suffix}. Enter statements, blank line to run buffer.")
    interpreter = Interpreter(verbose=verbose, max_depth=max_depth, services=services)
    buffer: List[str] = []

    while True:
        prompt = PROMPT if not buffer else CONTINUATION_PROMPT
        try:
            line = input(prompt)
        except EOFError:
            print()
            break

        stripped = line.strip()

        if not buffer and stripped != "" and not _starts_block(stripped):
            try:
                interpreter.run(line, "<repl>")
            except ParsingError:
                # Possibly the first line of a multi-line input.
                buffer.append(line)
            except LexingError as error:
                print(error.format_report(), file=sys.stderr)
            except FuncRuntimeError as error:
                _report_runtime_error(interpreter, error)
            continue

        if stripped == "" and buffer:
            source_text = "\n".join(buffer)
            buffer.clear()
            try:
                interpreter.run(source_text, "<repl>")
            except (LexingError, ParsingError) as error:
                print(error.format_report(), file=sys.stderr)
            except FuncRuntimeError as error:
                _report_runtime_error(interpreter, error)
            continue

        if stripped != "":
            buffer.append(line)

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="func reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Emit env snapshots in tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--max-depth", type=int, default=DEFAULT_MAX_DEPTH, help="Maximum nesting of blocks and calls")
    parser.add_argument("--ext", action="append", default=[], help="Load a Python extension (.py) or a .funcx list; repeatable")
    args = parser.parse_args(argv)

    if args.max_depth < 1:
        print("--max-depth must be >= 1", file=sys.stderr)
        return 1

    try:
        services = load_runtime_services(args.ext) if args.ext else build_default_services()
    except FuncExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, max_depth=args.max_depth, services=services)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    interpreter = Interpreter(verbose=args.verbose, max_depth=args.max_depth, services=services)
    try:
        interpreter.run(source_text, filename)
    except (LexingError, ParsingError) as error:
        print(error.format_report(), file=sys.stderr)
        return 1
    except FuncRuntimeError as error:
        _report_runtime_error(interpreter, error, traceback_json=args.traceback_json)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
