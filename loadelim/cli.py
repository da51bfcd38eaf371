#!/usr/bin/env python3
"""
loadelim - report redundant field loads in jvm2json class files.

Usage:
  loadelim path/to/Simple.json
  loadelim --format json decompiled/
  loadelim --class jpamb.cases.Simple      (needs the jpamb suite)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Iterator

from loguru import logger

from loadelim.available_loads import AliasPrecision, CallPolicy
from loadelim.cfg_builder import load_class
from loadelim.config import AnalysisOptions
from loadelim.detector import analyze_classes, lift_class
from loadelim.report import render

log = logging.getLogger(__name__)


class LoguruBridge(logging.Handler):
    """Forward standard logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(exception=record.exc_info).log(level, record.getMessage())


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = "DEBUG" if verbose else "WARNING" if quiet else "INFO"
    logger.remove()
    logger.add(sys.stderr, format="[{level}] {message}", level=level)
    logging.basicConfig(handlers=[LoguruBridge()], level=logging.DEBUG, force=True)


def iter_class_files(inputs: list[Path]) -> Iterator[Path]:
    """Expand directories into the *.json files below them, sorted."""
    for path in inputs:
        if path.is_dir():
            yield from sorted(path.rglob("*.json"))
        else:
            yield path


def load_inputs(inputs: list[Path]) -> list[dict]:
    """
    Read every class document named on the command line.

    Raises:
        FileNotFoundError: if an input does not exist
        ValueError: if a file is not valid JSON
    """
    classes = []
    for path in iter_class_files(inputs):
        if not path.exists():
            raise FileNotFoundError(f"Input not found: {path}")
        try:
            classes.append(load_class(path))
        except json.JSONDecodeError as e:
            raise ValueError(f"Cannot parse {path}: {e}") from e
        log.debug("Loaded %s", path)
    return classes


def load_suite_classes(names: list[str]) -> list[dict]:
    """Look up decompiled classes in the jpamb suite."""
    import jpamb
    from jpamb import jvm

    suite = jpamb.Suite()
    return [suite.findclass(jvm.ClassName("/".join(name.split(".")))) for name in names]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="loadelim",
        description="Find redundant field loads in JVM bytecode (jvm2json format)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Single class file
  loadelim decompiled/jpamb/cases/Simple.json

  # Every class below a directory, as JSON
  loadelim --format json decompiled/

  # Reachability-limited call invalidation
  loadelim --calls reachable decompiled/

  # Inspect the lifted three-address code
  loadelim --dump-ir text decompiled/jpamb/cases/Simple.json
        """,
    )
    parser.add_argument("inputs", nargs="*", type=Path, metavar="INPUT",
                        help="jvm2json class file or directory of class files")
    parser.add_argument("--class", dest="classes", action="append", default=[], metavar="NAME",
                        help="Class from the jpamb suite (e.g., jpamb.cases.Simple); repeatable")
    parser.add_argument("--format", choices=["text", "json"], default="text",
                        help="Output format (default: text)")
    parser.add_argument("--alias", choices=[p.value for p in AliasPrecision],
                        default=AliasPrecision.POINTS_TO.value,
                        help="Alias precision (default: points-to)")
    parser.add_argument("--calls", choices=[p.value for p in CallPolicy],
                        default=CallPolicy.KILL_ALL.value,
                        help="What a call invalidates (default: kill-all)")
    parser.add_argument("--include-constructors", action="store_true",
                        help="Also analyse <init> and <clinit>")
    parser.add_argument("--no-exceptional-edges", action="store_true",
                        help="Ignore exception handler edges")
    parser.add_argument("--dump-ir", choices=["text", "dot"], metavar="{text,dot}",
                        help="Print the lifted IR of every method instead of analysing it")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug output")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only warnings and errors")
    return parser


def dump_ir(classes: list[dict], options: AnalysisOptions, fmt: str = "text") -> str:
    """Listing (or Graphviz DOT graph) of each lifted method, in class order."""
    bodies = [body for class_data in classes for body in lift_class(class_data, options)]
    bodies.sort(key=lambda b: (b.class_name, b.name, b.descriptor))
    if fmt == "dot":
        return "\n".join(body.to_dot() for body in bodies)
    return "\n\n".join(body.summary() for body in bodies)


def options_from_args(args: argparse.Namespace) -> AnalysisOptions:
    return AnalysisOptions(
        alias_precision=AliasPrecision(args.alias),
        call_policy=CallPolicy(args.calls),
        skip_constructors=not args.include_constructors,
        exceptional_edges=not args.no_exceptional_edges,
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet)

    if not args.inputs and not args.classes:
        parser.print_help()
        return 1

    options = options_from_args(args)

    try:
        classes = load_inputs(args.inputs)
        if args.classes:
            classes.extend(load_suite_classes(args.classes))
    except (OSError, ValueError) as e:
        log.error("Error: %s", e, exc_info=args.verbose)
        return 1

    if args.dump_ir:
        print(dump_ir(classes, options, args.dump_ir))
        return 0

    reports = analyze_classes(classes, options)
    output = render(reports, args.format, options)
    if output:
        print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
