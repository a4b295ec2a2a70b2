#!/usr/bin/env python3
"""
Generate Script.

Build a pressure-advance calibration G-code file from slicer profiles.

Usage:
    pa-generate --printer printer/MK3S.ini --filament filament/PLA.ini \\
        --print print/0.20mm.ini --start 0 --end 0.08 --step 0.01
    python -m pa_generator.scripts.generate --printer p.yaml --filament f.yaml \\
        --print s.yaml --end 0.1 --step 0.02 --set gcode_flavor=klipper --dry-run

Profiles may be PrusaSlicer-style ``.ini`` exports or flat ``.yaml`` maps;
``inherits`` chains are resolved against sibling files.  Later profiles
override earlier ones (printer, then filament, then print), and ``--set``
overrides all of them.
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from pa_generator.configs.loader import ConfigEnvironment, ConfigError, load_profile
from pa_generator.configs.validators import PARange
from pa_generator.errors import GenerationError
from pa_generator.gcode.estimator import format_duration
from pa_generator.gcode.generator import PATestGenerator
from pa_generator.utils.fs import atomic_write_text
from pa_generator.utils.logging_config import (
    install_excepthook,
    pop_context,
    push_context,
    setup_logging,
)

logger = logging.getLogger(__name__)


def _parse_override(text: str) -> tuple[str, str]:
    key, sep, value = text.partition("=")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"expected KEY=VALUE, got {text!r}")
    return key.strip(), value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pa-generate",
        description="Generate a pressure-advance calibration print",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # Profiles
    parser.add_argument("--printer", type=Path, help="Printer profile (.ini / .yaml)")
    parser.add_argument("--filament", type=Path, help="Filament profile (.ini / .yaml)")
    parser.add_argument("--print", dest="print_profile", type=Path, help="Print profile (.ini / .yaml)")
    parser.add_argument(
        "--set",
        dest="overrides",
        type=_parse_override,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Override a config value (repeatable)",
    )

    # PA sweep
    parser.add_argument("--start", type=float, default=0.0, help="First PA value")
    parser.add_argument("--end", type=float, required=True, help="Last PA value (inclusive)")
    parser.add_argument("--step", type=float, required=True, help="PA increment")

    # Output
    parser.add_argument(
        "--output-dir",
        "-o",
        type=Path,
        default=Path("."),
        help="Directory for the generated file",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Generate and report, but don't write the file",
    )

    # Logging
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Console log level",
    )
    parser.add_argument("--log-file", type=Path, help="Also log to this file")
    parser.add_argument("--json-logs", action="store_true", help="Log JSON lines")
    return parser


def load_config(args: argparse.Namespace) -> ConfigEnvironment:
    """Merge the profile files named on the command line plus ``--set``."""
    sources = [
        load_profile(path)
        for path in (args.printer, args.filament, args.print_profile)
        if path is not None
    ]
    cfg = ConfigEnvironment.merge(*sources)
    if args.overrides:
        cfg = cfg.with_overrides(dict(args.overrides))
    return cfg


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(
        args.log_level,
        args.log_file,
        json_format=args.json_logs,
        context={"app": "pa-generate"},
    )
    install_excepthook()

    try:
        pa_range = PARange(start=args.start, end=args.end, step=args.step)
    except ValidationError as e:
        logger.error("Invalid PA range: %s", e)
        return 2

    try:
        cfg = load_config(args)
    except (ConfigError, FileNotFoundError) as e:
        logger.error("Error loading profiles: %s", e)
        return 1

    values = pa_range.values()
    push_context(objects=len(values))
    try:
        result = PATestGenerator().generate(cfg, values)
    except (ConfigError, GenerationError, ValueError) as e:
        logger.error("Generation failed: %s", e)
        return 1
    finally:
        pop_context(["objects"])

    for warning in result.warnings:
        logger.warning("Template: %s", warning)
    if result.unresolved:
        logger.warning("Unresolved placeholders left in output: %s", ", ".join(result.unresolved))

    print(f"Objects:   {len(values)} ({result.layout.cols}x{result.layout.rows} grid)")
    print(f"Estimated: {format_duration(result.estimate.time_estimate_s)}")

    if args.dry_run:
        print(f"Dry run, would write {args.output_dir / result.filename}")
        return 0

    out_path = args.output_dir / result.filename
    try:
        atomic_write_text(out_path, result.gcode)
    except OSError as e:
        logger.error("Cannot write %s: %s", out_path, e)
        return 1
    print(f"Written:   {out_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
