from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import NoReturn

from .errors import PreflightError
from .log import close_logging, setup_logging
from .models import OptimizeOptions
from .pipeline import run
from .tools import install_dependencies

PDF_PRESETS = ["ebook", "screen"]


def default_log_path() -> Path:
    """Per-user state directory, outside the default source tree."""
    return Path.home() / ".local" / "state" / "image-optimizer" / "image_optimizer.log"


class OptimizerArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    env = os.environ
    parser = OptimizerArgumentParser(
        prog="image-optimizer",
        description="Optimize images in a file server (JPG, PNG, TIFF, PDF, GIF)",
    )
    parser.add_argument("-s", "--source", default=env.get("IMAGE_OPTIMIZER_SOURCE", "."), help="source directory")
    parser.add_argument("-b", "--backup", default=env.get("IMAGE_OPTIMIZER_BACKUP"), help="backup directory")
    parser.add_argument("-l", "--log", default=env.get("IMAGE_OPTIMIZER_LOG", str(default_log_path())), help="log file")
    parser.add_argument(
        "-t",
        "--threads",
        type=positive_int,
        default=env.get("IMAGE_OPTIMIZER_THREADS", "4"),
        help="number of parallel workers (default: %(default)s)",
    )
    parser.add_argument("-n", "--dry-run", action="store_true", help="show what would be done without making changes")
    parser.add_argument("-r", "--no-recursive", action="store_true", help="do not process subdirectories")
    parser.add_argument("-v", "--verbose", action="store_true", help="log external tool commands and errors")
    parser.add_argument("-i", "--install-dependencies", action="store_true", help="install required tools and exit")
    parser.add_argument("--no-backup", action="store_true", help="do not back up originals")
    parser.add_argument("--no-aggressive", action="store_true", help="skip resize, bit depth and DPI reduction")
    parser.add_argument("--pdf-preset", choices=PDF_PRESETS, default="ebook", help="Ghostscript PDFSETTINGS preset")
    return parser


def parse_args(args: list[str]) -> argparse.Namespace:
    return build_parser().parse_args(args)


def build_options(parsed: argparse.Namespace) -> OptimizeOptions:
    return OptimizeOptions(
        source_dir=Path(parsed.source),
        log_file=Path(parsed.log),
        backup_dir=Path(parsed.backup) if parsed.backup else None,
        threads=parsed.threads,
        dry_run=parsed.dry_run,
        recursive=not parsed.no_recursive,
        backup=not parsed.no_backup,
        aggressive=not parsed.no_aggressive,
        verbose=parsed.verbose,
        pdf_preset=parsed.pdf_preset,
    )


def main(argv: list[str] | None = None) -> int:
    parsed = parse_args(sys.argv[1:] if argv is None else argv)
    options = build_options(parsed)
    try:
        setup_logging(options.log_file, options.verbose)
    except OSError as exc:
        print(f"Cannot open log file {options.log_file}: {exc}", file=sys.stderr)
        return 1
    try:
        if parsed.install_dependencies:
            return 0 if install_dependencies() else 1
        run(options)
    except PreflightError:
        return 1
    finally:
        close_logging()
    return 0
