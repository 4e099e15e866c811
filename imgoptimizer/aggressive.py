"""Aggressive post-pass for raster formats.

Three sub-passes run in a fixed order after the primary optimization:
resize, bit-depth reduction, and DPI reduction. Each one is a separate
safe replace, so a pass that does not shrink the file leaves it untouched.
"""

from __future__ import annotations

from pathlib import Path
import logging

from PIL import Image

from .models import FormatKind, OptimizeOptions, OptimizeResult, OutcomeKind
from .replace import ACTIONS, safe_replace
from .tools import imagemagick_command, run_command

logger = logging.getLogger(__name__)

# Unreadable, truncated or oversized images; callers treat None as "no value".
PROBE_ERRORS = (OSError, ValueError, Image.DecompressionBombError)


def run_aggressive_pass(source: Path, kind: FormatKind, options: OptimizeOptions) -> list[OptimizeResult]:
    results = []
    for action, sub_pass in SUB_PASSES:
        try:
            results.append(sub_pass(source, kind, options))
        except Exception:
            # The primary pass already replaced the file; only this sub-pass fails.
            logger.debug("Unhandled error during %s of %s", action, source, exc_info=True)
            logger.info("%s %s: %s", ACTIONS[action][2], kind.value, source)
            results.append(OptimizeResult(source, kind, OutcomeKind.FAILED, 0, None, action))
    return results


def resize_pass(source: Path, kind: FormatKind, options: OptimizeOptions) -> OptimizeResult:
    dimensions = read_dimensions(source)
    if dimensions is None:
        return _unchanged(source, kind, "resize", "Resize not needed for %s: %s (dimensions unreadable)")
    longest = max(dimensions)
    if longest <= options.max_dimension:
        return _unchanged(source, kind, "resize", f"Resize not needed for %s: %s ({longest}px)")
    geometry = f"{options.max_dimension}x{options.max_dimension}>"
    return safe_replace(
        source,
        kind,
        lambda src, scratch: run_convert(src, scratch / src.name, kind, ["-resize", geometry]),
        "resize",
    )


def depth_pass(source: Path, kind: FormatKind, options: OptimizeOptions) -> OptimizeResult:
    depth = read_bit_depth(source)
    if depth is None:
        return _unchanged(source, kind, "depth", "Bit depth reduction not needed for %s: %s (depth unreadable)")
    if depth <= options.max_depth:
        return _unchanged(source, kind, "depth", f"Bit depth reduction not needed for %s: %s ({depth}-bit)")
    return safe_replace(
        source,
        kind,
        lambda src, scratch: run_convert(src, scratch / src.name, kind, ["-depth", str(options.max_depth)]),
        "depth",
    )


def dpi_pass(source: Path, kind: FormatKind, options: OptimizeOptions) -> OptimizeResult:
    dpi = read_dpi(source)
    if dpi is None:
        return _unchanged(source, kind, "dpi", "DPI reduction not needed for %s: %s (DPI unreadable)")
    if dpi <= options.max_dpi:
        return _unchanged(source, kind, "dpi", f"DPI reduction not needed for %s: %s ({dpi} DPI)")
    args = ["-units", "PixelsPerInch", "-density", str(options.max_dpi)]
    return safe_replace(
        source,
        kind,
        lambda src, scratch: run_convert(src, scratch / src.name, kind, args),
        "dpi",
    )


def run_convert(source: Path, output: Path, kind: FormatKind, args: list[str]) -> Path | None:
    convert = imagemagick_command("convert")
    if convert is None:
        return None
    command = [*convert, str(source)]
    if kind is FormatKind.GIF:
        command.append("-coalesce")
    command += args
    if kind is FormatKind.GIF:
        command += ["-layers", "Optimize"]
    command.append(str(output))
    result = run_command(command)
    return output if result.returncode == 0 and output.exists() else None


def read_dimensions(path: Path) -> tuple[int, int] | None:
    try:
        with Image.open(path) as image:
            return image.size
    except PROBE_ERRORS as exc:
        logger.debug("Cannot read dimensions of %s: %s", path, exc)
        return None


def read_dpi(path: Path) -> int | None:
    try:
        with Image.open(path) as image:
            density = image.info.get("dpi")
    except PROBE_ERRORS as exc:
        logger.debug("Cannot read DPI of %s: %s", path, exc)
        return None
    if not density:
        return None
    # PNG stores pixels per metre, so 96 DPI reads back as 96.012.
    value = round(float(max(density)))
    return value if value > 0 else None


def read_bit_depth(path: Path) -> int | None:
    # Pillow folds 16-bit RGB samples to 8 bits on open, so ask ImageMagick.
    identify = imagemagick_command("identify")
    if identify is None:
        return None
    result = run_command([*identify, "-format", "%z", f"{path}[0]"])
    if result.returncode != 0:
        return None
    try:
        return int(result.stdout.decode().strip())
    except ValueError:
        return None


def _unchanged(source: Path, kind: FormatKind, action: str, message: str) -> OptimizeResult:
    logger.info(message, kind.value, source)
    size = source.stat().st_size
    return OptimizeResult(source, kind, OutcomeKind.UNCHANGED, size, None, action)


SUB_PASSES = (
    ("resize", resize_pass),
    ("depth", depth_pass),
    ("dpi", dpi_pass),
)
