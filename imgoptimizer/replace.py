from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
import logging
import os
import shutil
import subprocess
from typing import Callable

from .errors import ToolDeclined
from .models import FormatKind, OptimizeResult, OutcomeKind, saved_percent

logger = logging.getLogger(__name__)

STAGING_SUFFIX = ".optimizing"

Transform = Callable[[Path, Path], Path | None]

# action -> (success, not smaller, failure) message prefixes
ACTIONS: dict[str, tuple[str, str, str]] = {
    "optimize": ("Optimized", "Skipped", "Failed to optimize"),
    "resize": ("Resized", "Skipped resize", "Failed to resize"),
    "depth": ("Reduced bit depth", "Skipped bit depth reduction", "Failed to reduce bit depth"),
    "dpi": ("Reduced DPI", "Skipped DPI reduction", "Failed to reduce DPI"),
}


def safe_replace(
    source: Path,
    kind: FormatKind,
    transform: Transform,
    action: str = "optimize",
) -> OptimizeResult:
    """Run ``transform`` into scratch space and keep the result only if smaller.

    ``transform(source, scratch_dir)`` returns the path of the file it wrote
    inside ``scratch_dir`` or None on failure. It may raise ``ToolDeclined``
    when the tool refuses to write a larger file.
    """
    done, skipped, failed = ACTIONS[action]
    original_size = source.stat().st_size
    with TemporaryDirectory(prefix="imgoptimizer-") as scratch:
        try:
            output = transform(source, Path(scratch))
        except ToolDeclined:
            logger.info("%s %s: %s (optimized version not smaller)", skipped, kind.value, source)
            return OptimizeResult(source, kind, OutcomeKind.SKIPPED_NOT_SMALLER, original_size, None, action)
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("%s raised during %s: %s", source, action, exc)
            output = None
        if output is None or not output.is_file() or output.stat().st_size == 0:
            logger.info("%s %s: %s", failed, kind.value, source)
            return OptimizeResult(source, kind, OutcomeKind.FAILED, original_size, None, action)
        new_size = output.stat().st_size
        if new_size >= original_size:
            logger.info("%s %s: %s (optimized version not smaller)", skipped, kind.value, source)
            return OptimizeResult(source, kind, OutcomeKind.SKIPPED_NOT_SMALLER, original_size, new_size, action)
        try:
            replace_file(output, source)
        except OSError as exc:
            logger.error("%s %s: %s (%s)", failed, kind.value, source, exc)
            return OptimizeResult(source, kind, OutcomeKind.FAILED, original_size, None, action)
    logger.info("%s %s: %s (saved %d%%)", done, kind.value, source, saved_percent(original_size, new_size))
    return OptimizeResult(source, kind, OutcomeKind.OPTIMIZED, original_size, new_size, action)


def replace_file(output: Path, target: Path) -> None:
    """Move ``output`` over ``target`` with a same-directory rename.

    Scratch space may live on another filesystem, so the bytes are first
    staged next to the target and only then renamed into place.
    """
    staging = target.with_name(f".{target.name}{STAGING_SUFFIX}")
    try:
        shutil.copyfile(output, staging)
        shutil.copymode(target, staging)
        os.replace(staging, target)
    except OSError:
        staging.unlink(missing_ok=True)
        raise
