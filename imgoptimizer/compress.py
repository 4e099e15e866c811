from __future__ import annotations

from contextlib import ExitStack
from pathlib import Path
import logging
import shutil
from typing import Callable

from PIL import Image, ImageSequence

from .aggressive import run_aggressive_pass
from .backup import BackupManager
from .errors import ToolDeclined
from .models import FormatKind, Job, OptimizeOptions, OptimizeResult, OutcomeKind
from .replace import safe_replace
from .tools import REQUIRED_TOOLS, get_tool_executable, imagemagick_command, run_command

logger = logging.getLogger(__name__)

Compressor = Callable[[Path, Path, OptimizeOptions], Path | None]
_STRATEGY_REGISTRY: dict[FormatKind, Compressor] = {}

# pngquant: 98 = result larger than input, 99 = quality below --quality minimum
PNGQUANT_DECLINED = {98, 99}


def optimize_file(job: Job, options: OptimizeOptions, backups: BackupManager) -> list[OptimizeResult]:
    """Run the strategy for ``job`` and, when enabled, the aggressive pass.

    The first result is the primary pass; aggressive sub-pass results follow.
    """
    source, kind = job.path, job.kind
    original_size = source.stat().st_size
    if options.dry_run:
        logger.info("Would optimize %s: %s", kind.value, source)
        return [OptimizeResult(source, kind, OutcomeKind.WOULD_OPTIMIZE, original_size)]
    if not backups.backup(source):
        logger.info("Failed to optimize %s: %s", kind.value, source)
        return [OptimizeResult(source, kind, OutcomeKind.FAILED, original_size)]
    compressor = get_strategy_registry().get(kind)
    if compressor is None:
        logger.info("Failed to optimize %s: %s", kind.value, source)
        return [OptimizeResult(source, kind, OutcomeKind.FAILED, original_size)]
    results = [safe_replace(source, kind, lambda src, scratch: compressor(src, scratch, options))]
    if options.aggressive and kind.is_raster:
        results.extend(run_aggressive_pass(source, kind, options))
    return results


def compress_jpeg(source: Path, scratch_dir: Path, options: OptimizeOptions) -> Path | None:
    jpegoptim = get_tool_executable(REQUIRED_TOOLS["jpegoptim"])
    if not jpegoptim:
        return None
    output = scratch_dir / source.name
    command = [
        jpegoptim,
        "--strip-all",
        f"--max={options.jpeg_quality}",
        "--force",
        "--quiet",
        f"--dest={scratch_dir}",
        str(source),
    ]
    result = run_command(command)
    return output if result.returncode == 0 and output.exists() else None


def compress_png(source: Path, scratch_dir: Path, options: OptimizeOptions) -> Path | None:
    pngquant = get_tool_executable(REQUIRED_TOOLS["pngquant"])
    if not pngquant:
        return None
    output = scratch_dir / source.name
    min_q, max_q = options.png_quality
    command = [
        pngquant,
        "--force",
        "--skip-if-larger",
        "--strip",
        f"--quality={min_q}-{max_q}",
        "--output",
        str(output),
        str(source),
    ]
    result = run_command(command)
    if result.returncode in PNGQUANT_DECLINED and not output.exists():
        raise ToolDeclined(f"pngquant declined {source} ({result.returncode})")
    return output if result.returncode == 0 and output.exists() else None


def compress_tiff(source: Path, scratch_dir: Path, options: OptimizeOptions) -> Path | None:
    """Recompress every page as 8-bit grayscale LZW and rebuild the document."""
    convert = imagemagick_command("convert")
    if convert is None:
        return None
    pages_dir = scratch_dir / "pages"
    pages_dir.mkdir()
    try:
        pages = split_pages(source, pages_dir)
        if not pages:
            return None
        compressed: list[Path] = []
        for page in pages:
            target = page.with_name(f"{page.stem}-lzw.tiff")
            command = [
                *convert,
                str(page),
                "-colorspace",
                "Gray",
                "-depth",
                "8",
                "-compress",
                "LZW",
                str(target),
            ]
            result = run_command(command)
            if result.returncode != 0 or not target.exists():
                return None
            compressed.append(target)
        output = scratch_dir / source.name
        join_pages(compressed, output)
        return output
    finally:
        shutil.rmtree(pages_dir, ignore_errors=True)


def split_pages(source: Path, pages_dir: Path) -> list[Path]:
    pages = []
    with Image.open(source) as image:
        for index, frame in enumerate(ImageSequence.Iterator(image)):
            page = pages_dir / f"page-{index:04d}.tiff"
            frame.save(page, format="TIFF")
            pages.append(page)
    return pages


def join_pages(pages: list[Path], output: Path) -> None:
    with ExitStack() as stack:
        frames = [stack.enter_context(Image.open(page)) for page in pages]
        frames[0].save(
            output,
            format="TIFF",
            save_all=True,
            append_images=frames[1:],
            compression="tiff_lzw",
        )


def compress_pdf(source: Path, scratch_dir: Path, options: OptimizeOptions) -> Path | None:
    gs = get_tool_executable(REQUIRED_TOOLS["ghostscript"])
    if not gs:
        return None
    output = scratch_dir / source.name
    command = [
        gs,
        "-sDEVICE=pdfwrite",
        "-dCompatibilityLevel=1.4",
        f"-dPDFSETTINGS=/{options.pdf_preset}",
        "-dNOPAUSE",
        "-dQUIET",
        "-dBATCH",
        f"-sOutputFile={output}",
        str(source),
    ]
    result = run_command(command)
    return output if result.returncode == 0 and output.exists() else None


def compress_gif(source: Path, scratch_dir: Path, options: OptimizeOptions) -> Path | None:
    gifsicle = get_tool_executable(REQUIRED_TOOLS["gifsicle"])
    if not gifsicle:
        return None
    output = scratch_dir / source.name
    command = [gifsicle, f"--optimize={options.gif_level}", "--output", str(output), str(source)]
    result = run_command(command)
    return output if result.returncode == 0 and output.exists() else None


def get_strategy_registry() -> dict[FormatKind, Compressor]:
    global _STRATEGY_REGISTRY
    if not _STRATEGY_REGISTRY:
        _STRATEGY_REGISTRY = {
            FormatKind.JPEG: compress_jpeg,
            FormatKind.PNG: compress_png,
            FormatKind.TIFF: compress_tiff,
            FormatKind.PDF: compress_pdf,
            FormatKind.GIF: compress_gif,
        }
    return _STRATEGY_REGISTRY


def set_strategy_registry(registry: dict[FormatKind, Compressor]) -> None:
    global _STRATEGY_REGISTRY
    _STRATEGY_REGISTRY = dict(registry)
