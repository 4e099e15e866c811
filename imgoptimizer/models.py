from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator

from .errors import PreflightError


class FormatKind(Enum):
    JPEG = "JPEG"
    PNG = "PNG"
    TIFF = "TIFF"
    PDF = "PDF"
    GIF = "GIF"

    @property
    def is_raster(self) -> bool:
        return self in RASTER_KINDS


RASTER_KINDS = frozenset({FormatKind.JPEG, FormatKind.PNG, FormatKind.GIF})

EXTENSIONS: dict[str, FormatKind] = {
    ".jpg": FormatKind.JPEG,
    ".jpeg": FormatKind.JPEG,
    ".png": FormatKind.PNG,
    ".tif": FormatKind.TIFF,
    ".tiff": FormatKind.TIFF,
    ".pdf": FormatKind.PDF,
    ".gif": FormatKind.GIF,
}


class OutcomeKind(Enum):
    OPTIMIZED = "optimized"
    SKIPPED_NOT_SMALLER = "not_smaller"
    SKIPPED_TOO_SMALL = "too_small"
    SKIPPED_UNREADABLE = "unreadable"
    FAILED = "failed"
    WOULD_OPTIMIZE = "would_optimize"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class OptimizeOptions:
    source_dir: Path
    log_file: Path
    backup_dir: Path | None = None
    threads: int = 4
    dry_run: bool = False
    recursive: bool = True
    backup: bool = True
    aggressive: bool = True
    verbose: bool = False
    min_size: int = 1024
    abort_on_backup_failure: bool = True
    jpeg_quality: int = 85
    png_quality: tuple[int, int] = (70, 85)
    gif_level: int = 3
    pdf_preset: str = "ebook"
    max_dimension: int = 1920
    max_depth: int = 8
    max_dpi: int = 96

    @property
    def backup_enabled(self) -> bool:
        return self.backup and self.backup_dir is not None


@dataclass(frozen=True)
class Job:
    path: Path
    kind: FormatKind


@dataclass(frozen=True)
class OptimizeResult:
    path: Path
    kind: FormatKind | None
    outcome: OutcomeKind
    original_size: int
    new_size: int | None = None
    action: str = "optimize"

    @property
    def saved_bytes(self) -> int:
        if self.new_size is None:
            return 0
        return max(0, self.original_size - self.new_size)

    @property
    def saved_percent(self) -> int:
        return saved_percent(self.original_size, self.new_size)


@dataclass
class RunSummary:
    """Totals over one run. Counts follow the primary pass of each file;
    bytes follow the file through every pass that replaced it."""

    counts: dict[OutcomeKind, int] = field(default_factory=dict)
    bytes_before: int = 0
    bytes_after: int = 0

    def add(self, report: list[OptimizeResult]) -> None:
        primary = report[0]
        self.counts[primary.outcome] = self.counts.get(primary.outcome, 0) + 1
        if primary.outcome not in {OutcomeKind.OPTIMIZED, OutcomeKind.SKIPPED_NOT_SMALLER}:
            return
        final_size = primary.original_size
        for result in report:
            if result.outcome is OutcomeKind.OPTIMIZED and result.new_size is not None:
                final_size = result.new_size
        self.bytes_before += primary.original_size
        self.bytes_after += final_size

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def saved_bytes(self) -> int:
        return self.bytes_before - self.bytes_after

    def count(self, outcome: OutcomeKind) -> int:
        return self.counts.get(outcome, 0)


def saved_percent(before: int, after: int | None) -> int:
    if after is None or before <= 0:
        return 0
    return (before - after) * 100 // before


def detect_format(path: Path) -> FormatKind | None:
    return EXTENSIONS.get(path.suffix.lower())


def iter_image_files(
    root: Path,
    recursive: bool = True,
    formats: Iterable[FormatKind] | None = None,
) -> Iterator[Job]:
    if not root.is_dir():
        raise PreflightError(f"Source directory does not exist: {root}")
    accepted = set(formats) if formats is not None else set(FormatKind)
    candidates = root.rglob("*") if recursive else root.iterdir()
    for path in candidates:
        kind = detect_format(path)
        if kind is None or kind not in accepted:
            continue
        if path.is_file():
            yield Job(path, kind)
