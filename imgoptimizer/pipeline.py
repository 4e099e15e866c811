from __future__ import annotations

from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from functools import partial
import logging
import os
from typing import Callable, Iterable, Iterator

from .backup import BackupManager
from .compress import optimize_file
from .errors import PreflightError
from .models import Job, OptimizeOptions, OptimizeResult, OutcomeKind, RunSummary, iter_image_files
from .tools import check_requirements

logger = logging.getLogger(__name__)

Worker = Callable[[Job], list[OptimizeResult]]

# Jobs queued per worker thread ahead of the ones running.
PREFETCH_FACTOR = 2


def run(options: OptimizeOptions) -> RunSummary:
    logger.info("Starting image optimization process")
    logger.info("Source directory: %s", options.source_dir)
    logger.info("Recursive: %s", str(options.recursive).lower())
    logger.info("Dry run: %s", str(options.dry_run).lower())
    logger.info("Backup: %s", options.backup_dir if options.backup_enabled else "disabled")
    logger.info("Aggressive: %s", str(options.aggressive).lower())
    logger.info("Threads: %d", options.threads)

    if not options.source_dir.is_dir():
        logger.error("ERROR: Source directory does not exist: %s", options.source_dir)
        raise PreflightError(f"Source directory does not exist: {options.source_dir}")
    check_requirements()
    backups = BackupManager(options)
    if not options.dry_run:
        backups.prepare()

    jobs = iter_image_files(options.source_dir, options.recursive)
    summary = RunSummary()
    for report in dispatch(jobs, options, partial(process_job, options=options, backups=backups)):
        summary.add(report)
    logger.info(
        "Processed %d files: %d optimized, %d not smaller, %d failed, %d small, %d would optimize (saved %d bytes)",
        summary.total,
        summary.count(OutcomeKind.OPTIMIZED),
        summary.count(OutcomeKind.SKIPPED_NOT_SMALLER),
        summary.count(OutcomeKind.FAILED),
        summary.count(OutcomeKind.SKIPPED_TOO_SMALL),
        summary.count(OutcomeKind.WOULD_OPTIMIZE),
        summary.saved_bytes,
    )
    logger.info("Image optimization process completed")
    return summary


def process_job(job: Job, options: OptimizeOptions, backups: BackupManager) -> list[OptimizeResult]:
    path = job.path
    if not path.is_file() or not os.access(path, os.R_OK):
        logger.info("Skipping unreadable file: %s", path)
        return [OptimizeResult(path, job.kind, OutcomeKind.SKIPPED_UNREADABLE, 0)]
    size = path.stat().st_size
    if size < options.min_size:
        logger.info("Skipping small file: %s", path)
        return [OptimizeResult(path, job.kind, OutcomeKind.SKIPPED_TOO_SMALL, size)]
    return optimize_file(job, options, backups)


def dispatch(jobs: Iterable[Job], options: OptimizeOptions, worker: Worker) -> Iterator[list[OptimizeResult]]:
    """Yield one report per job as workers finish.

    Discovery is pulled lazily: at most ``threads * PREFETCH_FACTOR`` jobs are
    submitted and not yet collected at any time.
    """
    max_inflight = options.threads * PREFETCH_FACTOR
    with ThreadPoolExecutor(max_workers=options.threads, thread_name_prefix="optimizer") as executor:
        in_flight: dict[Future, Job] = {}
        for job in jobs:
            in_flight[executor.submit(worker, job)] = job
            if len(in_flight) >= max_inflight:
                yield from _collect(in_flight)
        while in_flight:
            yield from _collect(in_flight)


def _collect(in_flight: dict[Future, Job]) -> Iterator[list[OptimizeResult]]:
    done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
    for future in done:
        job = in_flight.pop(future)
        yield _report(future, job)


def _report(future: Future, job: Job) -> list[OptimizeResult]:
    try:
        return future.result()
    except Exception:
        logger.debug("Unhandled error while processing %s", job.path, exc_info=True)
        logger.info("Failed to optimize %s: %s", job.kind.value, job.path)
        return [OptimizeResult(job.path, job.kind, OutcomeKind.FAILED, 0)]
