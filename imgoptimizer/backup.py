from __future__ import annotations

from contextlib import suppress
from pathlib import Path
import logging
import os
import shutil
from threading import Lock, get_ident

from .errors import PreflightError
from .models import OptimizeOptions

logger = logging.getLogger(__name__)


class BackupManager:
    """Copies originals to a mirrored tree under the backup root.

    One instance serves a whole run. Backup paths claimed during the run are
    remembered so two jobs landing on the same path are reported; the later
    copy wins.
    """

    def __init__(self, options: OptimizeOptions) -> None:
        self.options = options
        self._claimed: set[Path] = set()
        self._lock = Lock()

    @property
    def enabled(self) -> bool:
        return self.options.backup_enabled

    def prepare(self) -> None:
        if not self.enabled:
            return
        backup_dir = self.options.backup_dir
        if backup_dir.is_dir():
            return
        try:
            backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            logger.error("ERROR: Cannot create backup directory: %s (%s)", backup_dir, exc)
            raise PreflightError(f"Cannot create backup directory: {backup_dir}") from exc
        logger.info("Created backup directory: %s", backup_dir)

    def backup_path(self, source: Path) -> Path:
        try:
            relative = source.relative_to(self.options.source_dir)
        except ValueError:
            relative = Path(source.name)
        return self.options.backup_dir / relative

    def backup(self, source: Path) -> bool:
        """Return True when the job may go on to mutate ``source``."""
        if not self.enabled:
            return True
        target = self.backup_path(source)
        with self._lock:
            collision = target in self._claimed
            self._claimed.add(target)
        if collision:
            logger.warning("WARNING: Backup path collision, overwriting: %s -> %s", source, target)
        staging = target.with_name(f".{target.name}.{os.getpid()}.{get_ident()}.part")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, staging)
            os.replace(staging, target)
        except OSError as exc:
            with suppress(OSError):
                staging.unlink(missing_ok=True)
            logger.error("Failed to back up: %s -> %s (%s)", source, target, exc)
            return not self.options.abort_on_backup_failure
        logger.info("Backed up: %s -> %s", source, target)
        return True
