from __future__ import annotations

from pathlib import Path
import logging
import os
import shutil
import subprocess
import sys
from threading import Lock

from .errors import PreflightError

logger = logging.getLogger(__name__)

TOOL_DIR_ENV = "IMAGE_OPTIMIZER_TOOL_DIR"
REQUIRED_TOOLS: dict[str, list[str]] = {
    "jpegoptim": ["jpegoptim"],
    "pngquant": ["pngquant"],
    "imagemagick": ["convert", "magick"],
    "ghostscript": ["gs", "gswin64c"],
    "gifsicle": ["gifsicle"],
}
DNF_PACKAGES = ["jpegoptim", "pngquant", "ImageMagick", "ghostscript", "gifsicle"]

_TOOL_CACHE: dict[tuple[str, ...], str | None] = {}
_TOOL_LOCK = Lock()


def get_tool_executable(names: list[str]) -> str | None:
    key = tuple(names)
    with _TOOL_LOCK:
        if key in _TOOL_CACHE:
            return _TOOL_CACHE[key]
    resolved = _find_tool(names)
    with _TOOL_LOCK:
        _TOOL_CACHE[key] = resolved
    return resolved


def _find_tool(names: list[str]) -> str | None:
    for base in _get_tool_search_dirs():
        for name in names:
            for path in (base / name, base / f"{name}.exe"):
                if path.is_file() and os.access(path, os.X_OK):
                    return str(path)
    for name in names:
        system_path = shutil.which(name)
        if system_path:
            return system_path
    return None


def _get_tool_search_dirs() -> list[Path]:
    base_dirs: list[Path] = []
    extra = os.environ.get(TOOL_DIR_ENV, "")
    for entry in extra.split(os.pathsep):
        if entry.strip():
            base_dirs.append(Path(entry.strip()))
    base_dirs.append(Path(sys.executable).resolve().parent)
    return base_dirs


def clear_tool_cache() -> None:
    with _TOOL_LOCK:
        _TOOL_CACHE.clear()


def imagemagick_command(subcommand: str = "convert") -> list[str] | None:
    """Command prefix for an ImageMagick subcommand.

    ImageMagick 7 ships a single ``magick`` binary that takes the
    subcommand as its first argument; version 6 installs ``convert`` and
    ``identify`` separately.
    """
    direct = get_tool_executable([subcommand])
    if direct and Path(direct).name.lower() != "magick":
        return [direct]
    magick = get_tool_executable(["magick"])
    if magick:
        return [magick] if subcommand == "convert" else [magick, subcommand]
    return None


def find_missing_tools() -> list[str]:
    return [label for label, names in REQUIRED_TOOLS.items() if get_tool_executable(names) is None]


def check_requirements() -> None:
    missing = find_missing_tools()
    if not missing:
        return
    logger.error("ERROR: The following required tools are missing: %s", " ".join(missing))
    logger.error("Please install them using: sudo dnf install %s", " ".join(missing))
    logger.error("For some tools, you might need to enable EPEL repository:")
    logger.error("sudo dnf install epel-release")
    logger.error("sudo dnf install %s", " ".join(DNF_PACKAGES))
    raise PreflightError(f"Missing required tools: {', '.join(missing)}")


def install_dependencies() -> bool:
    logger.info("Installing required dependencies...")
    for command in (
        ["sudo", "dnf", "install", "-y", "epel-release"],
        ["sudo", "dnf", "install", "-y", *DNF_PACKAGES],
    ):
        try:
            result = run_command(command)
        except OSError as exc:
            logger.error("Dependency installation failed: %s (%s)", " ".join(command), exc)
            return False
        if result.returncode != 0:
            logger.error("Dependency installation failed: %s", " ".join(command))
            return False
    clear_tool_cache()
    logger.info("Dependencies installed successfully.")
    return True


def run_command(command: list[str]) -> subprocess.CompletedProcess[bytes]:
    logger.debug("Running: %s", " ".join(command))
    result = subprocess.run(command, capture_output=True)
    if result.returncode != 0 and result.stderr:
        logger.debug("%s exited %s: %s", command[0], result.returncode, result.stderr.decode(errors="replace").strip())
    return result
