"""
File storage for uploads and result files, plus the result retrieval gateway.

Layout under Config.STORAGE_DIR:
- uploads/<random>.csv        raw upload, deleted when its job terminates
- results/results-<job>.csv   annotated output, kept until the retention purge

Security considerations:
- Result paths are built from the job id only, never from user input
- Requested download names must fully match RESULT_NAME_PATTERN before any
  filesystem access happens
"""

import logging
import re
import time
import uuid
from pathlib import Path
from typing import Any

from config import Config

logger = logging.getLogger(__name__)

RESULT_PREFIX = "results-"
RESULT_SUFFIX = ".csv"
DOWNLOAD_ROUTE = "/api/download/"

# results-<uuid4>.csv, lowercase hex as produced by str(uuid.uuid4())
RESULT_NAME_PATTERN = re.compile(
    r"^results-([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})\.csv$"
)


class AccessDenied(Exception):
    """Requested result name breaks the naming contract."""


class ResultNotFound(Exception):
    """Result is unknown, not yet complete, or was purged."""


def uploads_dir() -> Path:
    return Path(Config.STORAGE_DIR) / "uploads"


def results_dir() -> Path:
    return Path(Config.STORAGE_DIR) / "results"


def ensure_storage_dirs() -> None:
    """Create storage directories if they don't exist."""
    uploads_dir().mkdir(parents=True, exist_ok=True)
    results_dir().mkdir(parents=True, exist_ok=True)


def new_upload_path() -> Path:
    """Allocate a fresh, unpredictable path for an incoming upload."""
    ensure_storage_dirs()
    return uploads_dir() / f"{uuid.uuid4().hex}.csv"


def remove_upload(path: str | Path) -> bool:
    """
    Delete an upload file.
    Returns True if a file was removed. Errors are logged, never raised.
    """
    try:
        Path(path).unlink()
        return True
    except FileNotFoundError:
        logger.warning(f"Upload already removed: {path}")
        return False
    except OSError as e:
        logger.error(f"Could not remove upload {path}: {e}")
        return False


def result_filename(job_id: str) -> str:
    return f"{RESULT_PREFIX}{job_id}{RESULT_SUFFIX}"


def result_path(job_id: str) -> Path:
    """Output path of a job. Raises ValueError for ids that cannot form a valid name."""
    name = result_filename(job_id)
    if not RESULT_NAME_PATTERN.match(name):
        raise ValueError(f"Invalid job_id: {job_id}")
    return results_dir() / name


def download_url(job_id: str) -> str:
    """Public download path of a job's result file."""
    return f"{DOWNLOAD_ROUTE}{result_filename(job_id)}"


def check_result_name(name: str) -> str:
    """
    Validate a requested result name and return the job id it encodes.
    Pure string check; raises AccessDenied.
    """
    if not name or ".." in name or "/" in name or "\\" in name:
        raise AccessDenied(name)
    match = RESULT_NAME_PATTERN.match(name)
    if not match:
        raise AccessDenied(name)
    return match.group(1)


def resolve_result(name: str, lifecycle: Any) -> Path:
    """
    Resolve a requested result filename to a servable file.

    The name is checked before anything else is touched. A file is only
    served once its job reached 'completed'.

    Raises:
        AccessDenied: name contains traversal or does not match the pattern
        ResultNotFound: unknown or unfinished job, or file no longer on disk
    """
    job_id = check_result_name(name)

    job = lifecycle.get(job_id)
    if job is None or job.get("status") != "completed":
        raise ResultNotFound(name)

    path = results_dir() / name
    if not path.is_file():
        raise ResultNotFound(name)
    return path


def purge_expired_results(retention_days: int) -> int:
    """
    Delete result files older than retention_days.
    Returns the number of files removed.
    """
    directory = results_dir()
    if not directory.exists():
        return 0

    cutoff = time.time() - retention_days * 86400
    removed = 0
    for path in directory.glob(f"{RESULT_PREFIX}*{RESULT_SUFFIX}"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.warning(f"Could not purge result {path.name}: {e}")
    return removed


def purge_stale_uploads() -> int:
    """
    Delete uploads left behind by a previous process.
    Only safe at startup, before any job has been dispatched.
    """
    directory = uploads_dir()
    if not directory.exists():
        return 0

    removed = 0
    for path in directory.glob("*.csv"):
        if remove_upload(path):
            removed += 1
    return removed


def get_storage_stats() -> dict[str, Any]:
    """Get storage usage statistics."""

    def get_dir_size(path: Path) -> tuple[int, int]:
        total = 0
        count = 0
        if path.exists():
            for f in path.iterdir():
                if f.is_file():
                    total += f.stat().st_size
                    count += 1
        return total, count

    uploads_size, uploads_count = get_dir_size(uploads_dir())
    results_size, results_count = get_dir_size(results_dir())
    return {
        "storage_dir": Config.STORAGE_DIR,
        "uploads_size_bytes": uploads_size,
        "uploads_count": uploads_count,
        "results_size_bytes": results_size,
        "results_count": results_count,
    }
