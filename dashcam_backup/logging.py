from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "DASHCAM_BACKUP_LOG_DIR",
        Path.home() / ".local" / "state" / "dashcam-backup" / "logs",
    )
)

LOG_FILENAME = "dashcam-backup.log"


def setup_logging(
    *,
    verbose: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup console and file logging for a backup run.

    Every line is written to both sinks, so the terminal mirrors the
    persistent log.

    Log Files:
    - dashcam-backup.log: append-only, never rotated (INFO+, DEBUG+ when verbose)

    Args:
        verbose: Enable DEBUG level logging on both sinks
        log_dir: Custom log directory (defaults to ~/.local/state/dashcam-backup/logs)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "APP"})

    level = "DEBUG" if verbose else "INFO"

    # SINK 1: Console (stderr) - operator-facing
    logger.add(
        sys.stderr,
        level=level,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    # SINK 2: Run log - append-only record of every run
    logger.add(
        log_dir / LOG_FILENAME,
        level=level,
        mode="a",
        enqueue=True,
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking a run
        tags: Tags for filtering (e.g., ["rclone", "copy"])
        source: Source component (e.g., "workflow", "transfer")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


def new_job_id(prefix: str = "backup") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


@contextmanager
def operation_context(operation: str, log: Logger | None = None, **details):
    """
    Context manager for tracking long-running steps with automatic timing.

    Logs step start, completion, and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "copy", "verify", "format")
        log: Logger to bind onto (defaults to the global logger)
        **details: Operation-specific details to log

    Example:
        with operation_context("copy", source="/Volumes/NO NAME") as log:
            log.debug("Starting rclone")
    """
    bound = (log or logger).bind(operation=operation, **details)
    start_time = time.time()
    bound.debug(f"{operation.capitalize()} started")
    try:
        yield bound
    except BaseException as e:
        duration = time.time() - start_time
        bound.debug(
            f"{operation.capitalize()} did not complete after {duration:.2f}s "
            f"({type(e).__name__})"
        )
        raise
    duration = time.time() - start_time
    bound.debug(f"{operation.capitalize()} completed in {duration:.2f}s")


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_workflow(job_id: str | None = None) -> Logger:
        """Logger for the backup-and-reformat run."""
        if job_id is None:
            job_id = new_job_id()
        return get_logger(job_id=job_id, source="workflow", tags=["workflow"])

    @staticmethod
    def for_transfer() -> Logger:
        """Logger for rclone copy, check and remote queries."""
        return get_logger(source="transfer", tags=["transfer", "rclone"])

    @staticmethod
    def for_device() -> Logger:
        """Logger for device resolution and unmounting."""
        return get_logger(source="device", tags=["device", "storage"])

    @staticmethod
    def for_format() -> Logger:
        """Logger for filesystem creation."""
        return get_logger(source="format", tags=["format", "storage"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, shutdown and config."""
        return get_logger(source="system", tags=["system"])
