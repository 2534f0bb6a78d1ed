"""Process-wide run lock so only one backup-and-reformat runs at a time.

The lock is a marker file keyed by the program's identity, not by the source
volume: one operator, one card, one run. Acquisition is an atomic
create-if-absent (``O_CREAT | O_EXCL``), so of two racing instances exactly
one wins. The marker holds the owner's pid for diagnostics.

Usage:
    from dashcam_backup.storage.run_lock import RunLock

    with RunLock(LOCK_PATH):
        # Back up and reformat
        ...
"""

from __future__ import annotations

import contextlib
import os
from pathlib import Path

from dashcam_backup.exceptions import AlreadyRunningError
from dashcam_backup.logging import LoggerFactory


log = LoggerFactory.for_system()


class RunLock:
    def __init__(self, path: Path | str):
        self.path = Path(path)
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> RunLock:
        """Create the lock marker or fail if another instance owns it.

        Raises:
            AlreadyRunningError: If the marker already exists
        """
        if self._held:
            return self
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise AlreadyRunningError(str(self.path), self._read_owner()) from None
        with os.fdopen(fd, "w", encoding="utf-8") as marker:
            marker.write(f"{os.getpid()}\n")
        self._held = True
        log.debug(f"Acquired run lock {self.path}")
        return self

    def release(self) -> None:
        """Remove the marker. Safe to call more than once."""
        if not self._held:
            return
        with contextlib.suppress(FileNotFoundError):
            self.path.unlink()
        self._held = False
        log.debug(f"Released run lock {self.path}")

    def _read_owner(self) -> str:
        try:
            return self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return ""

    def __enter__(self) -> RunLock:
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
