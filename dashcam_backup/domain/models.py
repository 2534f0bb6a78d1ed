"""Domain model for a single backup-and-reformat run.

Everything here is transient: built once per run, never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from dashcam_backup.exceptions import DashcamBackupError, UnsupportedFilesystemError


# ==============================================================================
# Configuration
# ==============================================================================

DEFAULT_LABEL = "NO NAME"
DEFAULT_MARKER_DIR = "DCIM"
DEFAULT_REACHABILITY_TIMEOUT = 30.0
DEFAULT_PROGRESS_INTERVAL_SECONDS = 60


class FilesystemType(Enum):
    """Filesystems the card can be reformatted with."""

    EXFAT = "exFAT"
    FAT32 = "FAT32"

    @classmethod
    def parse(cls, value: str | FilesystemType) -> FilesystemType:
        """Parse a case-insensitive name such as ``exfat`` or ``FAT32``.

        Raises:
            UnsupportedFilesystemError: If the name is not a supported type
        """
        if isinstance(value, cls):
            return value
        normalized = str(value or "").strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise UnsupportedFilesystemError(value)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class RunConfig:
    """Immutable settings for one run, resolved from defaults, env and flags."""

    source_path: str
    dest_remote: str
    fs_type: FilesystemType = FilesystemType.EXFAT
    label: str = DEFAULT_LABEL
    dry_run: bool = False
    auto_confirm: bool = False
    verbose: bool = False
    marker_dir: str = DEFAULT_MARKER_DIR
    reachability_timeout: float = DEFAULT_REACHABILITY_TIMEOUT
    progress_interval_seconds: int = DEFAULT_PROGRESS_INTERVAL_SECONDS


# ==============================================================================
# Run results
# ==============================================================================


@dataclass(frozen=True)
class CapacityCheck:
    required_bytes: int
    available_bytes: int

    @property
    def sufficient(self) -> bool:
        return self.required_bytes <= self.available_bytes


@dataclass
class PreflightResult:
    """Outcome of the checks run before any data moves."""

    source_exists: bool = False
    has_expected_marker_dir: bool = False
    remote_reachable: bool = False
    capacity_check: CapacityCheck | None = None


@dataclass
class TransferOutcome:
    copy_succeeded: bool = False
    verify_succeeded: bool = False


@dataclass(frozen=True)
class DeviceHandle:
    """A mount path and the block device behind it.

    ``whole_disk`` is only known on macOS, where erasing targets the
    parent disk rather than the volume's slice.
    """

    mount_path: str
    device_identifier: str
    whole_disk: str | None = None

    @property
    def erase_target(self) -> str:
        """Device node the formatter should be pointed at."""
        return self.whole_disk or self.device_identifier


class RunState(Enum):
    START = "START"
    PREFLIGHT = "PREFLIGHT"
    TRANSFER = "TRANSFER"
    VERIFY = "VERIFY"
    CONFIRM = "CONFIRM"
    UNMOUNT = "UNMOUNT"
    FORMAT = "FORMAT"
    DONE = "DONE"
    FAILED = "FAILED"
    ABORTED = "ABORTED"


@dataclass
class RunResult:
    """Final state of a run plus everything learned along the way."""

    state: RunState
    failed_at: RunState | None = None
    error: DashcamBackupError | None = None
    preflight: PreflightResult = field(default_factory=PreflightResult)
    transfer: TransferOutcome = field(default_factory=TransferOutcome)
    device: DeviceHandle | None = None
    history: list[RunState] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.state is RunState.DONE

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1
