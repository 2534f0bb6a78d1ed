"""Custom exceptions for the backup-and-reformat workflow.

Every exception carries a ``kind`` naming the failure, which is what the
workflow writes into its single failure log line.

Exception Hierarchy:
    DashcamBackupError (base)
        ├── DeviceError
        │   ├── DeviceNotFoundError        (DeviceNotFound)
        │   └── UnsupportedPlatformError   (UnsupportedPlatform)
        ├── MountError
        │   └── UnmountFailedError         (UnmountError)
        ├── FormatError                    (FormatError)
        │   ├── UnsupportedFilesystemError (UnsupportedFilesystem)
        │   └── FormatOperationError       (FormatError)
        ├── ToolMissingError               (ToolMissing)
        ├── RemoteError
        │   ├── RemoteUnreachableError     (RemoteUnreachable)
        │   ├── InsufficientSpaceError     (InsufficientSpace)
        │   ├── TransferError              (TransferError)
        │   └── VerificationError          (VerificationError)
        └── WorkflowError
            ├── AlreadyRunningError        (AlreadyRunning)
            ├── SourceNotFoundError        (SourceNotFound)
            ├── OperatorAbortedError       (OperatorAborted)
            └── InterruptedRunError        (Interrupted)

Usage:
    from dashcam_backup.exceptions import DeviceNotFoundError

    if not device_node:
        raise DeviceNotFoundError(mount_path)
"""

from __future__ import annotations


class DashcamBackupError(Exception):
    """Base exception for all backup workflow errors."""

    kind = "Error"


class DeviceError(DashcamBackupError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """No block device backs the given mount path."""

    kind = "DeviceNotFound"

    def __init__(self, mount_path: str, reason: str = ""):
        self.mount_path = mount_path
        self.reason = reason
        msg = f"No device found for {mount_path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnsupportedPlatformError(DeviceError):
    """Host operating system has no device resolver."""

    kind = "UnsupportedPlatform"

    def __init__(self, platform_name: str):
        self.platform_name = platform_name
        super().__init__(f"Unsupported platform: {platform_name or '(unknown)'}")


class MountError(DashcamBackupError):
    """Base exception for mount-related errors."""


class UnmountFailedError(MountError):
    """Failed to unmount the source volume."""

    kind = "UnmountError"

    def __init__(self, device: str, reason: str = ""):
        self.device = device
        self.reason = reason
        msg = f"Failed to unmount {device}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class FormatError(DashcamBackupError):
    """Base exception for format operations."""

    kind = "FormatError"


class UnsupportedFilesystemError(FormatError):
    """Requested filesystem type cannot be created."""

    kind = "UnsupportedFilesystem"

    def __init__(self, fs_type: object):
        self.fs_type = fs_type
        super().__init__(f"Unsupported filesystem type: {fs_type!r}")


class FormatOperationError(FormatError):
    """Formatting tool ran and failed."""

    def __init__(self, message: str, device: str | None = None):
        self.device = device
        super().__init__(message)


class ToolMissingError(DashcamBackupError):
    """A required external tool is not installed."""

    kind = "ToolMissing"

    def __init__(self, tool: str, hint: str = ""):
        self.tool = tool
        self.hint = hint
        msg = f"{tool} not found"
        if hint:
            msg += f". {hint}"
        super().__init__(msg)


class RemoteError(DashcamBackupError):
    """Base exception for remote destination errors."""


class RemoteUnreachableError(RemoteError):
    """Remote destination did not answer a listing call."""

    kind = "RemoteUnreachable"

    def __init__(self, destination: str, timeout: float | None = None):
        self.destination = destination
        self.timeout = timeout
        msg = f"Remote {destination} is not reachable"
        if timeout is not None:
            msg += f" (timeout {timeout:g}s)"
        super().__init__(msg)


class InsufficientSpaceError(RemoteError):
    """Remote destination has less free space than the source needs."""

    kind = "InsufficientSpace"

    def __init__(self, destination: str, required_bytes: int, available_bytes: int):
        self.destination = destination
        self.required_bytes = required_bytes
        self.available_bytes = available_bytes
        super().__init__(
            f"Destination {destination} has {available_bytes} bytes free, "
            f"source needs {required_bytes} bytes"
        )


class TransferError(RemoteError):
    """Copy to the remote destination failed."""

    kind = "TransferError"

    def __init__(self, message: str, returncode: int | None = None):
        self.returncode = returncode
        super().__init__(message)


class VerificationError(RemoteError):
    """Destination does not match the source."""

    kind = "VerificationError"

    def __init__(self, message: str, returncode: int | None = None):
        self.returncode = returncode
        super().__init__(message)


class WorkflowError(DashcamBackupError):
    """Base exception for run-level errors."""


class AlreadyRunningError(WorkflowError):
    """Another instance holds the run lock."""

    kind = "AlreadyRunning"

    def __init__(self, lock_path: str, owner: str = ""):
        self.lock_path = lock_path
        self.owner = owner
        msg = f"Another instance is already running (lock {lock_path}"
        if owner:
            msg += f", held by pid {owner}"
        super().__init__(msg + ")")


class SourceNotFoundError(WorkflowError):
    """Source mount path does not exist."""

    kind = "SourceNotFound"

    def __init__(self, source_path: str):
        self.source_path = source_path
        super().__init__(f"Source not found: {source_path}")


class OperatorAbortedError(WorkflowError):
    """Operator declined a confirmation prompt."""

    kind = "OperatorAborted"


class InterruptedRunError(WorkflowError):
    """Run was cancelled by a signal."""

    kind = "Interrupted"

    def __init__(self, signal_name: str = "SIGINT"):
        self.signal_name = signal_name
        super().__init__(f"Interrupted by {signal_name}")
