"""Domain models for a backup-and-reformat run."""

from __future__ import annotations

from .models import (
    DEFAULT_LABEL,
    DEFAULT_MARKER_DIR,
    DEFAULT_PROGRESS_INTERVAL_SECONDS,
    DEFAULT_REACHABILITY_TIMEOUT,
    CapacityCheck,
    DeviceHandle,
    FilesystemType,
    PreflightResult,
    RunConfig,
    RunResult,
    RunState,
    TransferOutcome,
)


__all__ = [
    "DEFAULT_LABEL",
    "DEFAULT_MARKER_DIR",
    "DEFAULT_PROGRESS_INTERVAL_SECONDS",
    "DEFAULT_REACHABILITY_TIMEOUT",
    "CapacityCheck",
    "DeviceHandle",
    "FilesystemType",
    "PreflightResult",
    "RunConfig",
    "RunResult",
    "RunState",
    "TransferOutcome",
]
