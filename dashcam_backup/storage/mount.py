"""Unmount the source volume ahead of reformatting.

macOS unmounts the whole disk through ``diskutil unmountDisk`` so no sibling
volume keeps the card busy; Linux unmounts the mount path with ``umount``.
"""

from __future__ import annotations

from typing import Callable

from dashcam_backup.domain import DeviceHandle
from dashcam_backup.exceptions import UnmountFailedError, UnsupportedPlatformError
from dashcam_backup.logging import LoggerFactory
from dashcam_backup.storage.devices import (
    PLATFORM_LINUX,
    PLATFORM_MACOS,
    current_platform,
    run_command,
)


log = LoggerFactory.for_device()

Unmounter = Callable[[DeviceHandle], None]


def _validate_device_path(device_path: str) -> bool:
    """Validate that device path starts with /dev/."""
    return device_path.startswith("/dev/")


def _run_unmount(command: list[str], target: str) -> None:
    try:
        result = run_command(command, check=False)
    except OSError as error:
        raise UnmountFailedError(target, str(error)) from error
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        raise UnmountFailedError(target, stderr or f"exit code {result.returncode}")


def unmount_volume_macos(handle: DeviceHandle) -> None:
    """Unmount every volume on the disk behind ``handle``.

    Raises:
        UnmountFailedError: If diskutil refuses or the node looks wrong
    """
    target = handle.erase_target
    if not _validate_device_path(target):
        raise UnmountFailedError(target, "not a /dev/ path")
    log.info(f"Unmounting {target}")
    _run_unmount(["diskutil", "unmountDisk", target], target)


def unmount_volume_linux(handle: DeviceHandle) -> None:
    """Unmount the mount path behind ``handle``.

    Raises:
        UnmountFailedError: If umount exits non-zero
    """
    log.info(f"Unmounting {handle.mount_path} ({handle.device_identifier})")
    _run_unmount(["umount", handle.mount_path], handle.device_identifier)


_UNMOUNTERS: dict[str, Unmounter] = {
    PLATFORM_MACOS: unmount_volume_macos,
    PLATFORM_LINUX: unmount_volume_linux,
}


def get_unmounter(platform_name: str | None = None) -> Unmounter:
    """Pick the unmount function for ``platform_name`` (defaults to this host).

    Raises:
        UnsupportedPlatformError: For any platform other than Darwin or Linux
    """
    if platform_name is None:
        platform_name = current_platform()
    try:
        return _UNMOUNTERS[platform_name]
    except KeyError:
        raise UnsupportedPlatformError(platform_name) from None

