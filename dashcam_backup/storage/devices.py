"""Block device resolution for a mounted volume.

Given the mount path of the SD card, find the block device node behind it so
it can be unmounted and reformatted. Two platform variants sit behind the
same ``DeviceResolver`` interface:

    macOS (Darwin):  ``diskutil info -plist <mount>`` -> ``DeviceNode``
    Linux:           ``findmnt -nr -o SOURCE <mount>`` -> backing device

Resolution is read-only and must be repeated right before the device is
used; identifiers change when a card is swapped between runs.

Example:
    >>> from dashcam_backup.storage.devices import get_device_resolver
    >>> handle = get_device_resolver("Darwin").resolve("/Volumes/NO NAME")
    >>> handle.device_identifier
    '/dev/disk4s1'
"""

from __future__ import annotations

import os
import platform
import plistlib
import subprocess
from abc import ABC, abstractmethod

from dashcam_backup.domain import DeviceHandle
from dashcam_backup.exceptions import DeviceNotFoundError, UnsupportedPlatformError
from dashcam_backup.logging import LoggerFactory


log = LoggerFactory.for_device()

PLATFORM_MACOS = "Darwin"
PLATFORM_LINUX = "Linux"


def run_command(command, check=True, log_output=True, log_command=True, timeout=None):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            check=check,
            text=True,
            encoding="utf-8",
            errors="replace",
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def current_platform() -> str:
    return platform.system()


def directory_size(path: str) -> int:
    """Total size in bytes of every regular file under ``path``."""
    total = 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            file_path = os.path.join(root, name)
            if os.path.islink(file_path):
                continue
            try:
                total += os.path.getsize(file_path)
            except OSError as error:
                log.debug(f"Skipping unreadable file {file_path}: {error}")
    return total


class DeviceResolver(ABC):
    """Find the block device backing a mount path."""

    platform_name: str = ""

    @abstractmethod
    def resolve(self, mount_path: str) -> DeviceHandle:
        """Return a fresh DeviceHandle for ``mount_path``.

        Raises:
            DeviceNotFoundError: If no device backs the mount path
        """


class DiskutilDeviceResolver(DeviceResolver):
    """macOS resolver reading ``diskutil info -plist``."""

    platform_name = PLATFORM_MACOS

    def resolve(self, mount_path: str) -> DeviceHandle:
        try:
            result = run_command(
                ["diskutil", "info", "-plist", mount_path], log_output=False
            )
            info = plistlib.loads(result.stdout.encode("utf-8"))
        except (subprocess.CalledProcessError, OSError) as error:
            raise DeviceNotFoundError(mount_path, "diskutil info failed") from error
        except plistlib.InvalidFileException as error:
            raise DeviceNotFoundError(
                mount_path, "unreadable diskutil output"
            ) from error

        device_node = info.get("DeviceNode") if isinstance(info, dict) else None
        if not device_node:
            raise DeviceNotFoundError(mount_path, "no Device Node in diskutil info")

        whole_disk = info.get("ParentWholeDisk")
        if whole_disk and not whole_disk.startswith("/dev/"):
            whole_disk = f"/dev/{whole_disk}"

        log.debug(f"Resolved {mount_path} to {device_node} (whole disk {whole_disk})")
        return DeviceHandle(
            mount_path=mount_path,
            device_identifier=device_node,
            whole_disk=whole_disk or None,
        )


class FindmntDeviceResolver(DeviceResolver):
    """Linux resolver reading the mount table via ``findmnt``."""

    platform_name = PLATFORM_LINUX

    def resolve(self, mount_path: str) -> DeviceHandle:
        try:
            result = run_command(
                ["findmnt", "-nr", "-o", "SOURCE", "--mountpoint", mount_path],
                check=False,
            )
        except OSError as error:
            raise DeviceNotFoundError(mount_path, "findmnt failed") from error

        lines = [line.strip() for line in (result.stdout or "").splitlines()]
        device = next((line for line in lines if line), "")
        if result.returncode != 0 or not device:
            raise DeviceNotFoundError(mount_path, "no matching mount entry")

        log.debug(f"Resolved {mount_path} to {device}")
        return DeviceHandle(mount_path=mount_path, device_identifier=device)


_RESOLVERS: dict[str, type[DeviceResolver]] = {
    PLATFORM_MACOS: DiskutilDeviceResolver,
    PLATFORM_LINUX: FindmntDeviceResolver,
}


def get_device_resolver(platform_name: str | None = None) -> DeviceResolver:
    """Pick the resolver for ``platform_name`` (defaults to this host).

    Raises:
        UnsupportedPlatformError: For any platform other than Darwin or Linux
    """
    if platform_name is None:
        platform_name = current_platform()
    resolver_cls = _RESOLVERS.get(platform_name)
    if resolver_cls is None:
        raise UnsupportedPlatformError(platform_name)
    return resolver_cls()
