"""Reformat the SD card with a fresh filesystem.

Supported Filesystems:
    exFAT:  default for dashcam cards larger than 32GB
    FAT32:  for dashcams that only read FAT32

Platform Tools:
    macOS:  diskutil eraseDisk <ExFAT|FAT32> <label> MBRFormat <disk>
    Linux:  mkfs.exfat -n <label> <device>
            mkfs.vfat -F 32 -n <label> <device>

Operations:
    - ensure_available(): Fail fast when the tool or label is unusable, so
      the card is never unmounted only to find formatting impossible
    - format(): Create the filesystem (irreversible, no confirmation here)

Example:
    >>> from dashcam_backup.storage.format import get_format_gateway
    >>> gateway = get_format_gateway("Linux")
    >>> gateway.ensure_available(FilesystemType.FAT32, "NO NAME")
    >>> gateway.format(handle, FilesystemType.FAT32, "NO NAME")
"""

from __future__ import annotations

import shutil
import subprocess
from abc import ABC, abstractmethod

from dashcam_backup.domain import DeviceHandle, FilesystemType
from dashcam_backup.exceptions import (
    FormatOperationError,
    ToolMissingError,
    UnsupportedPlatformError,
)
from dashcam_backup.logging import LoggerFactory
from dashcam_backup.storage.devices import (
    PLATFORM_LINUX,
    PLATFORM_MACOS,
    current_platform,
    run_command,
)


log = LoggerFactory.for_format()

# FAT volume labels are limited to 11 characters, exFAT to 15
MAX_LABEL_LENGTH = {
    FilesystemType.FAT32: 11,
    FilesystemType.EXFAT: 15,
}


def validate_label(fs_type: FilesystemType, label: str) -> None:
    max_length = MAX_LABEL_LENGTH[fs_type]
    if len(label) > max_length:
        raise FormatOperationError(
            f"Label {label!r} is longer than {max_length} characters allowed for {fs_type}"
        )


class FormatGateway(ABC):
    """Create a filesystem on a resolved device."""

    platform_name: str = ""

    @abstractmethod
    def command_for(
        self, device: DeviceHandle, fs_type: FilesystemType, label: str
    ) -> list[str]:
        """Build the format command line."""

    @abstractmethod
    def required_tool(self, fs_type: FilesystemType) -> tuple[str, str]:
        """Return (executable, install hint) needed for ``fs_type``."""

    def ensure_available(self, fs_type: FilesystemType | str, label: str) -> None:
        """Check that ``fs_type`` can be created with ``label`` on this host.

        Raises:
            UnsupportedFilesystemError: If fs_type is not exFAT or FAT32
            ToolMissingError: If the formatting tool is not installed
            FormatOperationError: If the label is too long for fs_type
        """
        fs_type = FilesystemType.parse(fs_type)
        tool, hint = self.required_tool(fs_type)
        if shutil.which(tool) is None:
            raise ToolMissingError(tool, hint)
        validate_label(fs_type, label)

    def format(
        self, device: DeviceHandle, fs_type: FilesystemType | str, label: str
    ) -> None:
        """Format ``device`` as ``fs_type`` with volume ``label``.

        Raises:
            UnsupportedFilesystemError: If fs_type is not exFAT or FAT32
            ToolMissingError: If the formatting tool is not installed
            FormatOperationError: If the tool exits non-zero
        """
        fs_type = FilesystemType.parse(fs_type)
        self.ensure_available(fs_type, label)
        command = self.command_for(device, fs_type, label)
        log.info(f"Formatting {device.device_identifier} as {fs_type} (label '{label}')")

        try:
            result = run_command(command, check=False)
        except (OSError, subprocess.SubprocessError) as error:
            raise FormatOperationError(
                f"Failed to run {command[0]}: {error}", device=device.device_identifier
            ) from error

        if result.returncode != 0:
            stderr_output = (result.stderr or "").strip() or "no error message"
            log.error(f"Format command failed with code {result.returncode}")
            log.error(f"Command: {' '.join(command)}")
            log.error(f"Error output: {stderr_output}")
            raise FormatOperationError(
                f"{command[0]} exited with code {result.returncode}: {stderr_output}",
                device=device.device_identifier,
            )

        log.debug(f"Successfully formatted {device.device_identifier} as {fs_type}")


class DiskutilFormatGateway(FormatGateway):
    """macOS formatter. Erases the whole disk with a fresh MBR."""

    platform_name = PLATFORM_MACOS

    PERSONALITIES = {
        FilesystemType.EXFAT: "ExFAT",
        FilesystemType.FAT32: "FAT32",
    }

    def required_tool(self, fs_type: FilesystemType) -> tuple[str, str]:
        return "diskutil", "diskutil ships with macOS"

    def command_for(
        self, device: DeviceHandle, fs_type: FilesystemType, label: str
    ) -> list[str]:
        return [
            "diskutil",
            "eraseDisk",
            self.PERSONALITIES[fs_type],
            label,
            "MBRFormat",
            device.erase_target,
        ]


class MkfsFormatGateway(FormatGateway):
    """Linux formatter. Writes the filesystem onto the mounted partition."""

    platform_name = PLATFORM_LINUX

    TOOLS = {
        FilesystemType.EXFAT: ("mkfs.exfat", "Install exfatprogs (or exfat-utils)."),
        FilesystemType.FAT32: ("mkfs.vfat", "Install dosfstools."),
    }

    def required_tool(self, fs_type: FilesystemType) -> tuple[str, str]:
        return self.TOOLS[fs_type]

    def command_for(
        self, device: DeviceHandle, fs_type: FilesystemType, label: str
    ) -> list[str]:
        if fs_type is FilesystemType.FAT32:
            return ["mkfs.vfat", "-F", "32", "-n", label, device.device_identifier]
        return ["mkfs.exfat", "-n", label, device.device_identifier]


_GATEWAYS: dict[str, type[FormatGateway]] = {
    PLATFORM_MACOS: DiskutilFormatGateway,
    PLATFORM_LINUX: MkfsFormatGateway,
}


def get_format_gateway(platform_name: str | None = None) -> FormatGateway:
    """Pick the format gateway for ``platform_name`` (defaults to this host).

    Raises:
        UnsupportedPlatformError: For any platform other than Darwin or Linux
    """
    if platform_name is None:
        platform_name = current_platform()
    gateway_cls = _GATEWAYS.get(platform_name)
    if gateway_cls is None:
        raise UnsupportedPlatformError(platform_name)
    return gateway_cls()
