"""Settings storage and run configuration.

Precedence, lowest first: built-in defaults, settings file, environment,
command-line flags.
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from dashcam_backup.domain import (
    DEFAULT_LABEL,
    DEFAULT_MARKER_DIR,
    DEFAULT_PROGRESS_INTERVAL_SECONDS,
    DEFAULT_REACHABILITY_TIMEOUT,
    FilesystemType,
    RunConfig,
)
from dashcam_backup.logging import LoggerFactory


log = LoggerFactory.for_system()

SETTINGS_PATH = Path(
    os.environ.get(
        "DASHCAM_BACKUP_SETTINGS_PATH",
        Path.home() / ".config" / "dashcam-backup" / "settings.json",
    )
)

LOCK_PATH = Path(
    os.environ.get(
        "DASHCAM_BACKUP_LOCK_PATH",
        Path(tempfile.gettempdir()) / "dashcam-backup.lock",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_SOURCE = "/Volumes/NO NAME"
DEFAULT_DEST_REMOTE = "icloud:DashcamBackup"
DEFAULT_FS_TYPE = FilesystemType.EXFAT.value

DEFAULT_SETTINGS: dict[str, Any] = {
    "source": DEFAULT_SOURCE,
    "dest": DEFAULT_DEST_REMOTE,
    "fs_type": DEFAULT_FS_TYPE,
    "label": DEFAULT_LABEL,
    "marker_dir": DEFAULT_MARKER_DIR,
    "reachability_timeout": DEFAULT_REACHABILITY_TIMEOUT,
    "progress_interval_seconds": DEFAULT_PROGRESS_INTERVAL_SECONDS,
}

ENV_OVERRIDES = {
    "source": "DASHCAM_BACKUP_SOURCE",
    "dest": "DASHCAM_BACKUP_DEST",
    "fs_type": "DASHCAM_BACKUP_FS_TYPE",
    "label": "DASHCAM_BACKUP_LABEL",
    "marker_dir": "DASHCAM_BACKUP_MARKER_DIR",
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def _coerce(key: str, value: Any) -> Any:
    """Convert a settings-file ``value`` to the type of the default for ``key``.

    Raises:
        TypeError: If the value has the wrong JSON type
        ValueError: If the value cannot be converted or is not positive
    """
    default = DEFAULT_SETTINGS[key]
    if isinstance(default, str):
        if not isinstance(value, str):
            raise TypeError(f"expected a string, got {type(value).__name__}")
        return value
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise TypeError(f"expected a number, got {type(value).__name__}")
    number = type(default)(value)
    if not number > 0:
        raise ValueError("must be a positive number")
    return number


def load_settings(path: Path | None = None) -> None:
    """Reset the store to defaults, then layer the settings file on top.

    A missing or unreadable file leaves the defaults in place. Unknown keys
    are ignored; a known key whose value does not fit its default's type is
    dropped with a warning and keeps the default.
    """
    settings_store.values = dict(DEFAULT_SETTINGS)
    path = path or SETTINGS_PATH
    if not path.exists():
        return
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        log.warning(f"Ignoring unreadable settings file {path}: {error}")
        return
    if not isinstance(data, dict):
        log.warning(f"Ignoring settings file {path}: expected a JSON object")
        return
    for key, value in data.items():
        if key not in DEFAULT_SETTINGS:
            continue
        try:
            settings_store.values[key] = _coerce(key, value)
        except (TypeError, ValueError) as error:
            log.warning(f"Ignoring setting {key}={value!r} in {path}: {error}")


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)



def _env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    overrides = {}
    for key, env_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value:
            overrides[key] = value
    return overrides


def load_run_config(
    flags: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> RunConfig:
    """Build the immutable RunConfig for this run.

    Args:
        flags: Values given on the command line; ``None`` means "not given"
        environ: Environment to read overrides from (defaults to os.environ)

    Raises:
        UnsupportedFilesystemError: If the resolved fs_type is not supported
    """
    flags = flags or {}
    environ = os.environ if environ is None else environ

    values = {
        key: get_setting(key, default) for key, default in DEFAULT_SETTINGS.items()
    }
    values.update(_env_overrides(environ))
    values.update(
        {key: value for key, value in flags.items() if value is not None}
    )

    return RunConfig(
        source_path=str(values["source"]),
        dest_remote=str(values["dest"]),
        fs_type=FilesystemType.parse(values["fs_type"]),
        label=str(values["label"]),
        dry_run=bool(values.get("dry_run", False)),
        auto_confirm=bool(values.get("auto_confirm", False)),
        verbose=bool(values.get("verbose", False)),
        marker_dir=str(values["marker_dir"]),
        reachability_timeout=float(values["reachability_timeout"]),
        progress_interval_seconds=int(values["progress_interval_seconds"]),
    )


load_settings()
