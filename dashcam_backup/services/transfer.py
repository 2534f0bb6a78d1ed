"""Remote transfer service backed by rclone.

The workflow only needs four things from the remote: is it reachable, how
much room does it have, copy the card there, and confirm the copy. rclone
does all the actual work; this module builds the command lines, streams
their output into the log and turns exit codes into exceptions.

Commands:
    reachability:  rclone lsd <remote>: --max-depth 1
    free space:    rclone about <remote>: --json
    copy:          rclone copy <src> <dest> --stats <N>s --stats-log-level NOTICE
    verify:        rclone check <src> <dest> --one-way --size-only
"""

from __future__ import annotations

import json
import shutil
import subprocess
from collections import deque

from dashcam_backup.domain import (
    DEFAULT_PROGRESS_INTERVAL_SECONDS,
    DEFAULT_REACHABILITY_TIMEOUT,
)
from dashcam_backup.exceptions import ToolMissingError, TransferError, VerificationError
from dashcam_backup.logging import LoggerFactory
from dashcam_backup.storage.devices import run_command

log = LoggerFactory.for_transfer()

# How many trailing lines of rclone output to quote in an error message
ERROR_TAIL_LINES = 5


def remote_root(dest: str) -> str:
    """Return the root of an rclone remote, e.g. ``icloud:Backups`` -> ``icloud:``.

    Destinations without a remote prefix are local paths and returned as-is.
    """
    name, sep, _path = dest.partition(":")
    if not sep or not name:
        return dest
    return f"{name}:"


def _tail(output: str | list[str]) -> str:
    lines = output if isinstance(output, list) else (output or "").splitlines()
    lines = [line.strip() for line in lines if line.strip()]
    return " | ".join(lines[-ERROR_TAIL_LINES:])


class RcloneTransferGateway:
    def __init__(self, rclone_bin: str = "rclone"):
        self.rclone_bin = rclone_bin

    def ensure_installed(self) -> None:
        """Raises ToolMissingError when rclone is not on PATH."""
        if shutil.which(self.rclone_bin) is None:
            raise ToolMissingError(self.rclone_bin, "Install rclone first.")

    def check_reachable(
        self, dest: str, timeout: float = DEFAULT_REACHABILITY_TIMEOUT
    ) -> bool:
        """List the remote root within ``timeout`` seconds.

        Returns False rather than raising on any connectivity, auth or
        tool failure.
        """
        command = [self.rclone_bin, "lsd", remote_root(dest), "--max-depth", "1"]
        try:
            result = run_command(command, check=False, log_output=False, timeout=timeout)
        except subprocess.TimeoutExpired:
            log.warning(f"Listing {remote_root(dest)} timed out after {timeout:g}s")
            return False
        except OSError as error:
            log.warning(f"Could not run rclone: {error}")
            return False
        if result.returncode != 0:
            log.debug(f"rclone lsd failed: {_tail(result.stderr)}")
            return False
        return True

    def query_free_space(self, dest: str) -> int | None:
        """Best-effort free bytes at the remote, or None if unknown.

        Not every rclone backend implements ``about``; that, a failed call or
        unparseable output all yield None.
        """
        command = [self.rclone_bin, "about", remote_root(dest), "--json"]
        try:
            result = run_command(command, check=False, log_output=False)
        except (OSError, subprocess.SubprocessError) as error:
            log.debug(f"rclone about could not run: {error}")
            return None
        if result.returncode != 0:
            log.debug(f"rclone about failed: {_tail(result.stderr)}")
            return None
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            log.debug("rclone about returned invalid JSON")
            return None
        free = data.get("free") if isinstance(data, dict) else None
        if free is None:
            return None
        try:
            return int(free)
        except (TypeError, ValueError):
            return None

    def copy(
        self,
        source: str,
        dest: str,
        *,
        dry_run: bool = False,
        verbose: bool = False,
        progress_interval_seconds: int = DEFAULT_PROGRESS_INTERVAL_SECONDS,
    ) -> None:
        """Copy ``source`` into ``dest``.

        With ``dry_run`` rclone only reports what it would transfer and
        leaves the destination untouched.

        Raises:
            TransferError: If rclone exits non-zero or cannot be started
        """
        command = [
            self.rclone_bin,
            "copy",
            source,
            dest,
            "--stats",
            f"{progress_interval_seconds}s",
            "--stats-log-level",
            "NOTICE",
        ]
        if dry_run:
            command.append("--dry-run")
        if verbose:
            command.append("-v")

        try:
            returncode, output = self._stream(command)
        except OSError as error:
            raise TransferError(f"Could not start rclone: {error}") from error
        if returncode != 0:
            raise TransferError(
                f"rclone copy exited with code {returncode}: {_tail(output)}",
                returncode=returncode,
            )

    def verify(
        self,
        source: str,
        dest: str,
        *,
        one_way: bool = True,
        size_only: bool = True,
        verbose: bool = False,
    ) -> None:
        """Confirm every file under ``source`` is present at ``dest``.

        ``one_way`` ignores files that only exist at the destination.
        ``size_only`` compares sizes instead of checksums, which is much
        faster but cannot catch silent bit-level corruption.

        Raises:
            VerificationError: If any source file is missing or differs
        """
        command = [self.rclone_bin, "check", source, dest]
        if one_way:
            command.append("--one-way")
        if size_only:
            command.append("--size-only")
        if verbose:
            command.append("-v")

        try:
            returncode, output = self._stream(command)
        except OSError as error:
            raise VerificationError(f"Could not start rclone: {error}") from error
        if returncode != 0:
            raise VerificationError(
                f"rclone check found differences (code {returncode}): {_tail(output)}",
                returncode=returncode,
            )

    def _stream(self, command: list[str]) -> tuple[int, list[str]]:
        """Run ``command``, forwarding each output line to the log.

        The child is terminated if the wait is interrupted, so a cancelled
        run never leaves rclone working in the background.
        """
        log.debug(f"Running command: {' '.join(command)}")
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        output: deque[str] = deque(maxlen=ERROR_TAIL_LINES)
        try:
            for line in process.stdout or []:
                line = line.rstrip()
                if line:
                    output.append(line)
                    log.info(f"rclone: {line}")
            returncode = process.wait()
        except BaseException:
            process.terminate()
            try:
                process.wait(timeout=10)
            except subprocess.TimeoutExpired:
                process.kill()
            raise
        log.debug(f"Command completed with return code {returncode}")
        return returncode, list(output)
