"""Tests for services/transfer.py - the rclone gateway.

This test suite covers:
- Remote root derivation
- rclone presence check
- Reachability with timeout
- Best-effort free space query
- copy/check command lines, streaming and error mapping
- Terminating rclone when the wait is interrupted
"""

import json
import os
import subprocess
from unittest.mock import Mock, patch

import pytest

from dashcam_backup.exceptions import ToolMissingError, TransferError, VerificationError
from dashcam_backup.services.transfer import RcloneTransferGateway, remote_root


def _process(lines, returncode=0):
    process = Mock()
    process.stdout = iter(lines)
    process.wait.return_value = returncode
    return process


def _interrupted_output():
    yield "Transferred: 10 MiB / 2 GiB, 0%\n"
    raise KeyboardInterrupt


class TestRemoteRoot:
    @pytest.mark.parametrize(
        "dest,expected",
        [
            ("icloud:DashcamBackup", "icloud:"),
            ("icloud:", "icloud:"),
            ("gdrive:Cars/Front/2024", "gdrive:"),
            ("/mnt/nas/dashcam", "/mnt/nas/dashcam"),
        ],
    )
    def test_remote_root(self, dest, expected):
        assert remote_root(dest) == expected


class TestEnsureInstalled:
    @patch("dashcam_backup.services.transfer.shutil.which", return_value="/usr/bin/rclone")
    def test_installed(self, mock_which):
        RcloneTransferGateway().ensure_installed()

        mock_which.assert_called_once_with("rclone")

    @patch("dashcam_backup.services.transfer.shutil.which", return_value=None)
    def test_missing(self, mock_which):
        with pytest.raises(ToolMissingError) as exc_info:
            RcloneTransferGateway().ensure_installed()

        assert exc_info.value.tool == "rclone"


class TestCheckReachable:
    """Tests for check_reachable()."""

    @patch("dashcam_backup.services.transfer.run_command")
    def test_lists_remote_root(self, mock_run):
        """Test that the listing targets the remote root with the timeout."""
        mock_run.return_value = Mock(returncode=0, stdout="", stderr="")

        assert RcloneTransferGateway().check_reachable("icloud:DashcamBackup", 12.5)

        mock_run.assert_called_once_with(
            ["rclone", "lsd", "icloud:", "--max-depth", "1"],
            check=False,
            log_output=False,
            timeout=12.5,
        )

    @patch("dashcam_backup.services.transfer.run_command")
    def test_nonzero_exit_is_unreachable(self, mock_run):
        mock_run.return_value = Mock(
            returncode=1, stdout="", stderr="Failed to create file system: 401"
        )

        assert not RcloneTransferGateway().check_reachable("icloud:DashcamBackup")

    @patch("dashcam_backup.services.transfer.run_command")
    def test_timeout_is_unreachable(self, mock_run):
        """Test that a hung listing counts as unreachable, not an error."""
        mock_run.side_effect = subprocess.TimeoutExpired("rclone", 30)

        assert not RcloneTransferGateway().check_reachable("icloud:DashcamBackup")

    @patch("dashcam_backup.services.transfer.run_command")
    def test_cannot_start_is_unreachable(self, mock_run):
        mock_run.side_effect = FileNotFoundError("rclone")

        assert not RcloneTransferGateway().check_reachable("icloud:DashcamBackup")


class TestQueryFreeSpace:
    """Tests for query_free_space()."""

    @patch("dashcam_backup.services.transfer.run_command")
    def test_reads_free_bytes(self, mock_run):
        mock_run.return_value = Mock(
            returncode=0,
            stdout=json.dumps({"total": 5368709120, "used": 1073741824, "free": 4294967296}),
            stderr="",
        )

        assert RcloneTransferGateway().query_free_space("icloud:DashcamBackup") == 4294967296
        assert mock_run.call_args[0][0] == ["rclone", "about", "icloud:", "--json"]

    @patch("dashcam_backup.services.transfer.run_command")
    def test_unsupported_backend_is_unknown(self, mock_run):
        """Test that backends without 'about' yield None."""
        mock_run.return_value = Mock(
            returncode=1, stdout="", stderr="about not supported by this backend"
        )

        assert RcloneTransferGateway().query_free_space("s3:bucket") is None

    @patch("dashcam_backup.services.transfer.run_command")
    def test_missing_free_key_is_unknown(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout=json.dumps({"total": 10}), stderr="")

        assert RcloneTransferGateway().query_free_space("icloud:") is None

    @patch("dashcam_backup.services.transfer.run_command")
    def test_invalid_json_is_unknown(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="Total: 5 GiB", stderr="")

        assert RcloneTransferGateway().query_free_space("icloud:") is None

    @patch("dashcam_backup.services.transfer.run_command")
    def test_cannot_start_is_unknown(self, mock_run):
        mock_run.side_effect = OSError("exec format error")

        assert RcloneTransferGateway().query_free_space("icloud:") is None


class TestCopy:
    """Tests for copy()."""

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_command_line(self, mock_popen):
        """Test the rclone copy command with periodic progress stats."""
        mock_popen.return_value = _process([])

        RcloneTransferGateway().copy(
            "/Volumes/NO NAME", "icloud:DashcamBackup", progress_interval_seconds=60
        )

        mock_popen.assert_called_once_with(
            [
                "rclone",
                "copy",
                "/Volumes/NO NAME",
                "icloud:DashcamBackup",
                "--stats",
                "60s",
                "--stats-log-level",
                "NOTICE",
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            errors="replace",
        )

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_dry_run_and_verbose_flags(self, mock_popen):
        mock_popen.return_value = _process([])

        RcloneTransferGateway().copy("/src", "remote:dst", dry_run=True, verbose=True)

        command = mock_popen.call_args[0][0]
        assert "--dry-run" in command
        assert "-v" in command

    @patch("dashcam_backup.services.transfer.log")
    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_progress_lines_logged(self, mock_popen, mock_log):
        """Test that each rclone output line is forwarded to the log."""
        mock_popen.return_value = _process(
            ["Transferred: 1 GiB / 2 GiB, 50%\n", "\n", "Transferred: 2 GiB / 2 GiB, 100%\n"]
        )

        RcloneTransferGateway().copy("/src", "remote:dst")

        logged = [call.args[0] for call in mock_log.info.call_args_list]
        assert logged == [
            "rclone: Transferred: 1 GiB / 2 GiB, 50%",
            "rclone: Transferred: 2 GiB / 2 GiB, 100%",
        ]

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_nonzero_exit_raises(self, mock_popen):
        mock_popen.return_value = _process(
            ["ERROR : clip0001.mp4: Failed to copy: quota exceeded\n"], returncode=7
        )

        with pytest.raises(TransferError) as exc_info:
            RcloneTransferGateway().copy("/src", "remote:dst")

        assert exc_info.value.returncode == 7
        assert "quota exceeded" in str(exc_info.value)

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_cannot_start_raises(self, mock_popen):
        mock_popen.side_effect = FileNotFoundError("rclone")

        with pytest.raises(TransferError):
            RcloneTransferGateway().copy("/src", "remote:dst")

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_interrupt_terminates_rclone(self, mock_popen):
        """Test that an interrupt stops the child and propagates."""
        process = Mock()
        process.stdout = _interrupted_output()
        mock_popen.return_value = process

        with pytest.raises(KeyboardInterrupt):
            RcloneTransferGateway().copy("/src", "remote:dst")

        process.terminate.assert_called_once()
        process.wait.assert_called_once_with(timeout=10)
        process.kill.assert_not_called()

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_interrupt_kills_stuck_rclone(self, mock_popen):
        process = Mock()
        process.stdout = _interrupted_output()
        process.wait.side_effect = subprocess.TimeoutExpired("rclone", 10)
        mock_popen.return_value = process

        with pytest.raises(KeyboardInterrupt):
            RcloneTransferGateway().copy("/src", "remote:dst")

        process.kill.assert_called_once()


class TestVerify:
    """Tests for verify()."""

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_one_way_size_only(self, mock_popen):
        """Test that the default check is one-way and size-only."""
        mock_popen.return_value = _process(["0 differences found\n"])

        RcloneTransferGateway().verify("/src", "remote:dst")

        assert mock_popen.call_args[0][0] == [
            "rclone",
            "check",
            "/src",
            "remote:dst",
            "--one-way",
            "--size-only",
        ]

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_full_check(self, mock_popen):
        mock_popen.return_value = _process([])

        RcloneTransferGateway().verify(
            "/src", "remote:dst", one_way=False, size_only=False
        )

        assert mock_popen.call_args[0][0] == ["rclone", "check", "/src", "remote:dst"]

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_differences_raise(self, mock_popen):
        mock_popen.return_value = _process(
            [
                "ERROR : clip0002.mp4: file not in remote:dst\n",
                "NOTICE: 1 differences found\n",
            ],
            returncode=1,
        )

        with pytest.raises(VerificationError) as exc_info:
            RcloneTransferGateway().verify("/src", "remote:dst")

        assert exc_info.value.kind == "VerificationError"
        assert "1 differences found" in str(exc_info.value)


class TestStreamOutput:
    """Tests for how rclone output is read and kept."""

    @pytest.mark.skipif(os.name != "posix", reason="needs a shell script")
    def test_undecodable_filename_does_not_crash(self, tmp_path):
        """Test that a non-UTF-8 byte in rclone output is replaced, not raised."""
        fake_rclone = tmp_path / "rclone"
        fake_rclone.write_text(
            "#!/bin/sh\nprintf 'INFO  : DCIM/\\377\\376.MP4: Copied (new)\\n'\n"
        )
        fake_rclone.chmod(0o755)

        returncode, output = RcloneTransferGateway(str(fake_rclone))._stream(
            [str(fake_rclone), "copy", "/src", "remote:dst"]
        )

        assert returncode == 0
        assert output == ["INFO  : DCIM/\ufffd\ufffd.MP4: Copied (new)"]

    @pytest.mark.skipif(os.name != "posix", reason="needs a shell script")
    def test_undecodable_output_still_fails_cleanly(self, tmp_path):
        """Test that a failing copy with bad bytes raises TransferError."""
        fake_rclone = tmp_path / "rclone"
        fake_rclone.write_text(
            "#!/bin/sh\nprintf 'ERROR : DCIM/\\377.MP4: Failed to copy\\n'\nexit 3\n"
        )
        fake_rclone.chmod(0o755)

        with pytest.raises(TransferError) as exc_info:
            RcloneTransferGateway(str(fake_rclone)).copy("/src", "remote:dst")

        assert exc_info.value.returncode == 3
        assert "Failed to copy" in str(exc_info.value)

    @patch("dashcam_backup.services.transfer.subprocess.Popen")
    def test_only_recent_lines_kept(self, mock_popen):
        """Test that a long copy keeps only the trailing lines for errors."""
        lines = [f"Transferred: {n} / 1000 files\n" for n in range(1000)]
        mock_popen.return_value = _process(lines, returncode=1)

        returncode, output = RcloneTransferGateway()._stream(["rclone", "copy"])

        assert returncode == 1
        assert output == [
            f"Transferred: {n} / 1000 files" for n in range(995, 1000)
        ]
