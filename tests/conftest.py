"""
Pytest configuration and shared fixtures for dashcam-backup tests.

The workflow fakes below record every call into one shared ``events`` list
so tests can assert on ordering as well as on what was (not) called.
"""

from typing import Callable, Optional

import pytest

from dashcam_backup.domain import DeviceHandle, FilesystemType, RunConfig
from dashcam_backup.exceptions import ToolMissingError
from dashcam_backup.logging import logger
from dashcam_backup.services.workflow import BackupWorkflow
from dashcam_backup.storage.run_lock import RunLock


# ==============================================================================
# Logging
# ==============================================================================


@pytest.fixture
def log_records():
    """Capture loguru records emitted during a test."""
    records: list = []
    handler_id = logger.add(
        lambda message: records.append(message.record), level="TRACE", enqueue=False
    )
    yield records
    logger.remove(handler_id)


# ==============================================================================
# Workflow fakes
# ==============================================================================


class FakeTransfer:
    def __init__(self, events: list):
        self.events = events
        self.installed = True
        self.reachable = True
        self.free_space: Optional[int] = None
        self.copy_error: Optional[BaseException] = None
        self.verify_error: Optional[BaseException] = None
        self.copy_kwargs: list = []
        self.verify_kwargs: list = []

    def ensure_installed(self):
        self.events.append("ensure_installed")
        if not self.installed:
            raise ToolMissingError("rclone", "Install rclone first.")

    def check_reachable(self, dest, timeout=30.0):
        self.events.append("check_reachable")
        return self.reachable

    def query_free_space(self, dest):
        self.events.append("query_free_space")
        return self.free_space

    def copy(self, source, dest, **kwargs):
        self.events.append("copy")
        self.copy_kwargs.append(kwargs)
        if self.copy_error is not None:
            raise self.copy_error

    def verify(self, source, dest, **kwargs):
        self.events.append("verify")
        self.verify_kwargs.append(kwargs)
        if self.verify_error is not None:
            raise self.verify_error


class FakeResolver:
    def __init__(self, events: list):
        self.events = events
        self.error: Optional[BaseException] = None
        self.calls: list = []

    def resolve(self, mount_path):
        self.events.append("resolve")
        self.calls.append(mount_path)
        if self.error is not None:
            raise self.error
        return DeviceHandle(
            mount_path=mount_path,
            device_identifier=f"/dev/sdz{len(self.calls)}",
        )


class FakeUnmount:
    def __init__(self, events: list):
        self.events = events
        self.error: Optional[BaseException] = None
        self.calls: list = []

    def __call__(self, handle):
        self.events.append("unmount")
        self.calls.append(handle)
        if self.error is not None:
            raise self.error


class FakeFormatter:
    def __init__(self, events: list):
        self.events = events
        self.available_error: Optional[BaseException] = None
        self.format_error: Optional[BaseException] = None
        self.format_calls: list = []

    def ensure_available(self, fs_type, label):
        self.events.append("ensure_available")
        if self.available_error is not None:
            raise self.available_error

    def format(self, device, fs_type, label):
        self.events.append("format")
        self.format_calls.append((device, fs_type, label))
        if self.format_error is not None:
            raise self.format_error


class FakePrompt:
    def __init__(self, events: list, answers=None):
        self.events = events
        self.answers = list(answers or [])
        self.questions: list = []

    def __call__(self, question):
        self.events.append("prompt")
        self.questions.append(question)
        if not self.answers:
            return ""
        answer = self.answers.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer


@pytest.fixture
def card(tmp_path):
    """A mounted-card look-alike with a DCIM folder and two clips."""
    root = tmp_path / "card"
    dcim = root / "DCIM"
    dcim.mkdir(parents=True)
    (dcim / "clip0001.mp4").write_bytes(b"x" * 1000)
    (dcim / "clip0002.mp4").write_bytes(b"y" * 500)
    return root


@pytest.fixture
def lock_path(tmp_path):
    return tmp_path / "locks" / "dashcam-backup.lock"


class WorkflowHarness:
    """Bundle of fakes plus a factory for BackupWorkflow."""

    def __init__(self, card, lock_path):
        self.events: list = []
        self.card = card
        self.lock = RunLock(lock_path)
        self.transfer = FakeTransfer(self.events)
        self.resolver = FakeResolver(self.events)
        self.unmount = FakeUnmount(self.events)
        self.formatter = FakeFormatter(self.events)
        self.prompt = FakePrompt(self.events)

    def config(self, **overrides) -> RunConfig:
        values = dict(
            source_path=str(self.card),
            dest_remote="remote:Backups",
            fs_type=FilesystemType.EXFAT,
            label="NO NAME",
            dry_run=False,
            auto_confirm=False,
            verbose=False,
        )
        values.update(overrides)
        return RunConfig(**values)

    def workflow(
        self,
        answers=None,
        source_size: Callable[[str], int] = lambda path: 1500,
        **overrides,
    ) -> BackupWorkflow:
        if answers is not None:
            self.prompt.answers = list(answers)
        return BackupWorkflow(
            self.config(**overrides),
            lock=self.lock,
            resolver=self.resolver,
            transfer=self.transfer,
            formatter=self.formatter,
            unmount=self.unmount,
            prompt=self.prompt,
            source_size=source_size,
            job_id="backup-test",
        )


@pytest.fixture
def harness(card, lock_path):
    return WorkflowHarness(card, lock_path)
