"""Backup-and-reformat orchestration.

The run is a straight line of states:

    START -> PREFLIGHT -> TRANSFER -> VERIFY -> CONFIRM -> UNMOUNT -> FORMAT -> DONE

with FAILED and ABORTED reachable from every non-terminal state. The
format step is reachable only after preflight passed, the copy succeeded,
the one-way check succeeded, the run is not a dry run and the operator
confirmed (or ``--yes`` was given). Every other outcome ends the
run without touching the card.

Errors are never retried here. Gateways raise; ``BackupWorkflow.run`` is
the only place that turns an exception into a terminal state, and the run
lock is released before that happens.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Callable

from dashcam_backup.domain import (
    CapacityCheck,
    DeviceHandle,
    RunConfig,
    RunResult,
    RunState,
)
from dashcam_backup.exceptions import (
    DashcamBackupError,
    InsufficientSpaceError,
    InterruptedRunError,
    OperatorAbortedError,
    RemoteUnreachableError,
    SourceNotFoundError,
)
from dashcam_backup.logging import LoggerFactory, logger, new_job_id, operation_context
from dashcam_backup.services.transfer import RcloneTransferGateway
from dashcam_backup.storage.devices import (
    DeviceResolver,
    directory_size,
    get_device_resolver,
)
from dashcam_backup.storage.format import FormatGateway, get_format_gateway
from dashcam_backup.storage.mount import Unmounter, get_unmounter
from dashcam_backup.storage.run_lock import RunLock

if TYPE_CHECKING:
    from loguru import Logger


AFFIRMATIVE_ANSWERS = {"y", "yes"}


class BackupWorkflow:
    """Run one backup-and-reformat of ``config.source_path``.

    All side-effecting collaborators are injected so tests can swap in
    fakes: the run lock, the device resolver, the transfer gateway, the
    unmount function, the format gateway and the operator prompt.
    """

    def __init__(
        self,
        config: RunConfig,
        *,
        lock: RunLock,
        resolver: DeviceResolver,
        transfer: RcloneTransferGateway,
        formatter: FormatGateway,
        unmount: Unmounter,
        prompt: Callable[[str], str] = input,
        source_size: Callable[[str], int] = directory_size,
        job_id: str | None = None,
        log: Logger | None = None,
    ):
        self.config = config
        self.lock = lock
        self.resolver = resolver
        self.transfer = transfer
        self.formatter = formatter
        self.unmount = unmount
        self.prompt = prompt
        self.source_size = source_size
        self.job_id = job_id or new_job_id()
        self.log = log or LoggerFactory.for_workflow(self.job_id)
        self._result = RunResult(state=RunState.START)
        self._card_at_risk = False

    @property
    def state(self) -> RunState:
        return self._result.state

    def run(self) -> RunResult:
        """Drive the run to DONE, FAILED or ABORTED and return the result."""
        self._result = RunResult(state=RunState.START, history=[RunState.START])
        self._card_at_risk = False
        cfg = self.config

        with logger.contextualize(job_id=self.job_id):
            self.log.info(
                f"Starting backup of '{cfg.source_path}' -> '{cfg.dest_remote}'"
                + (" (dry run)" if cfg.dry_run else "")
            )
            try:
                with self.lock:
                    self._execute()
            except OperatorAbortedError as error:
                self._abort(error)
            except InterruptedRunError as error:
                self._interrupted(error)
            except KeyboardInterrupt:
                self._interrupted(InterruptedRunError("SIGINT"))
            except DashcamBackupError as error:
                self._fail(error)

        return self._result

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _enter(self, state: RunState) -> None:
        self._result.state = state
        self._result.history.append(state)
        self.log.debug(f"Entering {state.value}")

    def _execute(self) -> None:
        cfg = self.config

        self._enter(RunState.PREFLIGHT)
        self._preflight()

        self._enter(RunState.TRANSFER)
        with operation_context("copy", self.log, dry_run=cfg.dry_run):
            self.transfer.copy(
                cfg.source_path,
                cfg.dest_remote,
                dry_run=cfg.dry_run,
                verbose=cfg.verbose,
                progress_interval_seconds=cfg.progress_interval_seconds,
            )
        self._result.transfer.copy_succeeded = True

        if cfg.dry_run:
            self.log.info(
                "Dry run: simulated copy finished, nothing was transferred. "
                "Skipping verification, unmount and format."
            )
            self._done()
            return
        self.log.success("Backup completed")

        self._enter(RunState.VERIFY)
        with operation_context("verify", self.log):
            self.transfer.verify(
                cfg.source_path,
                cfg.dest_remote,
                one_way=True,
                size_only=True,
                verbose=cfg.verbose,
            )
        self._result.transfer.verify_succeeded = True
        self.log.success("Verification passed: every source file is at the destination")

        self._enter(RunState.CONFIRM)
        self._confirm_reformat()

        self._enter(RunState.UNMOUNT)
        handle = self._resolve_device()
        self._card_at_risk = True
        self.unmount(handle)

        self._enter(RunState.FORMAT)
        with operation_context("format", self.log, device=handle.erase_target):
            self.formatter.format(handle, cfg.fs_type, cfg.label)
        self._card_at_risk = False
        self.log.success(f"Card reformatted ({cfg.fs_type}, label='{cfg.label}')")

        self._done()

    def _preflight(self) -> None:
        cfg = self.config
        preflight = self._result.preflight

        if not os.path.isdir(cfg.source_path):
            raise SourceNotFoundError(cfg.source_path)
        preflight.source_exists = True

        marker = os.path.join(cfg.source_path, cfg.marker_dir)
        preflight.has_expected_marker_dir = os.path.isdir(marker)
        if not preflight.has_expected_marker_dir:
            self.log.warning(
                f"'{cfg.marker_dir}' not found in {cfg.source_path}; "
                "this may not be the dashcam card"
            )
            if not cfg.auto_confirm and not self._ask("Continue anyway? [y/N] "):
                raise OperatorAbortedError(
                    f"Operator declined to continue without '{cfg.marker_dir}'"
                )

        self.transfer.ensure_installed()
        preflight.remote_reachable = self.transfer.check_reachable(
            cfg.dest_remote, timeout=cfg.reachability_timeout
        )
        if not preflight.remote_reachable:
            raise RemoteUnreachableError(cfg.dest_remote, cfg.reachability_timeout)

        available = self.transfer.query_free_space(cfg.dest_remote)
        if available is None:
            self.log.warning(
                f"Could not determine free space at {cfg.dest_remote}; continuing"
            )
        else:
            # Files already backed up are counted again, so this overstates need
            check = CapacityCheck(
                required_bytes=self.source_size(cfg.source_path),
                available_bytes=available,
            )
            preflight.capacity_check = check
            self.log.info(
                f"Source needs {check.required_bytes} bytes, "
                f"destination has {check.available_bytes} bytes free"
            )
            if not check.sufficient:
                raise InsufficientSpaceError(
                    cfg.dest_remote, check.required_bytes, check.available_bytes
                )

        if cfg.dry_run:
            try:
                self.formatter.ensure_available(cfg.fs_type, cfg.label)
            except DashcamBackupError as error:
                self.log.warning(f"Reformat would not be possible: {error}")
        else:
            self.formatter.ensure_available(cfg.fs_type, cfg.label)

    def _confirm_reformat(self) -> None:
        cfg = self.config
        if cfg.auto_confirm:
            self.log.info("Auto-confirm enabled; proceeding to reformat")
            return
        self.log.warning(
            f"About to ERASE {cfg.source_path} and reformat it as {cfg.fs_type}. "
            "Everything on the card will be lost."
        )
        if not self._ask(
            "Unmount and reformat the card? (y/yes to continue) [y/N] "
        ):
            raise OperatorAbortedError("Operator declined to reformat the card")

    def _resolve_device(self) -> DeviceHandle:
        handle = self.resolver.resolve(self.config.source_path)
        self._result.device = handle
        self.log.info(f"Resolved {handle.mount_path} to {handle.device_identifier}")
        return handle

    def _ask(self, question: str) -> bool:
        try:
            answer = self.prompt(question)
        except EOFError:
            answer = ""
        return (answer or "").strip().lower() in AFFIRMATIVE_ANSWERS

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _done(self) -> None:
        self._enter(RunState.DONE)
        self.log.success("Run finished")

    def _terminate(self, state: RunState, error: DashcamBackupError) -> None:
        self._result.failed_at = self._result.state
        self._result.error = error
        self._enter(state)

    def _fail(self, error: DashcamBackupError) -> None:
        at = self._result.state
        self._terminate(RunState.FAILED, error)
        self.log.error(f"FAILED at {at.value}: {error.kind}: {error}")
        if self._card_at_risk and at is RunState.FORMAT:
            self._warn_card_at_risk()

    def _abort(self, error: OperatorAbortedError) -> None:
        at = self._result.state
        self._terminate(RunState.ABORTED, error)
        self.log.warning(f"ABORTED at {at.value}: {error.kind}: {error}")

    def _interrupted(self, error: InterruptedRunError) -> None:
        at = self._result.state
        self._terminate(RunState.ABORTED, error)
        self.log.error(f"ABORTED at {at.value}: {error.kind}: {error}")
        if self._card_at_risk:
            self._warn_card_at_risk()

    def _warn_card_at_risk(self) -> None:
        device = self._result.device
        target = device.erase_target if device else self.config.source_path
        self.log.critical(
            f"{target} may be left unmounted or only partly formatted. "
            f"The backup at {self.config.dest_remote} was verified; "
            "reformat the card manually before using it again."
        )


def create_workflow(
    config: RunConfig,
    *,
    lock: RunLock,
    platform_name: str | None = None,
    prompt: Callable[[str], str] = input,
) -> BackupWorkflow:
    """Wire a workflow with the real gateways for ``platform_name``.

    Raises:
        UnsupportedPlatformError: If the host has no resolver/formatter
    """
    return BackupWorkflow(
        config,
        lock=lock,
        resolver=get_device_resolver(platform_name),
        transfer=RcloneTransferGateway(),
        formatter=get_format_gateway(platform_name),
        unmount=get_unmounter(platform_name),
        prompt=prompt,
    )
