import argparse
import signal
import sys

from dashcam_backup.__version__ import __version__
from dashcam_backup.config import settings
from dashcam_backup.domain import FilesystemType
from dashcam_backup.exceptions import (
    InterruptedRunError,
    UnsupportedFilesystemError,
    UnsupportedPlatformError,
)
from dashcam_backup.logging import LoggerFactory, logger, setup_logging
from dashcam_backup.services.workflow import create_workflow
from dashcam_backup.storage.run_lock import RunLock


INTERRUPT_SIGNALS = ("SIGTERM", "SIGHUP")


class _Parser(argparse.ArgumentParser):
    """Exit with status 1 on bad arguments instead of argparse's 2."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _fs_type(value):
    try:
        return FilesystemType.parse(value)
    except UnsupportedFilesystemError:
        raise argparse.ArgumentTypeError(
            f"invalid choice: {value!r} (choose from exFAT, FAT32)"
        ) from None


def build_parser():
    parser = _Parser(
        prog="dashcam-backup",
        description=(
            "Back up a dashcam SD card to an rclone remote, verify the copy, "
            "then unmount and reformat the card."
        ),
    )
    parser.add_argument(
        "-s",
        "--source",
        metavar="PATH",
        help=f"Mounted card to back up (default: {settings.DEFAULT_SOURCE})",
    )
    parser.add_argument(
        "-d",
        "--dest",
        metavar="REMOTE:PATH",
        help=f"rclone destination (default: {settings.DEFAULT_DEST_REMOTE})",
    )
    parser.add_argument(
        "-f",
        "--fs-type",
        type=_fs_type,
        metavar="{exFAT,FAT32}",
        help=f"Filesystem for the reformatted card (default: {settings.DEFAULT_FS_TYPE})",
    )
    parser.add_argument(
        "-l",
        "--label",
        metavar="LABEL",
        help=f"Volume label after formatting (default: {settings.DEFAULT_LABEL})",
    )
    parser.add_argument(
        "-n",
        "--dry-run",
        action="store_true",
        default=None,
        help="Simulate the copy and stop; never unmount or format",
    )
    parser.add_argument(
        "-y",
        "--yes",
        dest="auto_confirm",
        action="store_true",
        default=None,
        help="Do not ask for confirmation before reformatting",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=None,
        help="Enable verbose debug output",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def _raise_interrupt(signum, frame):
    raise InterruptedRunError(signal.Signals(signum).name)


def _install_signal_handlers():
    previous = {}
    for name in INTERRUPT_SIGNALS:
        signum = getattr(signal, name, None)
        if signum is None:
            continue
        previous[signum] = signal.signal(signum, _raise_interrupt)
    return previous


def _restore_signal_handlers(previous):
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def main(argv=None):
    args = build_parser().parse_args(argv)
    flags = {
        "source": args.source,
        "dest": args.dest,
        "fs_type": args.fs_type,
        "label": args.label,
        "dry_run": args.dry_run,
        "auto_confirm": args.auto_confirm,
        "verbose": args.verbose,
    }

    setup_logging(verbose=bool(args.verbose))
    log = LoggerFactory.for_system()

    try:
        config = settings.load_run_config(flags)
    except UnsupportedFilesystemError as error:
        log.error(f"FAILED at START: {error.kind}: {error}")
        logger.complete()
        return 1

    previous_handlers = _install_signal_handlers()
    try:
        try:
            workflow = create_workflow(config, lock=RunLock(settings.LOCK_PATH))
        except UnsupportedPlatformError as error:
            log.error(f"FAILED at START: {error.kind}: {error}")
            return 1
        result = workflow.run()
        log.info(f"Run ended {result.state.value} (exit {result.exit_code})")
        return result.exit_code
    finally:
        _restore_signal_handlers(previous_handlers)
        logger.complete()


if __name__ == "__main__":
    sys.exit(main())
