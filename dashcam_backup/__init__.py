"""Back up a dashcam SD card to an rclone remote, verify, then reformat it."""

from .__version__ import __version__

__all__ = ["__version__"]
