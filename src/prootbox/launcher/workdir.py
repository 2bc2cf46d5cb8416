"""Ephemeral working directory with guaranteed, single release."""

import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path
from typing import Optional, Union

from ..errors import CleanupError

logger = logging.getLogger(__name__)


def _make_owner_writable(path: str) -> None:
    """Open up directory permissions so the tree can be deleted."""
    os.chmod(path, stat.S_IRWXU)
    for root, dirs, _ in os.walk(path):
        for name in dirs:
            dir_path = os.path.join(root, name)
            # Never chmod through a link
            if not os.path.islink(dir_path):
                os.chmod(dir_path, stat.S_IRWXU)


def remove_tree(path: Union[str, Path]) -> None:
    """Recursively delete ``path``, including read-only subdirectories.

    Raises:
        CleanupError: If the tree cannot be removed
    """
    try:
        shutil.rmtree(path)
        return
    except FileNotFoundError:
        return
    except OSError:
        pass

    # Extracted trees may hold read-only directories, fix and retry
    try:
        _make_owner_writable(str(path))
        shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as e:
        raise CleanupError(f"Could not remove temporary directory {path}: {e}") from e


class EphemeralDirectory:
    """Uniquely named per-run directory under the temp area.

    Use as a context manager: the directory is created on entry and removed
    exactly once on exit, unless ``keep`` is set.
    """

    def __init__(
        self,
        prefix: str = "rootfs",
        tmp_dir: Optional[Union[str, Path]] = None,
        keep: bool = False,
    ):
        self.prefix = prefix
        self.tmp_dir = tmp_dir
        self.keep = keep
        self.path: Optional[str] = None
        self._released = False

    def create(self) -> str:
        """Allocate the directory."""
        if self.path is not None:
            raise RuntimeError("Ephemeral directory already created")
        self.path = tempfile.mkdtemp(prefix=self.prefix, dir=self.tmp_dir)
        logger.debug(f"Created ephemeral directory {self.path}")
        return self.path

    def release(self) -> None:
        """Remove the directory. Later calls do nothing.

        Removal failures are logged, never raised.
        """
        if self._released or self.path is None:
            return
        self._released = True

        if self.keep:
            logger.info(f"Keeping ephemeral directory {self.path}")
            return

        try:
            remove_tree(self.path)
            logger.debug(f"Removed ephemeral directory {self.path}")
        except CleanupError as e:
            logger.warning(str(e))

    def __enter__(self) -> str:
        return self.create()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()
