"""Private, executable copies of the embedded sandbox tool binary.

Each invocation gets its own copy, so concurrent launchers never share a
path. On Linux the copy lives in an anonymous memory file and is executed
through ``/proc/self/fd``; elsewhere it is a private temporary file.

The memory file descriptor is inherited by the tool and by everything it
runs, since exec needs it open. It is read-only and the file is sealed
against writes and resizing, so an inherited handle cannot alter the tool.
"""

import fcntl
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional, Union

from ..errors import SpawnError

logger = logging.getLogger(__name__)

TOOL_NAME = "proot"
TOOL_MODE = 0o700


def _write_all(fd: int, content: bytes) -> None:
    view = memoryview(content)
    while view:
        written = os.write(fd, view)
        view = view[written:]


class SandboxTool:
    """Handle to an executable copy of the sandbox tool.

    Close it once the child has exited.
    """

    def __init__(self, path: str, fd: Optional[int] = None, temp_path: Optional[str] = None):
        self.path = path
        self.fd = fd
        self.temp_path = temp_path
        self._closed = False

    @property
    def pass_fds(self) -> tuple[int, ...]:
        """File descriptors the child must inherit to execute ``path``."""
        return (self.fd,) if self.fd is not None else ()

    def close(self) -> None:
        """Release the descriptor or delete the temporary file."""
        if self._closed:
            return
        self._closed = True
        if self.fd is not None:
            os.close(self.fd)
        if self.temp_path is not None:
            try:
                os.unlink(self.temp_path)
            except FileNotFoundError:
                pass

    def __enter__(self) -> "SandboxTool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _memfd_tool(content: bytes) -> SandboxTool:
    seals = fcntl.F_SEAL_SHRINK | fcntl.F_SEAL_GROW | fcntl.F_SEAL_WRITE | fcntl.F_SEAL_SEAL
    fd = os.memfd_create(TOOL_NAME, os.MFD_CLOEXEC | os.MFD_ALLOW_SEALING)
    try:
        _write_all(fd, content)
        os.fchmod(fd, TOOL_MODE)
        fcntl.fcntl(fd, fcntl.F_ADD_SEALS, seals)
        # exec refuses files that still have a writer
        readonly = os.open(f"/proc/self/fd/{fd}", os.O_RDONLY | os.O_CLOEXEC)
    finally:
        os.close(fd)
    return SandboxTool(f"/proc/self/fd/{readonly}", fd=readonly)


def _tempfile_tool(content: bytes, tmp_dir: Optional[Union[str, Path]]) -> SandboxTool:
    fd, path = tempfile.mkstemp(prefix=f"{TOOL_NAME}-", dir=tmp_dir)
    try:
        try:
            _write_all(fd, content)
            os.fchmod(fd, TOOL_MODE)
        finally:
            os.close(fd)
    except OSError:
        os.unlink(path)
        raise
    return SandboxTool(path, temp_path=path)


def materialize_tool(
    content: bytes,
    storage: str = "memfd",
    tmp_dir: Optional[Union[str, Path]] = None,
) -> SandboxTool:
    """Write the sandbox tool binary somewhere it can be executed.

    Args:
        content: Raw executable bytes
        storage: "memfd" for an anonymous memory file, "tempfile" for a
            private temporary file
        tmp_dir: Directory for the temporary file variant

    Returns:
        SandboxTool handle

    Raises:
        SpawnError: If the copy cannot be created or made executable
    """
    if not content:
        raise SpawnError("Sandbox tool binary is empty")

    if storage == "memfd" and not hasattr(os, "memfd_create"):
        logger.debug("memfd_create unavailable, using a temporary file")
        storage = "tempfile"

    try:
        if storage == "memfd":
            tool = _memfd_tool(content)
        else:
            tool = _tempfile_tool(content, tmp_dir)
    except OSError as e:
        raise SpawnError(f"Failed to materialize sandbox tool: {e}") from e

    logger.debug(f"Sandbox tool materialized at {tool.path} ({len(content)} bytes)")
    return tool
