"""Run a target program under the sandbox tool inside an extracted rootfs."""

import asyncio
import ctypes
import logging
import os
import posixpath
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping, Optional, Sequence

from ..archive import extract_layer
from ..config import LauncherConfig
from ..errors import (
    ArchiveError,
    ContainmentError,
    ExtractionAborted,
    SpawnError,
    UsageError,
)
from .cancel import CancellationToken
from .result import ProcessOutcome, ProcessResult
from .tool import SandboxTool, materialize_tool
from .workdir import EphemeralDirectory

logger = logging.getLogger(__name__)

# Mount point of the Nix store inside the sandbox
NIX_MOUNT = "/nix"
PR_SET_PDEATHSIG = 1


def resolve_target(target: str) -> str:
    """Normalize a target path relative to the rootfs.

    Raises:
        UsageError: If no target is given or it points outside the rootfs
    """
    if not target:
        raise UsageError("required 2 arguments, eg. arg0=binaryname, arg1=/bin/hello")

    relative = posixpath.normpath(target.lstrip("/"))
    if relative in (".", "") or relative == ".." or relative.startswith("../"):
        raise UsageError(f"Target must name a file inside the rootfs: {target!r}")
    return relative


def build_arguments(root: str, target: str, args: Sequence[str]) -> list[str]:
    """Build the sandbox tool's argument list (without the tool itself)."""
    return [
        "-b", f"{os.path.join(root, NIX_MOUNT.lstrip('/'))}:{NIX_MOUNT}",
        os.path.join(root, target),
        *args,
    ]


def build_environment(root: str, base: Optional[Mapping[str, str]] = None) -> dict[str, str]:
    """Copy ``base`` (the current environment by default) for the child.

    Only ``PATH`` changes: the rootfs ``bin`` directory is prepended.
    """
    env = dict(os.environ if base is None else base)
    if "PATH" in env:
        env["PATH"] = f"{os.path.join(root, 'bin')}{os.pathsep}{env['PATH']}"
    return env


def _parent_death_signal_setter() -> Optional[Callable[[], None]]:
    """Return a preexec_fn that kills the child when the launcher dies."""
    if not sys.platform.startswith("linux"):
        return None

    libc = ctypes.CDLL(None, use_errno=True)
    parent_pid = os.getpid()

    def _apply() -> None:
        if libc.prctl(PR_SET_PDEATHSIG, signal.SIGKILL, 0, 0, 0) != 0:
            errno = ctypes.get_errno()
            raise OSError(errno, os.strerror(errno))
        # The launcher may have died before prctl took effect
        if os.getppid() != parent_pid:
            os.kill(os.getpid(), signal.SIGKILL)

    return _apply


@dataclass
class SandboxSession:
    """State of one invocation."""

    root: str
    token: CancellationToken
    tool: Optional[SandboxTool] = None
    process: Optional[asyncio.subprocess.Process] = None
    started_at: float = field(default_factory=time.monotonic)


class SandboxLauncher:
    """Extracts the rootfs and runs a target under the sandbox tool.

    The archive and tool bytes are injected so callers (and tests) can
    supply their own.
    """

    def __init__(
        self,
        rootfs_archive: bytes,
        sandbox_tool: bytes,
        config: Optional[LauncherConfig] = None,
    ):
        """Initialize the launcher.

        Args:
            rootfs_archive: gzip-compressed tar holding a ``*/layer.tar``
            sandbox_tool: Executable bytes of the sandbox tool
            config: Launcher settings, defaults if omitted
        """
        self.rootfs_archive = rootfs_archive
        self.sandbox_tool = sandbox_tool
        self.config = config or LauncherConfig()
        self.session: Optional[SandboxSession] = None

    async def run(
        self,
        target: str,
        args: Sequence[str] = (),
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProcessResult:
        """Run ``target`` with ``args`` inside a fresh rootfs.

        Args:
            target: Executable path inside the rootfs, e.g. ``/bin/hello``
            args: Arguments forwarded verbatim to the target
            cancel_token: Token that interrupts the run when cancelled

        Returns:
            ProcessResult describing how the run ended

        Raises:
            UsageError: If the target is missing or invalid
        """
        relative_target = resolve_target(target)
        token = cancel_token or CancellationToken()

        workdir = EphemeralDirectory(
            prefix=self.config.temp_prefix,
            tmp_dir=self.config.tmp_dir,
            keep=self.config.keep_workdir,
        )
        with workdir as root:
            session = SandboxSession(root=root, token=token)
            self.session = session
            result = await self._run_session(session, relative_target, list(args))

        result.workdir = root
        result.cancel_requested = token.cancelled
        result.duration_ms = int((time.monotonic() - session.started_at) * 1000)
        return result

    async def _run_session(
        self,
        session: SandboxSession,
        target: str,
        args: list[str],
    ) -> ProcessResult:
        if session.token.cancelled:
            return ProcessResult(ProcessOutcome.CANCELLED)

        try:
            await asyncio.to_thread(
                extract_layer,
                self.rootfs_archive,
                session.root,
                lambda: session.token.cancelled,
            )
        except ExtractionAborted:
            return ProcessResult(ProcessOutcome.CANCELLED)
        except ContainmentError as e:
            logger.error(f"Refusing unsafe rootfs entry {e.entry_name!r}: {e}")
            return ProcessResult.from_error(e)
        except ArchiveError as e:
            logger.error(f"Rootfs extraction failed: {e}")
            return ProcessResult.from_error(e)

        if session.token.cancelled:
            return ProcessResult(ProcessOutcome.CANCELLED)

        try:
            tool = materialize_tool(
                self.sandbox_tool,
                storage=self.config.tool_storage,
                tmp_dir=self.config.tmp_dir,
            )
        except SpawnError as e:
            logger.error(str(e))
            return ProcessResult.from_error(e)

        with tool:
            session.tool = tool
            try:
                await self._spawn(session, target, args)
            except SpawnError as e:
                logger.error(str(e))
                return ProcessResult.from_error(e)

            if session.process is None:
                return ProcessResult(ProcessOutcome.CANCELLED)
            returncode = await self._wait(session)

        result = ProcessResult.from_returncode(returncode)
        if result.outcome == ProcessOutcome.SIGNALED:
            logger.info(f"Sandboxed process terminated by {result.signal_name}")
        elif returncode != 0:
            logger.info(f"Sandboxed process exited with code {returncode}")
        return result

    async def _spawn(self, session: SandboxSession, target: str, args: list[str]) -> None:
        # Last chance to honour a pending interrupt before the child exists
        if session.token.cancelled:
            return

        argv = build_arguments(session.root, target, args)
        env = build_environment(session.root)
        logger.debug(f"Spawning sandbox tool: {argv}")

        try:
            session.process = await asyncio.create_subprocess_exec(
                session.tool.path,
                *argv,
                env=env,
                pass_fds=session.tool.pass_fds,
                preexec_fn=_parent_death_signal_setter(),
            )
        except (OSError, subprocess.SubprocessError) as e:
            raise SpawnError(f"Failed to start sandbox tool: {e}") from e

        logger.debug(f"Sandbox tool running as pid {session.process.pid}")

    async def _wait(self, session: SandboxSession) -> int:
        """Wait for the child, terminating it if the token fires first."""
        process = session.process
        exit_waiter = asyncio.ensure_future(process.wait())
        cancel_waiter = asyncio.ensure_future(session.token.wait())

        try:
            done, _ = await asyncio.wait(
                {exit_waiter, cancel_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if exit_waiter not in done:
                await self._terminate(process, exit_waiter)
            return await exit_waiter
        except asyncio.CancelledError:
            if process.returncode is None:
                self._send(process, signal.SIGKILL)
                await process.wait()
            raise
        finally:
            cancel_waiter.cancel()

    async def _terminate(self, process: asyncio.subprocess.Process, exit_waiter: asyncio.Future) -> None:
        grace = self.config.grace_seconds
        logger.info(f"Sending SIGTERM to sandboxed process {process.pid}")
        self._send(process, signal.SIGTERM)

        try:
            await asyncio.wait_for(asyncio.shield(exit_waiter), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning(f"Sandboxed process {process.pid} ignored SIGTERM for {grace}s, killing")
            self._send(process, signal.SIGKILL)

    @staticmethod
    def _send(process: asyncio.subprocess.Process, sig: int) -> None:
        try:
            process.send_signal(sig)
        except ProcessLookupError:
            pass
