"""Launcher module for running programs under the sandbox tool."""

from .cancel import CancellationToken, cancel_on_signals
from .result import ProcessOutcome, ProcessResult
from .session import (
    SandboxLauncher,
    SandboxSession,
    build_arguments,
    build_environment,
    resolve_target,
)
from .tool import SandboxTool, materialize_tool
from .workdir import EphemeralDirectory, remove_tree

__all__ = [
    "CancellationToken",
    "cancel_on_signals",
    "ProcessOutcome",
    "ProcessResult",
    "SandboxLauncher",
    "SandboxSession",
    "build_arguments",
    "build_environment",
    "resolve_target",
    "SandboxTool",
    "materialize_tool",
    "EphemeralDirectory",
    "remove_tree",
]
