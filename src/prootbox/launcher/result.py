"""Launcher result models."""

import signal
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

# Exit status reported for internal failures
FAILURE_EXIT_STATUS = 1


class ProcessOutcome(str, Enum):
    """How an invocation ended."""

    EXITED = "exited"        # Child exited normally
    SIGNALED = "signaled"    # Child was terminated by a signal
    CANCELLED = "cancelled"  # Interrupted before the child was spawned
    FAILED = "failed"        # Internal failure before or during spawn


@dataclass
class ProcessResult:
    """Terminal outcome of one sandboxed invocation."""

    outcome: ProcessOutcome
    exit_code: Optional[int] = None
    signal_number: Optional[int] = None
    error_message: Optional[str] = None
    error_type: Optional[str] = None
    workdir: Optional[str] = None
    cancel_requested: bool = False
    duration_ms: int = 0

    @classmethod
    def from_returncode(cls, returncode: int, **kwargs: Any) -> "ProcessResult":
        """Build a result from a ``Popen``-style return code.

        Negative codes mean the child died from signal ``-returncode``.
        """
        if returncode < 0:
            return cls(ProcessOutcome.SIGNALED, signal_number=-returncode, **kwargs)
        return cls(ProcessOutcome.EXITED, exit_code=returncode, **kwargs)

    @classmethod
    def from_error(cls, error: BaseException, **kwargs: Any) -> "ProcessResult":
        """Build a failure result for an internal error."""
        return cls(
            ProcessOutcome.FAILED,
            error_message=str(error),
            error_type=type(error).__name__,
            **kwargs,
        )

    @property
    def exit_status(self) -> int:
        """Exit status the launcher itself should report."""
        if self.outcome == ProcessOutcome.EXITED:
            return self.exit_code if self.exit_code is not None else FAILURE_EXIT_STATUS
        if self.outcome == ProcessOutcome.SIGNALED:
            return 128 + (self.signal_number or 0)
        if self.outcome == ProcessOutcome.CANCELLED:
            return 128 + signal.SIGINT
        return FAILURE_EXIT_STATUS

    @property
    def signal_name(self) -> Optional[str]:
        """Symbolic name of the terminating signal, if any."""
        if self.signal_number is None:
            return None
        try:
            return signal.Signals(self.signal_number).name
        except ValueError:
            return f"signal {self.signal_number}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "signal": self.signal_name,
            "exit_status": self.exit_status,
            "error_message": self.error_message,
            "error_type": self.error_type,
            "workdir": self.workdir,
            "cancel_requested": self.cancel_requested,
            "duration_ms": self.duration_ms,
        }
