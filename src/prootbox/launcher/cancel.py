"""Cancellation token bridging OS signals into the launcher's event loop."""

import asyncio
import logging
import signal
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """One-shot cancellation flag.

    ``cancel()`` is idempotent and safe from any thread or signal handler.
    ``cancelled`` can be polled from worker threads, ``wait()`` awaited on
    the event loop.
    """

    def __init__(self) -> None:
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._event: Optional[asyncio.Event] = None
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._flag.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Request cancellation.

        Returns:
            True on the first call, False if already cancelled
        """
        with self._lock:
            if self._flag.is_set():
                return False
            self.reason = reason
            self._flag.set()
            loop, event = self._loop, self._event

        logger.info(f"Cancellation requested: {reason}")
        if event is not None and loop is not None and not loop.is_closed():
            loop.call_soon_threadsafe(event.set)
        return True

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        with self._lock:
            if self._event is None:
                self._loop = asyncio.get_running_loop()
                self._event = asyncio.Event()
                if self._flag.is_set():
                    self._event.set()
            event = self._event
        await event.wait()


@contextmanager
def cancel_on_signals(
    token: CancellationToken,
    signals: tuple[signal.Signals, ...] = DEFAULT_SIGNALS,
) -> Iterator[CancellationToken]:
    """Route ``signals`` to ``token.cancel`` for the duration of the block.

    Must be entered from a coroutine running on the main thread.
    """
    loop = asyncio.get_running_loop()
    installed = []
    try:
        for sig in signals:
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
            installed.append(sig)
        yield token
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
