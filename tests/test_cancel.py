"""Tests for the cancellation token."""

import asyncio
import os
import signal
import threading

import pytest

from prootbox.launcher import CancellationToken, cancel_on_signals


class TestCancellationToken:
    """Tests for CancellationToken."""

    def test_initial_state(self):
        token = CancellationToken()
        assert token.cancelled is False
        assert token.reason is None

    def test_cancel_is_idempotent(self):
        token = CancellationToken()

        assert token.cancel("first") is True
        assert token.cancel("second") is False
        assert token.cancelled is True
        assert token.reason == "first"

    @pytest.mark.asyncio
    async def test_wait_after_cancel_returns(self):
        token = CancellationToken()
        token.cancel()

        await asyncio.wait_for(token.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_wait_wakes_on_cancel(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)
        assert not waiter.done()

        token.cancel()
        await asyncio.wait_for(waiter, timeout=1)

    @pytest.mark.asyncio
    async def test_cancel_from_other_thread(self):
        token = CancellationToken()
        waiter = asyncio.create_task(token.wait())
        await asyncio.sleep(0)

        thread = threading.Thread(target=token.cancel, args=("thread",))
        thread.start()
        await asyncio.wait_for(waiter, timeout=2)
        thread.join()

        assert token.reason == "thread"


class TestCancelOnSignals:
    """Tests for routing signals into a token."""

    @pytest.mark.asyncio
    async def test_signal_cancels_token(self):
        token = CancellationToken()

        with cancel_on_signals(token, signals=(signal.SIGUSR1,)):
            os.kill(os.getpid(), signal.SIGUSR1)
            await asyncio.wait_for(token.wait(), timeout=2)

        assert token.cancelled is True
        assert token.reason == "received SIGUSR1"

    @pytest.mark.asyncio
    async def test_handlers_removed_on_exit(self):
        token = CancellationToken()
        loop = asyncio.get_running_loop()

        with cancel_on_signals(token, signals=(signal.SIGUSR2,)):
            pass

        assert loop.remove_signal_handler(signal.SIGUSR2) is False
