"""Tests for NotificationChannel wake semantics."""

import asyncio

import pytest

from livequeue.core.notify import NotificationChannel


class TestNotificationChannel:
    @pytest.mark.timeout(5)
    async def test_wait_times_out(self):
        channel = NotificationChannel()
        assert await channel.wait(0.05) is False
        assert channel.waiting == 0

    @pytest.mark.timeout(5)
    async def test_signal_wakes_waiter(self):
        channel = NotificationChannel()
        waiter = asyncio.create_task(channel.wait(5))
        await asyncio.sleep(0)

        assert channel.waiting == 1
        assert channel.signal() is True
        assert await waiter is True

    async def test_signal_without_waiter_is_noop(self):
        channel = NotificationChannel()
        assert channel.signal() is False
        # A signal with nobody waiting must not arm a later wait
        assert await channel.wait(0.05) is False

    @pytest.mark.timeout(5)
    async def test_multiple_signals_produce_single_wake(self):
        channel = NotificationChannel()
        waiter = asyncio.create_task(channel.wait(5))
        await asyncio.sleep(0)

        channel.signal()
        channel.signal()
        channel.signal()
        assert await waiter is True
        assert await channel.wait(0.05) is False

    @pytest.mark.timeout(5)
    async def test_signal_wakes_all_current_waiters(self):
        channel = NotificationChannel()
        waiters = [asyncio.create_task(channel.wait(5)) for _ in range(3)]
        await asyncio.sleep(0)

        channel.signal()
        assert await asyncio.gather(*waiters) == [True, True, True]

    @pytest.mark.timeout(5)
    async def test_close_wakes_current_and_future_waiters(self):
        channel = NotificationChannel()
        waiter = asyncio.create_task(channel.wait(None))
        await asyncio.sleep(0)

        channel.close()
        assert await waiter is True
        assert channel.closed
        assert await channel.wait(5) is True

    async def test_reopen_restores_blocking(self):
        channel = NotificationChannel()
        channel.close()
        channel.reopen()
        assert not channel.closed
        assert await channel.wait(0.05) is False
