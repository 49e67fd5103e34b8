"""Wake primitive for idle job processors."""

import asyncio


class NotificationChannel:
    """Blocks an idle processor until new work is signalled or a timeout elapses.

    Signals are not counted: ``signal()`` with no waiter is a no-op, and
    several signals while a waiter sleeps produce a single wake. The waiter
    re-checks the store after waking, so a lost signal only costs latency
    up to the wait timeout.

    ``close()`` wakes every current and future waiter immediately; it is
    used on shutdown.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._waiters = 0
        self._closed = False

    @property
    def waiting(self) -> int:
        return self._waiters

    @property
    def closed(self) -> bool:
        return self._closed

    async def wait(self, timeout: float | None) -> bool:
        """Wait for a signal.

        Args:
            timeout: Maximum seconds to block. None blocks until signalled.

        Returns:
            True if woken by ``signal()`` or ``close()``, False on timeout.
        """
        if self._closed:
            return True

        self._waiters += 1
        try:
            if timeout is None:
                await self._event.wait()
                return True
            await asyncio.wait_for(self._event.wait(), timeout)
            return True
        except TimeoutError:
            return False
        finally:
            self._waiters -= 1
            if self._waiters == 0 and not self._closed:
                self._event.clear()

    def signal(self) -> bool:
        """Wake the current waiters, if any.

        Returns:
            True if a waiter was present to receive the signal.
        """
        if self._waiters == 0:
            return False
        self._event.set()
        return True

    def close(self) -> None:
        self._closed = True
        self._event.set()

    def reopen(self) -> None:
        self._closed = False
        if self._waiters == 0:
            self._event.clear()
