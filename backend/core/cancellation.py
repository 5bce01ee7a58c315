import asyncio


class CancellationToken:
    """Set-once cancellation flag shared by every suspension point of a run.

    Cancelling never interrupts work already in flight; waiters only notice
    it at their next ``sleep``/``wait``.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "") -> bool:
        """Returns False when the token was already cancelled."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for ``seconds`` or until cancelled. Returns True if cancelled."""
        if self._event.is_set():
            return True
        if seconds <= 0:
            await asyncio.sleep(0)
            return self._event.is_set()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, seconds))
        except asyncio.TimeoutError:
            return False
        return True
