import asyncio


class CancellationToken:
    """Cooperative cancellation shared between a caller and a polling loop.

    The caller calls ``cancel()``; the loop checks ``cancelled`` and waits with
    ``sleep()`` so that an in-flight wait ends as soon as cancellation is
    requested. Cancelling after the loop has finished has no effect.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def sleep(self, delay: float) -> bool:
        """Waits up to ``delay`` seconds. Returns True if cancellation cut the wait short."""
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True
