import asyncio


class HealthGauge:
    """
    This is a makeshift health check system.

    The gauge counts recent failures that fall outside regular flow-control: a reconciliation run that aborted,
    a request that raised. Skipped runs and unauthorized requests do not count. The count decays by one on every
    tick of the background health task, so a burst of failures turns the readiness probe red for a while and
    then recovers on its own.
    """

    def __init__(self, failures: int = 0, threshold: int = 100) -> None:
        self._failures = failures
        self._threshold = threshold
        self._lock = asyncio.Lock()

    async def record_failure(self, count: int = 1) -> int:
        async with self._lock:
            self._failures += int(count)
            return self._failures

    async def decay(self) -> None:
        async with self._lock:
            if self._failures > 0:
                self._failures -= 1

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._failures <= self._threshold
