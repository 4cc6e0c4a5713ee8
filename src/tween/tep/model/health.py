import asyncio


class HealthGauge:
    """
    A makeshift readiness signal.

    Handlers call ``record_error`` whenever something fails outside regular flow control (an
    unexpected exception, not a rejected token or a declined transfer). A background task calls
    ``tick`` periodically to let the score decay. A burst of errors pushes the score above the
    threshold and the readiness probe starts failing until the burst has drained.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    async def record_error(self, weight: int = 1) -> int:
        async with self._lock:
            self._value += int(weight)
            return self._value

    async def tick(self) -> None:
        async with self._lock:
            if self._value > 0:
                self._value -= 1

    async def is_healthy(self) -> bool:
        async with self._lock:
            return self._value <= self._health_threshold
