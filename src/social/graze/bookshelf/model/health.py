import asyncio


class HealthGauge:
    """
    Error pressure gauge backing the readiness probe.

    Unexpected exceptions raise the gauge and a background task lowers it by one
    every tick. A burst of failures pushes it over the threshold and readiness
    fails until the pressure has drained.
    """

    def __init__(self, value: int = 0, health_threshold: int = 100) -> None:
        self._value = value
        self._health_threshold = health_threshold
        self._lock = asyncio.Lock()

    async def record_failure(self, weight: int = 1) -> int:
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
