import asyncio
from collections import Counter
from typing import Dict, NamedTuple


class HealthSnapshot(NamedTuple):
    score: int
    healthy: bool
    sources: Dict[str, int]


class HealthGauge:
    """
    Decaying failure score used by the readiness endpoint.

    Unexpected failures add weight to the score under a source label such as
    "storage" or "request". Expected outcomes like an abandoned mirror attempt
    are not recorded here. `decay` is called on a timer and removes one point,
    taken from the heaviest source first. The service reports unready while
    the score is above the threshold.
    """

    def __init__(self, threshold: int = 100) -> None:
        self.threshold = threshold
        self._sources: Counter = Counter()
        self._lock = asyncio.Lock()

    async def record_failure(self, source: str, weight: int = 1) -> int:
        async with self._lock:
            self._sources[source] += int(weight)
            return sum(self._sources.values())

    async def decay(self) -> None:
        async with self._lock:
            if not self._sources:
                return
            source, _ = self._sources.most_common(1)[0]
            self._sources[source] -= 1
            if self._sources[source] <= 0:
                del self._sources[source]

    async def snapshot(self) -> HealthSnapshot:
        async with self._lock:
            score = sum(self._sources.values())
            return HealthSnapshot(
                score=score,
                healthy=score <= self.threshold,
                sources=dict(self._sources),
            )
