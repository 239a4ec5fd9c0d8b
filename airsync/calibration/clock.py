"""Round-trip estimation of the receiver/client wall-clock offset."""

from __future__ import annotations

import asyncio
import logging
import statistics
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from airsync.utils import wall_clock_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OffsetSample:
    """One request/response exchange with the receiver clock.

    Attributes:
        sent_ms: Client time when the request was sent (t0).
        server_ms: Receiver time reported in the reply (t1).
        received_ms: Client time when the reply arrived (t2).
    """

    sent_ms: float
    server_ms: float
    received_ms: float

    @property
    def offset_ms(self) -> float:
        """Receiver minus client time, assuming a symmetric round trip."""
        return self.server_ms - (self.sent_ms + self.received_ms) / 2.0

    @property
    def round_trip_ms(self) -> float:
        """Total request/response time."""
        return self.received_ms - self.sent_ms


def median_offset(samples: Sequence[OffsetSample]) -> float:
    """Combine samples into one offset using the median, which shrugs off one slow round trip."""
    if not samples:
        raise ValueError("at least one offset sample is required")
    return float(statistics.median(s.offset_ms for s in samples))


class ClockOffsetEstimator:
    """Estimate ``receiver_clock - client_clock`` in milliseconds.

    The estimate is only used to express the playback target on the
    receiver's clock. It never enters the latency computation, which is
    derived from the audio alignment alone.
    """

    def __init__(
        self,
        fetch_server_time_ms: Callable[[], Awaitable[float]],
        *,
        samples: int = 3,
        sample_delay_s: float = 0.05,
        clock_ms: Callable[[], float] = wall_clock_ms,
    ) -> None:
        """Initialize the estimator.

        Args:
            fetch_server_time_ms: Coroutine function returning the receiver's current time.
            samples: Number of round trips to take (at least 2).
            sample_delay_s: Pause between round trips.
            clock_ms: Local clock, in milliseconds.
        """
        if samples < 2:
            raise ValueError("clock offset estimation needs at least two samples")
        self._fetch_server_time_ms = fetch_server_time_ms
        self._samples = samples
        self._sample_delay_s = sample_delay_s
        self._clock_ms = clock_ms

    async def collect(self) -> list[OffsetSample]:
        """Take the configured number of round-trip samples.

        Errors from the receiver propagate to the caller.
        """
        collected: list[OffsetSample] = []
        for i in range(self._samples):
            if i > 0 and self._sample_delay_s > 0:
                await asyncio.sleep(self._sample_delay_s)
            t0 = self._clock_ms()
            t1 = float(await self._fetch_server_time_ms())
            t2 = self._clock_ms()
            sample = OffsetSample(sent_ms=t0, server_ms=t1, received_ms=t2)
            logger.debug(
                "Clock sample %d: offset=%.1fms rtt=%.1fms",
                i + 1,
                sample.offset_ms,
                sample.round_trip_ms,
            )
            collected.append(sample)
        return collected

    async def estimate(self) -> float:
        """Return the median offset over freshly collected samples."""
        samples = await self.collect()
        offset = median_offset(samples)
        logger.info("Estimated clock offset %.1fms from %d samples", offset, len(samples))
        return offset
