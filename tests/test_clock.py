"""Tests for clock offset estimation."""

from __future__ import annotations

import asyncio
import statistics

import numpy as np
import pytest

from airsync.calibration.clock import ClockOffsetEstimator, OffsetSample, median_offset
from airsync.errors import NetworkError


class SimulatedLink:
    """Client clock plus a receiver reachable over a link with per-leg delays."""

    def __init__(self, skew_ms: float, legs: list[tuple[float, float]]) -> None:
        self.skew_ms = skew_ms
        self.legs = list(legs)
        self.now_ms = 1_000_000.0

    def clock_ms(self) -> float:
        return self.now_ms

    async def server_time_ms(self) -> float:
        outbound, inbound = self.legs.pop(0)
        self.now_ms += outbound
        server = self.now_ms + self.skew_ms
        self.now_ms += inbound
        return server


def test_sample_offset() -> None:
    sample = OffsetSample(sent_ms=100.0, server_ms=1_060.0, received_ms=120.0)
    assert sample.offset_ms == 950.0
    assert sample.round_trip_ms == 20.0


def test_symmetric_round_trips_recover_skew() -> None:
    link = SimulatedLink(skew_ms=-420.0, legs=[(5.0, 5.0), (12.0, 12.0), (3.0, 3.0)])
    estimator = ClockOffsetEstimator(
        link.server_time_ms, samples=3, sample_delay_s=0.0, clock_ms=link.clock_ms
    )
    assert asyncio.run(estimator.estimate()) == pytest.approx(-420.0)


def test_median_beats_mean_with_outlier_round_trip() -> None:
    rng = np.random.default_rng(7)
    skew_ms = 250.0
    legs = [(float(a), float(b)) for a, b in rng.uniform(2.0, 6.0, size=(4, 2))]
    # One round trip with a badly asymmetric slow return leg.
    legs.append((3.0, 400.0))
    link = SimulatedLink(skew_ms, legs)
    estimator = ClockOffsetEstimator(
        link.server_time_ms, samples=5, sample_delay_s=0.0, clock_ms=link.clock_ms
    )

    samples = asyncio.run(estimator.collect())
    median_error = abs(median_offset(samples) - skew_ms)
    mean_error = abs(statistics.fmean(s.offset_ms for s in samples) - skew_ms)
    assert median_error < mean_error
    assert median_error < 5.0


def test_requires_two_samples() -> None:
    async def fetch() -> float:
        return 0.0

    with pytest.raises(ValueError):
        ClockOffsetEstimator(fetch, samples=1)


def test_receiver_errors_propagate() -> None:
    async def fetch() -> float:
        raise NetworkError("unreachable")

    estimator = ClockOffsetEstimator(fetch, samples=2, sample_delay_s=0.0)
    with pytest.raises(NetworkError):
        asyncio.run(estimator.estimate())


def test_median_offset_requires_samples() -> None:
    with pytest.raises(ValueError):
        median_offset([])
