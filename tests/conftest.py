"""Shared fixtures for the calibration tests."""

from __future__ import annotations

import pytest

from airsync.calibration.signal import CalibrationSignalSpec, Chirp, Click, MarkerSpec


@pytest.fixture
def two_marker_spec() -> CalibrationSignalSpec:
    """One 100-sample click at 0 and a 50 ms 2 kHz tone at sample 1000."""
    return CalibrationSignalSpec(
        sample_rate=48_000,
        length_samples=3_400,
        markers=(
            MarkerSpec("click", Click(), 0, 100),
            MarkerSpec("tone", Chirp(2_000, 2_000, 50), 1_000, 2_400),
        ),
    )


@pytest.fixture
def sweep_spec() -> CalibrationSignalSpec:
    """Five distinct 100 ms sweeps spaced 300 ms apart."""
    sweeps = ((800, 2_400), (3_000, 6_000), (6_000, 3_000), (2_000, 10_000), (4_000, 1_000))
    markers = tuple(
        MarkerSpec(f"sweep_{i}", Chirp(lo, hi, 100), 4_800 + i * 14_400, 4_800)
        for i, (lo, hi) in enumerate(sweeps)
    )
    return CalibrationSignalSpec(sample_rate=48_000, length_samples=76_800, markers=markers)

