"""Tests for matched-filter detection and latency aggregation."""

from __future__ import annotations

import numpy as np
import pytest

from airsync.calibration.detector import (
    DetectorConfig,
    StructuredDetector,
    confidence_score,
    find_best_alignment,
    inlier_mask,
    normalize_peak,
)
from airsync.calibration.generator import marker_waveform, synthesize
from airsync.calibration.signal import CalibrationSignalSpec, build_structured_spec
from airsync.calibration.types import Detection, RecordedAudio

from .synthetic import delayed_recording


def test_concrete_two_marker_scenario(two_marker_spec: CalibrationSignalSpec) -> None:
    recording = delayed_recording(two_marker_spec, 500, tail_samples=0)

    result = StructuredDetector().measure(recording, two_marker_spec, 0)

    assert len(result.detections) == 2
    assert result.latency_ms == pytest.approx(500 / 48_000 * 1000, abs=0.05)
    assert result.confidence > 0.2
    assert [d.sample_index for d in result.detections] == [500, 1_500]


def test_all_silence_yields_empty_measurement(two_marker_spec: CalibrationSignalSpec) -> None:
    recording = np.zeros(48_000, dtype=np.float32)

    result = StructuredDetector().measure(recording, two_marker_spec, 0)

    assert len(result.detections) == 0
    assert result.confidence == 0.0
    assert result.latency_ms == 0.0


def test_empty_recording(two_marker_spec: CalibrationSignalSpec) -> None:
    result = StructuredDetector().measure(np.zeros(0, dtype=np.float32), two_marker_spec, 0)
    assert result.detections == ()
    assert result.confidence == 0.0


@pytest.mark.parametrize("delay_ms", [0, 7, 25, 60, 140, 195])
def test_recovers_injected_delay(sweep_spec: CalibrationSignalSpec, delay_ms: int) -> None:
    detector = StructuredDetector(DetectorConfig(search_window_ms=200))
    lead = 9_600
    delay = delay_ms * 48
    recording = delayed_recording(sweep_spec, lead + delay, tail_samples=12_000)

    result = detector.measure(recording, sweep_spec, lead)

    assert result.latency_ms == pytest.approx(delay_ms, abs=2.0)
    assert len(result.detections) == len(sweep_spec.markers)
    assert result.confidence > 0.9


def test_structured_signal_with_noise() -> None:
    spec = build_structured_spec()
    lead = 24_000
    delay = 1_234
    rng = np.random.default_rng(1)
    recording = delayed_recording(spec, lead + delay, tail_samples=24_000)
    recording = recording + rng.normal(0.0, 0.05, len(recording)).astype(np.float32)

    result = StructuredDetector(DetectorConfig(search_window_ms=300)).measure(
        RecordedAudio(recording, 48_000, 0.0), spec, lead
    )

    assert result.latency_ms == pytest.approx(delay / 48, abs=2.0)
    used = {d.marker_id for d in result.used_detections}
    # Only late non-hum markers are aggregated when they are available.
    assert used <= {"chirp_5", "chirp_6", "chirp_7", "click_b"}
    assert used


def test_noise_never_raises_confidence(sweep_spec: CalibrationSignalSpec) -> None:
    detector = StructuredDetector(DetectorConfig(search_window_ms=100))
    lead = 9_600
    clean = delayed_recording(sweep_spec, lead + 480)
    baseline = detector.measure(clean, sweep_spec, lead).confidence

    rng = np.random.default_rng(42)
    for sigma in (0.05, 0.3, 1.0):
        noisy = clean + rng.normal(0.0, sigma, len(clean)).astype(np.float32)
        assert detector.measure(noisy, sweep_spec, lead).confidence <= baseline


def test_outlier_marker_is_rejected(sweep_spec: CalibrationSignalSpec) -> None:
    lead = 9_600
    delay = 480
    recording = np.zeros(lead + sweep_spec.length_samples + 12_000, dtype=np.float32)
    for i, marker in enumerate(sweep_spec.markers):
        shift = 2_000 if i == 2 else 0
        start = lead + delay + marker.start_sample + shift
        recording[start : start + marker.duration_samples] = marker_waveform(marker, 48_000)

    detector = StructuredDetector(DetectorConfig(search_window_ms=100, anchor_fraction=0.0))
    result = detector.measure(recording, sweep_spec, lead)

    assert result.latency_ms == pytest.approx(10.0, abs=0.5)
    rejected = [d for d in result.detections if not d.used]
    assert [d.marker_id for d in rejected] == ["sweep_2"]
    assert rejected[0].latency_ms == pytest.approx(10.0 + 2_000 / 48, abs=0.5)


def test_small_negative_latency_clamps_to_zero(two_marker_spec: CalibrationSignalSpec) -> None:
    recording = delayed_recording(two_marker_spec, 500)
    # Expected 96 samples (2 ms) after where the signal actually starts.
    result = StructuredDetector().measure(recording, two_marker_spec, 596)
    assert result.latency_ms == 0.0
    assert all(d.latency_ms == pytest.approx(-2.0) for d in result.detections)


def test_large_negative_latency_is_reported(two_marker_spec: CalibrationSignalSpec) -> None:
    recording = delayed_recording(two_marker_spec, 500)
    result = StructuredDetector().measure(recording, two_marker_spec, 1_460)
    assert result.latency_ms == pytest.approx(-20.0)


def test_negative_tolerance_is_configurable(two_marker_spec: CalibrationSignalSpec) -> None:
    recording = delayed_recording(two_marker_spec, 500)
    detector = StructuredDetector(DetectorConfig(negative_latency_tolerance_ms=0.0))
    assert detector.measure(recording, two_marker_spec, 596).latency_ms == pytest.approx(-2.0)


def test_sample_rate_mismatch(two_marker_spec: CalibrationSignalSpec) -> None:
    recording = RecordedAudio(np.zeros(1_000, dtype=np.float32), 44_100, 0.0)
    with pytest.raises(ValueError):
        StructuredDetector().measure(recording, two_marker_spec, 0)


def test_find_best_alignment_refines_off_grid() -> None:
    rng = np.random.default_rng(3)
    # Smoothed noise keeps a correlation peak wider than the coarse grid.
    reference = np.convolve(rng.normal(size=300), np.hanning(32), mode="same")
    recording = np.zeros(5_000)
    recording[1_237 : 1_237 + 300] = reference

    index, score = find_best_alignment(recording, reference, 1_000, 500, step=8)

    assert index == 1_237
    assert score == pytest.approx(1.0)


def test_find_best_alignment_window_outside_recording() -> None:
    assert find_best_alignment(np.zeros(100), np.ones(200), 0, 50) is None
    assert find_best_alignment(np.zeros(1_000), np.ones(10), 5_000, 100) is None


def test_normalize_peak() -> None:
    assert normalize_peak(np.zeros(10)) is None
    assert normalize_peak(np.array([])) is None
    assert np.max(np.abs(normalize_peak(np.array([0.2, -0.5, 0.1])))) == 1.0


def test_inlier_mask() -> None:
    values = [10.0, 10.1, 9.9, 10.0, 55.0]
    assert inlier_mask(values).tolist() == [True, True, True, True, False]
    # Identical values keep everything thanks to the epsilon.
    assert inlier_mask([3.0, 3.0, 3.0, 3.05]).all()
    # Two values cannot outvote each other.
    assert inlier_mask([0.0, 100.0]).all()


def test_confidence_score_terms() -> None:
    agreeing = [Detection(f"m{i}", 0, 0.8, 10.0) for i in range(4)]
    assert confidence_score(agreeing, 4, 4) == pytest.approx(0.6 * 0.8 + 0.2 + 0.2)
    assert confidence_score(agreeing, 2, 4) == pytest.approx(0.6 * 0.8 + 0.2 + 0.1)

    spread = [Detection("a", 0, 0.8, 0.0), Detection("b", 0, 0.8, 20.0)]
    assert confidence_score(spread, 2, 2) == pytest.approx(0.6 * 0.8 + 0.2)

    single = [Detection("a", 0, 1.0, 5.0)]
    assert confidence_score(single, 1, 1) == pytest.approx(0.5)
    assert confidence_score([], 0, 5) == 0.0


def test_hum_markers_are_never_anchors() -> None:
    spec = build_structured_spec()
    recording = synthesize(spec)
    result = StructuredDetector(DetectorConfig(search_window_ms=50)).measure(recording, spec, 0)
    assert "warmdown" not in {d.marker_id for d in result.used_detections}
    assert result.latency_ms == 0.0
