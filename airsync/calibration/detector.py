"""Matched-filter marker detection and latency aggregation.

Each marker of the signal spec is re-synthesized as a reference template and
searched for in the recording around the position where it would appear if
the receiver had zero output latency. The search maximizes the normalized
cross-correlation (NCC)::

    NCC(s) = |sum(ref[i] * rec[s + i])| / sqrt(sum(ref[i]^2) * sum(rec[s + i]^2))

first on a coarse grid and then sample-by-sample around the best coarse
candidate. Markers whose best NCC stays under the threshold are dropped.

The surviving detections are reduced to a single latency by taking the
median of their implied playback-start positions, after preferring late
"anchor" markers and discarding MAD outliers. The confidence score blends
mean correlation, agreement between markers and marker coverage.
"""

from __future__ import annotations

import logging
import statistics
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from airsync.calibration.generator import marker_waveform
from airsync.calibration.signal import CalibrationSignalSpec, MarkerSpec
from airsync.calibration.types import Detection, LatencyMeasurement, RecordedAudio

logger = logging.getLogger(__name__)

_SCORE_BLOCK: Final[int] = 512
"""Number of candidate offsets scored per vectorized block."""

_WEIGHT_CORRELATION: Final[float] = 0.6
_WEIGHT_SPREAD: Final[float] = 0.2
_WEIGHT_COVERAGE: Final[float] = 0.2


@dataclass(frozen=True, slots=True)
class DetectorConfig:
    """Tuning parameters for `StructuredDetector`.

    Attributes:
        search_window_ms: Half-width of the search window around each expected
            marker position; bounds the largest latency that can be measured.
        coarse_step: Stride of the coarse search grid in samples.
        min_correlation: Minimum NCC for a marker to count as found.
        mad_scale: Multiple of the median absolute deviation beyond which a
            detection is an outlier.
        mad_epsilon_ms: Added to the MAD threshold so near-identical detections
            are never rejected.
        anchor_fraction: Markers starting at or past this fraction of the signal
            length are anchors.
        spread_scale_ms: Standard deviation of per-marker latencies at which the
            agreement term of the confidence score reaches zero.
        negative_latency_tolerance_ms: Negative latencies down to minus this value
            are reported as zero.
    """

    search_window_ms: float = 1000.0
    coarse_step: int = 4
    min_correlation: float = 0.25
    mad_scale: float = 3.5
    mad_epsilon_ms: float = 0.1
    anchor_fraction: float = 0.5
    spread_scale_ms: float = 5.0
    negative_latency_tolerance_ms: float = 5.0


def normalize_peak(samples: np.ndarray) -> np.ndarray | None:
    """Scale samples so the peak absolute amplitude is 1, or None when silent."""
    samples = np.asarray(samples, dtype=np.float64)
    if samples.size == 0:
        return None
    peak = float(np.max(np.abs(samples)))
    if peak <= 0.0 or not np.isfinite(peak):
        return None
    return samples / peak


def _ncc(windows: np.ndarray, reference: np.ndarray, reference_energy: float) -> np.ndarray:
    dots = windows @ reference
    energies = np.einsum("ij,ij->i", windows, windows)
    denominator = np.sqrt(reference_energy * energies)
    scores = np.zeros(len(dots))
    nonzero = denominator > 0.0
    scores[nonzero] = np.abs(dots[nonzero]) / denominator[nonzero]
    return np.minimum(scores, 1.0)


def _score_offsets(
    windows: np.ndarray, starts: np.ndarray, reference: np.ndarray, reference_energy: float
) -> np.ndarray:
    scores = np.empty(len(starts))
    for block_start in range(0, len(starts), _SCORE_BLOCK):
        block = starts[block_start : block_start + _SCORE_BLOCK]
        scores[block_start : block_start + len(block)] = _ncc(
            windows[block], reference, reference_energy
        )
    return scores


def find_best_alignment(
    recording: np.ndarray,
    reference: np.ndarray,
    expected_start: int,
    max_offset: int,
    step: int = 4,
) -> tuple[int, float] | None:
    """Locate ``reference`` inside ``recording`` near ``expected_start``.

    Scores every ``step``-th offset in ``[expected_start - max_offset,
    expected_start + max_offset]`` and then every offset within ``step`` of the
    best coarse candidate.

    Returns:
        ``(start_index, ncc)`` of the best match, or None when the search
        window does not fit inside the recording.
    """
    length = len(reference)
    if length == 0 or len(recording) < length:
        return None
    lower = max(0, expected_start - max_offset)
    upper = min(len(recording) - length, expected_start + max_offset)
    if lower > upper:
        return None

    reference = np.asarray(reference, dtype=np.float64)
    reference_energy = float(reference @ reference)
    if reference_energy <= 0.0:
        return None

    windows = sliding_window_view(recording, length)
    step = max(1, step)

    coarse = np.arange(lower, upper + 1, step)
    coarse_scores = _score_offsets(windows, coarse, reference, reference_energy)
    best_start = int(coarse[int(np.argmax(coarse_scores))])

    fine = np.arange(max(lower, best_start - step), min(upper, best_start + step) + 1)
    fine_scores = _score_offsets(windows, fine, reference, reference_energy)
    best = int(np.argmax(fine_scores))
    return int(fine[best]), float(fine_scores[best])


def inlier_mask(values: Sequence[float], scale: float = 3.5, epsilon: float = 0.1) -> np.ndarray:
    """Flag values within ``scale * MAD + epsilon`` of the median.

    With two or fewer values there is no majority to compare against, so
    everything is kept.
    """
    data = np.asarray(values, dtype=np.float64)
    if len(data) <= 2:
        return np.ones(len(data), dtype=bool)
    median = np.median(data)
    deviations = np.abs(data - median)
    threshold = scale * float(np.median(deviations)) + epsilon
    return deviations <= threshold


def confidence_score(
    used: Sequence[Detection],
    accepted_count: int,
    total_markers: int,
    spread_scale_ms: float = 5.0,
) -> float:
    """Combine correlation strength, agreement and coverage into a [0, 1] score.

    Args:
        used: Detections that produced the aggregated latency.
        accepted_count: Number of markers that passed the correlation threshold.
        total_markers: Number of markers in the signal spec.
        spread_scale_ms: Latency standard deviation at which agreement scores zero.
    """
    if not used:
        return 0.0
    correlation = statistics.fmean(d.correlation for d in used)
    spread = statistics.pstdev(d.latency_ms for d in used) if len(used) > 1 else 0.0
    agreement = max(0.0, 1.0 - spread / spread_scale_ms) if spread_scale_ms > 0 else 0.0
    coverage = min(1.0, accepted_count / max(1, total_markers))

    score = (
        _WEIGHT_CORRELATION * correlation
        + _WEIGHT_SPREAD * agreement
        + _WEIGHT_COVERAGE * coverage
    )
    score = min(1.0, max(0.0, score))
    if len(used) < 2:
        # A single detection cannot corroborate itself.
        score *= 0.5
    return score


@dataclass(frozen=True, slots=True)
class _Found:
    marker: MarkerSpec
    sample_index: int
    correlation: float
    latency_ms: float


class StructuredDetector:
    """Measure output latency from a recording of a structured calibration signal."""

    def __init__(self, config: DetectorConfig | None = None) -> None:
        """Initialize the detector.

        Args:
            config: Tuning parameters; defaults are used when omitted.
        """
        self._config = config or DetectorConfig()

    @property
    def config(self) -> DetectorConfig:
        """The detector's tuning parameters."""
        return self._config

    @property
    def search_window_s(self) -> float:
        """Half-width of the per-marker search window in seconds."""
        return self._config.search_window_ms / 1000.0

    def measure(
        self,
        recording: RecordedAudio | np.ndarray,
        spec: CalibrationSignalSpec,
        start_offset_samples: int,
    ) -> LatencyMeasurement:
        """Locate every marker and aggregate the results.

        Args:
            recording: Captured audio; a bare array is assumed to be at the
                spec's sample rate.
            spec: Description of the signal that was played.
            start_offset_samples: Recording index that corresponds to sample 0
                of the signal when latency is zero.

        Returns:
            The measurement. A silent recording or one in which no marker
            passes the threshold yields zero latency with zero confidence.
        """
        if isinstance(recording, RecordedAudio):
            if recording.sample_rate != spec.sample_rate:
                raise ValueError(
                    f"recording sample rate {recording.sample_rate} does not match "
                    f"signal sample rate {spec.sample_rate}"
                )
            samples = recording.samples
        else:
            samples = recording

        normalized = normalize_peak(samples)
        if normalized is None:
            logger.info("Recording is empty or silent; no markers can be detected")
            return LatencyMeasurement.empty()

        found = self._detect_markers(normalized, spec, start_offset_samples)
        if not found:
            logger.warning("No marker exceeded correlation %.2f", self._config.min_correlation)
            return LatencyMeasurement.empty()

        return self._aggregate(found, spec, start_offset_samples)

    def _detect_markers(
        self, recording: np.ndarray, spec: CalibrationSignalSpec, start_offset_samples: int
    ) -> list[_Found]:
        config = self._config
        sample_rate = spec.sample_rate
        max_offset = int(sample_rate * config.search_window_ms / 1000.0)
        found: list[_Found] = []

        for marker in spec.markers:
            reference = normalize_peak(marker_waveform(marker, sample_rate))
            if reference is None:
                continue
            expected = marker.start_sample + start_offset_samples
            alignment = find_best_alignment(
                recording, reference, expected, max_offset, config.coarse_step
            )
            if alignment is None:
                logger.debug("Marker %s: search window outside recording", marker.id)
                continue

            index, correlation = alignment
            latency_ms = (index - expected) / sample_rate * 1000.0
            if correlation < config.min_correlation:
                logger.debug(
                    "Marker %s rejected: corr=%.3f idx=%d", marker.id, correlation, index
                )
                continue

            logger.debug(
                "Marker %s corr=%.3f idx=%d latency_ms=%.2f",
                marker.id,
                correlation,
                index,
                latency_ms,
            )
            found.append(_Found(marker, index, correlation, latency_ms))
        return found

    def _is_anchor(self, marker: MarkerSpec, spec: CalibrationSignalSpec) -> bool:
        return (
            not marker.is_warm
            and marker.start_sample >= self._config.anchor_fraction * spec.length_samples
        )

    def _aggregate(
        self, found: list[_Found], spec: CalibrationSignalSpec, start_offset_samples: int
    ) -> LatencyMeasurement:
        config = self._config
        sample_rate = spec.sample_rate

        anchors = [f for f in found if self._is_anchor(f.marker, spec)]
        pool = anchors or found

        implied_starts = np.array(
            [f.sample_index - f.marker.start_sample for f in pool], dtype=np.float64
        )
        keep = inlier_mask(
            implied_starts / sample_rate * 1000.0, config.mad_scale, config.mad_epsilon_ms
        )
        used_ids = {f.marker.id for f, kept in zip(pool, keep, strict=True) if kept}

        playback_start = float(np.median(implied_starts[keep]))
        latency_ms = (playback_start - start_offset_samples) / sample_rate * 1000.0
        if latency_ms < 0.0:
            if latency_ms >= -config.negative_latency_tolerance_ms:
                latency_ms = 0.0
            else:
                logger.warning(
                    "Measured negative latency %.2fms beyond tolerance; "
                    "check clock alignment",
                    latency_ms,
                )

        detections = tuple(
            Detection(
                marker_id=f.marker.id,
                sample_index=f.sample_index,
                correlation=f.correlation,
                latency_ms=f.latency_ms,
                used=f.marker.id in used_ids,
            )
            for f in found
        )
        used = [d for d in detections if d.used]
        confidence = confidence_score(
            used, len(found), len(spec.markers), config.spread_scale_ms
        )

        logger.info(
            "Detector playback_start_ms=%.2f latency_ms=%.2f confidence=%.2f "
            "(%d found, %d anchors, %d used)",
            playback_start / sample_rate * 1000.0,
            latency_ms,
            confidence,
            len(found),
            len(anchors),
            len(used),
        )
        return LatencyMeasurement(
            latency_ms=latency_ms, confidence=confidence, detections=detections
        )
