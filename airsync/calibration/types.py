"""Value types exchanged between the recorder, detector and session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import numpy as np


@dataclass(frozen=True, slots=True, eq=False)
class RecordedAudio:
    """Mono capture handed from the recorder to the detector.

    Attributes:
        samples: float32 amplitudes, nominally in [-1, 1].
        sample_rate: Capture sample rate in Hz.
        started_at: Wall-clock time (seconds since the epoch, client clock) of the
            first captured sample.
    """

    samples: np.ndarray
    sample_rate: int
    started_at: float

    @property
    def started_at_ms(self) -> float:
        """Start time in milliseconds since the epoch."""
        return self.started_at * 1000.0

    @property
    def duration_s(self) -> float:
        """Captured duration in seconds."""
        return len(self.samples) / self.sample_rate


@dataclass(frozen=True, slots=True)
class Detection:
    """A marker located inside a recording.

    Attributes:
        marker_id: Id of the marker from the signal spec.
        sample_index: Recording index where the marker was found.
        correlation: Normalized cross-correlation at that index, in [0, 1].
        latency_ms: Offset between the expected and found positions.
        used: Whether the detection contributed to the aggregated latency
            (False for non-anchor markers and MAD outliers).
    """

    marker_id: str
    sample_index: int
    correlation: float
    latency_ms: float
    used: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire form used in result submissions."""
        return {
            "marker_id": self.marker_id,
            "sample_index": self.sample_index,
            "correlation": self.correlation,
            "latency_ms": self.latency_ms,
        }


@dataclass(frozen=True, slots=True)
class LatencyMeasurement:
    """Final output of a calibration attempt.

    Attributes:
        latency_ms: Measured output latency; small negative values are clamped to zero.
        confidence: Calibrated confidence score in [0, 1].
        detections: Every marker that passed the correlation threshold.
    """

    latency_ms: float
    confidence: float
    detections: tuple[Detection, ...] = field(default_factory=tuple)

    @classmethod
    def empty(cls) -> LatencyMeasurement:
        """Measurement for an attempt in which nothing was found."""
        return cls(latency_ms=0.0, confidence=0.0, detections=())

    @property
    def used_detections(self) -> tuple[Detection, ...]:
        """Detections that contributed to the aggregated latency."""
        return tuple(d for d in self.detections if d.used)
