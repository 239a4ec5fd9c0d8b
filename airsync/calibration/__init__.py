"""Acoustic latency calibration between a receiver and this client."""

from airsync.calibration.detector import DetectorConfig, StructuredDetector
from airsync.calibration.signal import (
    CalibrationSignalSpec,
    Chirp,
    Click,
    MarkerSpec,
    build_structured_spec,
    decode_spec,
    encode_spec,
)
from airsync.calibration.types import Detection, LatencyMeasurement, RecordedAudio

__all__ = [
    "CalibrationSignalSpec",
    "Chirp",
    "Click",
    "Detection",
    "DetectorConfig",
    "LatencyMeasurement",
    "MarkerSpec",
    "RecordedAudio",
    "StructuredDetector",
    "build_structured_spec",
    "decode_spec",
    "encode_spec",
]
