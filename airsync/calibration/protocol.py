"""JSON payloads exchanged with the receiver's calibration API."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any

from airsync.calibration.types import LatencyMeasurement
from airsync.errors import DecodeError

SPEC_PATH = "calibration/spec"
REQUEST_PATH = "calibration/request"
READY_PATH = "calibration/ready"
RESULT_PATH = "calibration/result"
TIME_PATH = "time"


@dataclass(frozen=True, slots=True)
class ChirpConfig:
    """Legacy repeated-chirp playback parameters some receivers still accept."""

    start_freq: int = 1_000
    end_freq: int = 10_000
    duration: int = 100
    repetitions: int = 6
    interval_ms: int = 400
    amplitude: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire form, omitting an unset amplitude."""
        data = asdict(self)
        if self.amplitude is None:
            del data["amplitude"]
        return data


def request_payload(
    timestamp: int, delay_ms: int, chirp_config: ChirpConfig | None = None
) -> dict[str, Any]:
    """Body of ``POST /calibration/request``."""
    payload: dict[str, Any] = {
        "timestamp": timestamp,
        "delay_ms": delay_ms,
        "structured": True,
    }
    if chirp_config is not None:
        payload["chirp_config"] = chirp_config.to_dict()
    return payload


def ready_payload(timestamp: int, target_start_ms: int) -> dict[str, Any]:
    """Body of ``POST /calibration/ready``."""
    return {"timestamp": timestamp, "target_start_ms": target_start_ms}


def result_payload(timestamp: int, measurement: LatencyMeasurement) -> dict[str, Any]:
    """Body of ``POST /calibration/result``."""
    return {
        "timestamp": timestamp,
        "latency_ms": measurement.latency_ms,
        "confidence": measurement.confidence,
        "detections": [d.to_dict() for d in measurement.detections],
    }


@dataclass(frozen=True, slots=True)
class CalibrationApplyResponse:
    """What the receiver did with a submitted measurement."""

    measured_latency_ms: float
    applied_offset_ms: float
    was_clamped: bool

    @classmethod
    def from_dict(cls, data: Any) -> CalibrationApplyResponse:
        """Parse the optional body returned by ``POST /calibration/result``."""
        if not isinstance(data, Mapping):
            raise DecodeError("calibration result response must be an object")
        try:
            return cls(
                measured_latency_ms=float(data["measured_latency_ms"]),
                applied_offset_ms=float(data["applied_offset_ms"]),
                was_clamped=bool(data["was_clamped"]),
            )
        except (KeyError, TypeError, ValueError) as err:
            raise DecodeError(f"malformed calibration result response: {err}") from err


def server_time_from_response(data: Any) -> float:
    """Extract ``server_time_ms`` from a ``GET /time`` response."""
    if not isinstance(data, Mapping):
        raise DecodeError("time response must be an object")
    value = data.get("server_time_ms")
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise DecodeError(f"time response has invalid server_time_ms {value!r}")
    return float(value)
