"""Structured calibration signal description and its JSON wire codec.

A calibration signal is described entirely by data: a sample rate, a total
length and an ordered list of markers. Each marker is either a short
constant-amplitude click or a windowed linear frequency sweep ("chirp").
Both sides synthesize PCM from the same description, so the receiver can
persist and play the signal while the client builds matching reference
templates without ever transferring audio.

The receiver serializes the marker kind as an externally tagged union:
a bare ``"click"`` string, or an object keyed ``"chirp"`` holding
``start_freq``, ``end_freq`` and ``duration_ms``. Older receivers emitted a
few other shapes; `decode_marker_kind` tries every known shape in a fixed
order and raises `DecodeError` when none matches.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final

from airsync.errors import DecodeError, SignalSpecError

logger = logging.getLogger(__name__)

DEFAULT_SAMPLE_RATE: Final[int] = 48_000

_CHIRP_FIELDS: Final[tuple[str, ...]] = ("start_freq", "end_freq", "duration_ms")


@dataclass(frozen=True, slots=True)
class Click:
    """A short broadband transient rendered as a constant-amplitude burst."""


@dataclass(frozen=True, slots=True)
class Chirp:
    """A Hann-windowed linear frequency sweep.

    Attributes:
        start_freq: Frequency at the first sample in Hz.
        end_freq: Frequency at the last sample in Hz.
        duration_ms: Sweep duration in milliseconds.
    """

    start_freq: int
    end_freq: int
    duration_ms: int


MarkerKind = Click | Chirp


@dataclass(frozen=True, slots=True)
class MarkerSpec:
    """A known sub-signal placed at a fixed offset inside the calibration signal.

    Attributes:
        id: Identifier, unique within a spec.
        kind: Click or chirp.
        start_sample: Expected offset of the first sample within the unshifted signal.
        duration_samples: Number of samples the marker occupies.
    """

    id: str
    kind: MarkerKind
    start_sample: int
    duration_samples: int

    @property
    def end_sample(self) -> int:
        """Index one past the last sample of the marker."""
        return self.start_sample + self.duration_samples

    @property
    def is_warm(self) -> bool:
        """Whether this marker is part of the warm-up/warm-down hum."""
        return "warm" in self.id.lower()


@dataclass(frozen=True, slots=True)
class CalibrationSignalSpec:
    """Complete description of a calibration signal.

    Attributes:
        sample_rate: Sample rate in Hz.
        length_samples: Total signal length in samples.
        markers: Markers in chronological order.
    """

    sample_rate: int
    length_samples: int
    markers: tuple[MarkerSpec, ...]

    def __post_init__(self) -> None:
        # Accept any sequence from callers but store an immutable tuple.
        if not isinstance(self.markers, tuple):
            object.__setattr__(self, "markers", tuple(self.markers))

    @property
    def duration_s(self) -> float:
        """Signal duration in seconds."""
        return self.length_samples / self.sample_rate

    def validate(self) -> None:
        """Check the structural invariants of the spec.

        Raises:
            SignalSpecError: If the sample rate or length is not positive, a
                marker id repeats, a marker extends past the signal end, or a
                chirp marker is shorter than two samples.
        """
        if self.sample_rate <= 0:
            raise SignalSpecError(f"sample_rate must be positive, got {self.sample_rate}")
        if self.length_samples <= 0:
            raise SignalSpecError(f"length_samples must be positive, got {self.length_samples}")

        seen: set[str] = set()
        for marker in self.markers:
            if marker.id in seen:
                raise SignalSpecError(f"duplicate marker id {marker.id!r}")
            seen.add(marker.id)
            if marker.start_sample < 0 or marker.duration_samples <= 0:
                raise SignalSpecError(
                    f"marker {marker.id!r} has invalid span "
                    f"start={marker.start_sample} duration={marker.duration_samples}"
                )
            # A windowed chirp needs two samples for both edges to reach zero.
            if isinstance(marker.kind, Chirp) and marker.duration_samples < 2:
                raise SignalSpecError(
                    f"chirp marker {marker.id!r} needs at least 2 samples, "
                    f"got {marker.duration_samples}"
                )
            if marker.end_sample > self.length_samples:
                raise SignalSpecError(
                    f"marker {marker.id!r} ends at sample {marker.end_sample}, "
                    f"past signal length {self.length_samples}"
                )


def samples_for_ms(duration_ms: int, sample_rate: int) -> int:
    """Convert a whole number of milliseconds into a sample count."""
    return duration_ms * sample_rate // 1000


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_marker_kind(kind: MarkerKind) -> str | dict[str, Any]:
    """Encode a marker kind in the receiver's externally tagged form."""
    if isinstance(kind, Click):
        return "click"
    return {
        "chirp": {
            "start_freq": kind.start_freq,
            "end_freq": kind.end_freq,
            "duration_ms": kind.duration_ms,
        }
    }


def spec_to_dict(spec: CalibrationSignalSpec) -> dict[str, Any]:
    """Convert a spec to a JSON-compatible dictionary."""
    return {
        "sample_rate": spec.sample_rate,
        "length_samples": spec.length_samples,
        "markers": [
            {
                "id": marker.id,
                "kind": encode_marker_kind(marker.kind),
                "start_sample": marker.start_sample,
                "duration_samples": marker.duration_samples,
            }
            for marker in spec.markers
        ],
    }


def encode_spec(spec: CalibrationSignalSpec) -> str:
    """Serialize a spec to its JSON wire form."""
    return json.dumps(spec_to_dict(spec), separators=(",", ":"))


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _require_int(data: Mapping[str, Any], key: str, context: str) -> int:
    if key not in data:
        raise DecodeError(f"{context}: missing field {key!r}")
    value = data[key]
    # bool is an int subclass; reject it explicitly.
    if isinstance(value, bool) or not isinstance(value, int):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        else:
            raise DecodeError(f"{context}: field {key!r} must be an integer, got {value!r}")
    if value < 0:
        raise DecodeError(f"{context}: field {key!r} must not be negative, got {value}")
    return value


def _chirp_from_fields(data: Mapping[str, Any], context: str) -> Chirp:
    return Chirp(
        start_freq=_require_int(data, "start_freq", context),
        end_freq=_require_int(data, "end_freq", context),
        duration_ms=_require_int(data, "duration_ms", context),
    )


def decode_marker_kind(raw: Any, context: str = "kind") -> MarkerKind:
    """Decode a marker kind from any known wire shape.

    Shapes are tried in this order:

    1. the bare string ``"click"``;
    2. an object keyed ``"click"`` (e.g. ``{"click": []}``);
    3. an object keyed ``"chirp"`` whose value holds the three sweep fields;
    4. a flat object holding the three sweep fields directly.

    Raises:
        DecodeError: If the value matches none of the shapes.
    """
    if isinstance(raw, str):
        if raw.lower() == "click":
            return Click()
        raise DecodeError(f"{context}: unknown marker kind {raw!r}")

    if isinstance(raw, Mapping):
        if "click" in raw:
            return Click()
        if "chirp" in raw:
            inner = raw["chirp"]
            if not isinstance(inner, Mapping):
                raise DecodeError(f"{context}: chirp payload must be an object, got {inner!r}")
            return _chirp_from_fields(inner, f"{context}.chirp")
        if all(field in raw for field in _CHIRP_FIELDS):
            return _chirp_from_fields(raw, context)

    raise DecodeError(f"{context}: unrecognized marker kind {raw!r}")


def marker_from_dict(data: Any, index: int = 0) -> MarkerSpec:
    """Decode a single marker object."""
    context = f"markers[{index}]"
    if not isinstance(data, Mapping):
        raise DecodeError(f"{context}: expected an object, got {type(data).__name__}")
    marker_id = data.get("id")
    if not isinstance(marker_id, str) or not marker_id:
        raise DecodeError(f"{context}: field 'id' must be a non-empty string")
    if "kind" not in data:
        raise DecodeError(f"{context}: missing field 'kind'")
    return MarkerSpec(
        id=marker_id,
        kind=decode_marker_kind(data["kind"], f"{context}.kind"),
        start_sample=_require_int(data, "start_sample", context),
        duration_samples=_require_int(data, "duration_samples", context),
    )


def spec_from_dict(data: Any) -> CalibrationSignalSpec:
    """Decode and validate a spec from a parsed JSON object.

    Raises:
        DecodeError: If the object does not have the expected shape.
        SignalSpecError: If the decoded spec violates its invariants.
    """
    if not isinstance(data, Mapping):
        raise DecodeError(f"spec: expected an object, got {type(data).__name__}")
    markers_raw = data.get("markers")
    if not isinstance(markers_raw, Sequence) or isinstance(markers_raw, str):
        raise DecodeError("spec: field 'markers' must be a list")

    spec = CalibrationSignalSpec(
        sample_rate=_require_int(data, "sample_rate", "spec"),
        length_samples=_require_int(data, "length_samples", "spec"),
        markers=tuple(marker_from_dict(raw, i) for i, raw in enumerate(markers_raw)),
    )
    spec.validate()
    return spec


def decode_spec(payload: str | bytes) -> CalibrationSignalSpec:
    """Parse a spec from its JSON wire form."""
    try:
        data = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as err:
        raise DecodeError(f"spec is not valid JSON: {err}") from err
    return spec_from_dict(data)


def spec_from_response(data: Any) -> CalibrationSignalSpec:
    """Decode the ``{"spec": ...}`` envelope returned by ``GET /calibration/spec``."""
    if not isinstance(data, Mapping) or "spec" not in data:
        raise DecodeError("spec response: expected an object with a 'spec' field")
    return spec_from_dict(data["spec"])


# ---------------------------------------------------------------------------
# Default layout
# ---------------------------------------------------------------------------

_WARMUP_HUM: Final = ("warmup", 120, 400)
_WARMDOWN_HUM: Final = ("warmdown", 200, 200)
_CLICK_MS: Final[int] = 10
_CHIRP_MS: Final[int] = 100
_CHIRP_GAP_MS: Final[int] = 280
_CHIRP_SWEEPS: Final[tuple[tuple[int, int], ...]] = (
    (800, 2_400),
    (1_000, 4_000),
    (3_000, 6_000),
    (6_000, 3_000),
    (8_000, 2_000),
    (2_000, 10_000),
    (4_000, 1_000),
)
_TAIL_MS: Final[int] = 250


class _LayoutCursor:
    """Accumulates markers while advancing through the signal timeline."""

    def __init__(self, sample_rate: int) -> None:
        self.sample_rate = sample_rate
        self.position = 0
        self.markers: list[MarkerSpec] = []

    def silence(self, duration_ms: int) -> None:
        self.position += samples_for_ms(duration_ms, self.sample_rate)

    def click(self, marker_id: str, duration_ms: int) -> None:
        self._push(marker_id, Click(), duration_ms)

    def chirp(self, marker_id: str, start_freq: int, end_freq: int, duration_ms: int) -> None:
        self._push(marker_id, Chirp(start_freq, end_freq, duration_ms), duration_ms)

    def _push(self, marker_id: str, kind: MarkerKind, duration_ms: int) -> None:
        length = samples_for_ms(duration_ms, self.sample_rate)
        self.markers.append(MarkerSpec(marker_id, kind, self.position, length))
        self.position += length


def build_structured_spec(sample_rate: int = DEFAULT_SAMPLE_RATE) -> CalibrationSignalSpec:
    """Build the receiver's default structured calibration signal.

    The layout opens with a low hum that lets amplifiers and AGC circuits
    settle, then places two clicks around seven distinct sweeps and closes
    with a quieter hum before a short silent tail.
    """
    cursor = _LayoutCursor(sample_rate)

    marker_id, freq, duration_ms = _WARMUP_HUM
    cursor.chirp(marker_id, freq, freq, duration_ms)
    cursor.silence(80)
    cursor.click("click_a", _CLICK_MS)
    cursor.silence(200)

    for idx, (start_freq, end_freq) in enumerate(_CHIRP_SWEEPS, start=1):
        cursor.chirp(f"chirp_{idx}", start_freq, end_freq, _CHIRP_MS)
        cursor.silence(_CHIRP_GAP_MS)

    cursor.silence(200)
    cursor.click("click_b", _CLICK_MS)
    cursor.silence(60)

    marker_id, freq, duration_ms = _WARMDOWN_HUM
    cursor.chirp(marker_id, freq, freq, duration_ms)
    cursor.silence(_TAIL_MS)

    spec = CalibrationSignalSpec(
        sample_rate=sample_rate,
        length_samples=cursor.position,
        markers=tuple(cursor.markers),
    )
    spec.validate()
    logger.debug(
        "Built structured signal: %d markers, %.2fs at %d Hz",
        len(spec.markers),
        spec.duration_s,
        sample_rate,
    )
    return spec
