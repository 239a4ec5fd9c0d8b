"""Deterministic synthesis of the structured calibration signal."""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Final

import numpy as np
import soundfile

from airsync.calibration.signal import CalibrationSignalSpec, Chirp, Click, MarkerSpec

logger = logging.getLogger(__name__)

MARKER_AMPLITUDE: Final[float] = 0.9
"""Peak amplitude of clicks and sweeps (fraction of full scale)."""
HUM_AMPLITUDE: Final[float] = 0.1
"""Amplitude of the warm-up/warm-down hum, well under the marker amplitude."""
HUM_FADE_MS: Final[float] = 20.0
"""Linear fade applied to each end of a hum segment."""


def hann_window(length: int) -> np.ndarray:
    """Symmetric half-cosine window whose first and last samples are zero."""
    if length <= 1:
        return np.ones(length)
    n = np.arange(length, dtype=np.float64)
    return 0.5 * (1.0 - np.cos(2.0 * np.pi * n / (length - 1)))


def sweep_phase(chirp: Chirp, length: int, sample_rate: int) -> np.ndarray:
    """Instantaneous phase of a linear sweep at each of ``length`` samples."""
    t = np.arange(length, dtype=np.float64) / sample_rate
    duration_s = chirp.duration_ms / 1000.0
    k = (chirp.end_freq - chirp.start_freq) / duration_s if duration_s > 0 else 0.0
    return 2.0 * np.pi * (chirp.start_freq * t + 0.5 * k * t * t)


def _render_hum(chirp: Chirp, length: int, sample_rate: int) -> np.ndarray:
    hum = np.sin(sweep_phase(chirp, length, sample_rate)) * HUM_AMPLITUDE
    fade = min(int(HUM_FADE_MS * sample_rate / 1000.0), length // 2)
    if fade > 1:
        hum[:fade] *= np.linspace(0.0, 1.0, fade)
        hum[-fade:] *= np.linspace(1.0, 0.0, fade)
    return hum


def _render_marker(marker: MarkerSpec, sample_rate: int) -> np.ndarray:
    length = marker.duration_samples
    kind = marker.kind
    if isinstance(kind, Click):
        # Deliberately unwindowed for broadband energy.
        return np.full(length, MARKER_AMPLITUDE, dtype=np.float64)
    if marker.is_warm:
        return _render_hum(kind, length, sample_rate)
    sweep = np.sin(sweep_phase(kind, length, sample_rate))
    return sweep * MARKER_AMPLITUDE * hann_window(length)


@lru_cache(maxsize=128)
def marker_waveform(marker: MarkerSpec, sample_rate: int) -> np.ndarray:
    """Return the float64 waveform of a single marker.

    The same rendering is used by the generator and, as the reference
    template, by the detector. Results are cached and returned read-only.
    """
    waveform = _render_marker(marker, sample_rate)
    waveform.setflags(write=False)
    return waveform


def synthesize(spec: CalibrationSignalSpec) -> np.ndarray:
    """Render exactly ``spec.length_samples`` of mono float32 PCM.

    Samples outside every marker are silent. Identical specs always yield
    identical output.
    """
    signal = np.zeros(spec.length_samples, dtype=np.float64)
    for marker in spec.markers:
        signal[marker.start_sample : marker.end_sample] = marker_waveform(
            marker, spec.sample_rate
        )
    return signal.astype(np.float32)


def to_pcm16(samples: np.ndarray) -> np.ndarray:
    """Convert float samples to 16-bit PCM."""
    return (np.clip(samples, -1.0, 1.0) * 32767).astype(np.int16)


def pcm16_bytes(spec: CalibrationSignalSpec) -> bytes:
    """Render a spec directly to little-endian 16-bit PCM bytes."""
    return to_pcm16(synthesize(spec)).astype("<i2").tobytes()


def write_signal(spec: CalibrationSignalSpec, path: str | Path) -> Path:
    """Write the synthesized signal as 16-bit PCM.

    The container (FLAC, WAV, ...) is chosen by soundfile from the file
    extension.

    Returns:
        The path written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    audio_int16 = to_pcm16(synthesize(spec))
    soundfile.write(str(path), audio_int16, spec.sample_rate, subtype="PCM_16")
    logger.info(
        "Wrote calibration signal to %s (%d markers, %.2fs)",
        path,
        len(spec.markers),
        spec.duration_s,
    )
    return path
