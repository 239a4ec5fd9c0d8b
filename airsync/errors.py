"""Exceptions raised by the calibration client."""

from __future__ import annotations


class CalibrationError(Exception):
    """Base class for errors that end a calibration session."""


class PermissionDeniedError(CalibrationError):
    """Microphone access was refused or no input device is usable."""


class NetworkError(CalibrationError):
    """A request to the receiver failed or returned an error status."""


class DecodeError(CalibrationError):
    """A receiver response could not be decoded."""


class SignalSpecError(DecodeError):
    """A decoded signal spec violates its structural invariants."""


class RecordingError(CalibrationError):
    """The audio input stream failed while capturing."""
