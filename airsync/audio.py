"""Microphone capture for calibration.

This module provides a sounddevice-backed recorder that captures a fixed
duration of mono float32 audio as a cancellable asyncio operation, together
with device enumeration and a microphone-access check.
"""

from __future__ import annotations

import asyncio
import logging
import time as time_module
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Final

import numpy as np
import sounddevice
from sounddevice import CallbackFlags

from airsync.calibration.types import RecordedAudio
from airsync.errors import PermissionDeniedError, RecordingError

if TYPE_CHECKING:

    class CDataTimeInfo:
        """Type stub for sounddevice CFFI time info."""

        inputBufferAdcTime: float  # noqa: N815
        currentTime: float  # noqa: N815


logger = logging.getLogger(__name__)

LevelCallback = Callable[[float], None]

_STALL_GRACE_S: Final[float] = 2.0
"""Extra time allowed past the capture duration before the stream counts as stalled."""


@dataclass(slots=True)
class AudioDevice:
    """Represents an audio device.

    Attributes:
        index: Device index used for selection.
        name: Human-readable device name.
        input_channels: Number of input channels supported.
        output_channels: Number of output channels supported.
        sample_rate: Default sample rate in Hz.
        is_default_input: Whether this is the system default input device.
        is_default_output: Whether this is the system default output device.
    """

    index: int
    name: str
    input_channels: int
    output_channels: int
    sample_rate: float
    is_default_input: bool
    is_default_output: bool


def query_devices() -> list[AudioDevice]:
    """Query all available audio devices."""
    devices = sounddevice.query_devices()
    default_input, default_output = (int(i) for i in sounddevice.default.device)

    return [
        AudioDevice(
            index=i,
            name=str(dev["name"]),
            input_channels=int(dev["max_input_channels"]),
            output_channels=int(dev["max_output_channels"]),
            sample_rate=float(dev["default_samplerate"]),
            is_default_input=(i == default_input),
            is_default_output=(i == default_output),
        )
        for i, dev in enumerate(devices)
    ]


def resolve_device(selector: str | int | None, *, kind: str = "input") -> int | None:
    """Resolve a device index from an index or a case-insensitive name fragment.

    Args:
        selector: Device index, name fragment, or None for the system default.
        kind: ``"input"`` or ``"output"``.

    Raises:
        ValueError: If no matching device has channels of the requested kind.
    """
    if selector is None:
        return None
    devices = query_devices()
    if kind == "input":
        candidates = [d for d in devices if d.input_channels > 0]
    else:
        candidates = [d for d in devices if d.output_channels > 0]

    if isinstance(selector, int) or str(selector).isdigit():
        index = int(selector)
        if any(d.index == index for d in candidates):
            return index
        raise ValueError(f"No {kind} device with index {index}")

    needle = str(selector).lower()
    for device in candidates:
        if needle in device.name.lower():
            return device.index
    raise ValueError(f"No {kind} device matching {selector!r}")


@dataclass(frozen=True, slots=True)
class AudioSessionConfig:
    """Capture settings handed to the recorder for one session.

    Attributes:
        sample_rate: Capture rate in Hz; must match the signal spec.
        channels: Number of channels opened (only the first is kept).
        blocksize: Frames per callback block.
        device: Input device index, or None for the default.
    """

    sample_rate: int
    channels: int = 1
    blocksize: int = 2048
    device: int | None = None


async def check_microphone_access(config: AudioSessionConfig) -> None:
    """Verify that the configured input device can be opened.

    Raises:
        PermissionDeniedError: If no input device is usable with this configuration.
    """
    loop = asyncio.get_running_loop()
    try:
        await loop.run_in_executor(
            None,
            lambda: sounddevice.check_input_settings(
                device=config.device,
                channels=config.channels,
                dtype="float32",
                samplerate=config.sample_rate,
            ),
        )
    except (sounddevice.PortAudioError, ValueError) as err:
        raise PermissionDeniedError(f"Microphone is not available: {err}") from err


class SoundDeviceRecorder:
    """Records a fixed duration from a sounddevice input stream.

    Only one capture runs at a time per recorder; a second `record` call waits
    for the previous stream to be fully closed.
    """

    _LEVEL_INTERVAL_S: Final[float] = 0.05
    """Minimum interval between level callbacks."""

    def __init__(self) -> None:
        """Initialize the recorder."""
        self._lock = asyncio.Lock()

    async def record(
        self,
        duration_s: float,
        config: AudioSessionConfig,
        on_level: LevelCallback | None = None,
        started: asyncio.Event | None = None,
    ) -> RecordedAudio:
        """Capture ``duration_s`` seconds of mono audio.

        Args:
            duration_s: Length of the capture.
            config: Stream configuration.
            on_level: Optional callback receiving the RMS level of recent blocks,
                for liveness display only.
            started: Optional event set once the input stream is running.

        Returns:
            The completed capture. Cancelling the call stops the stream and
            discards whatever was collected.

        Raises:
            RecordingError: If the input stream cannot be opened or fails.
        """
        async with self._lock:
            capture = _Capture(asyncio.get_running_loop(), duration_s, config, on_level)
            capture.open()
            try:
                if started is not None:
                    started.set()
                return await capture.wait()
            finally:
                capture.close()


class _Capture:
    """State for one running input stream."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        duration_s: float,
        config: AudioSessionConfig,
        on_level: LevelCallback | None,
    ) -> None:
        self._loop = loop
        self._config = config
        self._on_level = on_level
        self._target_frames = int(np.ceil(duration_s * config.sample_rate))
        self._blocks: list[np.ndarray] = []
        self._collected = 0
        self._started_at: float | None = None
        self._last_level_time = 0.0
        self._done: asyncio.Future[None] = loop.create_future()
        self._stream: sounddevice.InputStream | None = None

    def open(self) -> None:
        try:
            self._stream = sounddevice.InputStream(
                samplerate=self._config.sample_rate,
                channels=self._config.channels,
                dtype="float32",
                blocksize=self._config.blocksize,
                callback=self._callback,
                device=self._config.device,
            )
            self._stream.start()
        except (sounddevice.PortAudioError, ValueError) as err:
            self.close()
            raise RecordingError(f"Failed to open input stream: {err}") from err
        logger.info(
            "Recording %.2fs from device %s at %d Hz",
            self._target_frames / self._config.sample_rate,
            self._config.device if self._config.device is not None else "default",
            self._config.sample_rate,
        )

    def close(self) -> None:
        stream = self._stream
        self._stream = None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sounddevice.PortAudioError:
            logger.exception("Failed to close input stream")

    async def wait(self) -> RecordedAudio:
        expected_s = self._target_frames / self._config.sample_rate
        try:
            await asyncio.wait_for(self._done, timeout=expected_s + _STALL_GRACE_S)
        except TimeoutError as err:
            raise RecordingError(
                f"Input stream stalled after {self._collected} of {self._target_frames} frames"
            ) from err
        samples = np.concatenate(self._blocks)[: self._target_frames] if self._blocks else (
            np.zeros(0, dtype=np.float32)
        )
        started_at = self._started_at if self._started_at is not None else time_module.time()
        return RecordedAudio(
            samples=samples.astype(np.float32, copy=False),
            sample_rate=self._config.sample_rate,
            started_at=started_at,
        )

    def _callback(
        self,
        indata: np.ndarray,
        _frames: int,
        time_info: CDataTimeInfo,
        status: CallbackFlags,
    ) -> None:
        """Handle an input block on the PortAudio thread."""
        if status:
            logger.debug("Input callback status: %s", status)
        mono = indata[:, 0].copy() if indata.ndim > 1 else indata.flatten()
        now = time_module.time()
        self._loop.call_soon_threadsafe(self._append, mono, now, self._input_latency(time_info))

    @staticmethod
    def _input_latency(time_info: CDataTimeInfo) -> float:
        # currentTime - inputBufferAdcTime is how long ago the first frame was sampled.
        try:
            adc_time = time_info.inputBufferAdcTime
            current_time = time_info.currentTime
        except (AttributeError, TypeError):
            return 0.0
        if adc_time > 0 and current_time > adc_time:
            return current_time - adc_time
        return 0.0

    def _append(self, block: np.ndarray, callback_time: float, input_latency: float) -> None:
        if self._done.done():
            return
        if self._started_at is None:
            self._started_at = callback_time - input_latency
        self._blocks.append(block)
        self._collected += len(block)

        if self._on_level is not None and callback_time - self._last_level_time >= (
            SoundDeviceRecorder._LEVEL_INTERVAL_S
        ):
            self._last_level_time = callback_time
            self._on_level(float(np.sqrt(np.mean(np.square(block)))) if len(block) else 0.0)

        if self._collected >= self._target_frames:
            self._done.set_result(None)
