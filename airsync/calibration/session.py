"""Calibration session orchestration.

A session runs one measurement end to end:

1. fetch the signal spec, check microphone access at its sample rate and
   estimate the clock offset;
2. arm playback on the receiver with a fixed lead time;
3. start recording, then commit the receiver to an absolute start instant;
4. run the detector over the finished recording;
5. submit the measurement back to the receiver.

Progress is exposed as discrete stage transitions with timestamps. Any
collaborator failure ends the session in `CalibrationStage.FAILED`; there are
no retries at this level.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from airsync.audio import AudioSessionConfig, LevelCallback, check_microphone_access
from airsync.calibration.clock import ClockOffsetEstimator
from airsync.calibration.detector import StructuredDetector
from airsync.calibration.protocol import ChirpConfig
from airsync.calibration.signal import CalibrationSignalSpec
from airsync.calibration.types import LatencyMeasurement, RecordedAudio
from airsync.errors import CalibrationError, RecordingError
from airsync.utils import create_task, wall_clock_ms

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_THRESHOLD = 0.3


class CalibrationAPI(Protocol):
    """Receiver operations a session depends on."""

    async def server_time_ms(self) -> float: ...

    async def fetch_spec(self) -> CalibrationSignalSpec: ...

    async def request_playback(
        self, delay_ms: int, chirp_config: ChirpConfig | None = None
    ) -> None: ...

    async def trigger_playback(self, target_start_ms: int) -> None: ...

    async def submit_result(self, measurement: LatencyMeasurement) -> Any: ...


class Recorder(Protocol):
    """Audio capture a session depends on."""

    async def record(
        self,
        duration_s: float,
        config: AudioSessionConfig,
        on_level: LevelCallback | None = None,
        started: asyncio.Event | None = None,
    ) -> RecordedAudio: ...


MicrophoneAccess = Callable[[AudioSessionConfig], Awaitable[None]]


class CalibrationStage(Enum):
    """Lifecycle of a calibration session.

    Stages only move forward; FAILED can be entered from any non-terminal stage.
    """

    IDLE = "idle"
    """Created, not started."""

    REQUESTING_PLAYBACK = "requesting_playback"
    """Fetching the spec, checking the microphone and arming the receiver."""

    RECORDING = "recording"
    """Capturing audio while the receiver plays the signal."""

    CALCULATING = "calculating"
    """Running marker detection on the recording."""

    SENDING = "sending"
    """Submitting the measurement to the receiver."""

    COMPLETED = "completed"
    """Finished; the measurement is available."""

    FAILED = "failed"
    """Aborted; the failure reason is available."""

    @property
    def is_terminal(self) -> bool:
        """Whether no further transitions are possible."""
        return self in (CalibrationStage.COMPLETED, CalibrationStage.FAILED)


_STAGE_ORDER: tuple[CalibrationStage, ...] = (
    CalibrationStage.IDLE,
    CalibrationStage.REQUESTING_PLAYBACK,
    CalibrationStage.RECORDING,
    CalibrationStage.CALCULATING,
    CalibrationStage.SENDING,
    CalibrationStage.COMPLETED,
)


@dataclass(frozen=True, slots=True)
class StageTransition:
    """A stage change observed by listeners.

    Attributes:
        stage: The stage entered.
        at: Wall-clock time of the change in seconds since the epoch.
        expected_duration_s: Rough duration of the stage where known, so a
            presentation layer can interpolate a progress bar.
    """

    stage: CalibrationStage
    at: float
    expected_duration_s: float | None = None


@dataclass(frozen=True, slots=True)
class SessionConfig:
    """Timing and capture parameters for a session.

    Attributes:
        lead_time_ms: Delay announced to the receiver between arming and playback.
        safety_cushion_ms: Extra delay added to the playback target.
        trailing_pad_s: Recording time kept after the signal should have ended.
        clock_samples: Round trips used to estimate the clock offset.
        clock_sample_delay_s: Pause between clock round trips.
        input_device: Input device index, or None for the default.
        blocksize: Frames per input callback.
    """

    lead_time_ms: int = 1500
    safety_cushion_ms: int = 250
    trailing_pad_s: float = 1.0
    clock_samples: int = 3
    clock_sample_delay_s: float = 0.05
    input_device: int | None = None
    blocksize: int = 2048


class CalibrationSession:
    """Runs a single latency measurement against one receiver."""

    def __init__(
        self,
        api: CalibrationAPI,
        recorder: Recorder,
        *,
        detector: StructuredDetector | None = None,
        config: SessionConfig | None = None,
        microphone_access: MicrophoneAccess = check_microphone_access,
        clock_ms: Callable[[], float] = wall_clock_ms,
    ) -> None:
        """Initialize the session.

        Args:
            api: Receiver API client.
            recorder: Audio capture collaborator.
            detector: Marker detector; a default one is created when omitted.
            config: Timing and capture parameters.
            microphone_access: Coroutine function that raises
                `PermissionDeniedError` when the microphone cannot be used.
            clock_ms: Local wall clock in milliseconds.
        """
        self._api = api
        self._recorder = recorder
        self._detector = detector or StructuredDetector()
        self._config = config or SessionConfig()
        self._microphone_access = microphone_access
        self._clock_ms = clock_ms

        self._stage = CalibrationStage.IDLE
        self._history: list[StageTransition] = [
            StageTransition(CalibrationStage.IDLE, clock_ms() / 1000.0)
        ]
        self._stage_listeners: list[Callable[[StageTransition], None]] = []
        self._level_listeners: list[LevelCallback] = []

        self.spec: CalibrationSignalSpec | None = None
        self.clock_offset_ms: float = 0.0
        self.target_start_ms: int | None = None
        self.measurement: LatencyMeasurement | None = None
        self.failure_reason: str | None = None
        self.error: BaseException | None = None

    @property
    def stage(self) -> CalibrationStage:
        """The current stage."""
        return self._stage

    @property
    def history(self) -> list[StageTransition]:
        """Every stage entered so far, oldest first."""
        return list(self._history)

    def add_stage_listener(self, listener: Callable[[StageTransition], None]) -> Callable[[], None]:
        """Register a stage listener; returns a function that unregisters it."""
        self._stage_listeners.append(listener)
        return lambda: self._stage_listeners.remove(listener)

    def add_level_listener(self, listener: LevelCallback) -> Callable[[], None]:
        """Register a microphone level listener; returns a function that unregisters it."""
        self._level_listeners.append(listener)
        return lambda: self._level_listeners.remove(listener)

    def _transition(self, stage: CalibrationStage, expected_duration_s: float | None = None) -> None:
        current = self._stage
        if current.is_terminal:
            raise RuntimeError(f"Session already ended in {current.value}")
        if stage is not CalibrationStage.FAILED and _STAGE_ORDER.index(
            stage
        ) <= _STAGE_ORDER.index(current):
            raise RuntimeError(f"Invalid stage transition {current.value} -> {stage.value}")

        self._stage = stage
        transition = StageTransition(stage, self._clock_ms() / 1000.0, expected_duration_s)
        self._history.append(transition)
        logger.debug("Calibration stage %s -> %s", current.value, stage.value)
        for listener in list(self._stage_listeners):
            try:
                listener(transition)
            except Exception:
                logger.exception("Stage listener failed")

    def _fail(self, reason: str, error: BaseException | None = None) -> None:
        self.failure_reason = reason
        self.error = error
        if not self._stage.is_terminal:
            self._transition(CalibrationStage.FAILED)
        logger.warning("Calibration failed: %s", reason)

    def _emit_level(self, level: float) -> None:
        for listener in list(self._level_listeners):
            try:
                listener(level)
            except Exception:
                logger.exception("Level listener failed")

    def recording_duration_s(self, spec: CalibrationSignalSpec) -> float:
        """Capture length covering lead time, the signal, the search window and a pad."""
        config = self._config
        return (
            (config.lead_time_ms + config.safety_cushion_ms) / 1000.0
            + spec.duration_s
            + self._detector.search_window_s
            + config.trailing_pad_s
        )

    async def run(self) -> LatencyMeasurement:
        """Run the session to completion.

        Returns:
            The measurement that was submitted to the receiver.

        Raises:
            CalibrationError: On any collaborator failure; the session is left
                in FAILED with `failure_reason` set.
            asyncio.CancelledError: If the caller cancels; the recording is
                stopped and nothing is submitted.
        """
        if self._stage is not CalibrationStage.IDLE:
            raise RuntimeError("A calibration session can only be run once")

        self._transition(CalibrationStage.REQUESTING_PLAYBACK)
        recording_task: asyncio.Task[RecordedAudio] | None = None
        try:
            spec = await self._api.fetch_spec()
            self.spec = spec
            capture_config = AudioSessionConfig(
                sample_rate=spec.sample_rate,
                blocksize=self._config.blocksize,
                device=self._config.input_device,
            )
            await self._microphone_access(capture_config)
            self.clock_offset_ms = await self._estimate_clock_offset()

            lead_time_ms = self._config.lead_time_ms
            await self._api.request_playback(lead_time_ms)

            duration_s = self.recording_duration_s(spec)
            started = asyncio.Event()
            self._transition(CalibrationStage.RECORDING, expected_duration_s=duration_s)
            recording_task = create_task(
                self._recorder.record(duration_s, capture_config, self._emit_level, started),
                name="calibration-recording",
            )
            await self._wait_for_capture_start(recording_task, started)

            # Computed once, after the microphone is live.
            scheduled_local_ms = (
                self._clock_ms() + lead_time_ms + self._config.safety_cushion_ms
            )
            self.target_start_ms = round(scheduled_local_ms + self.clock_offset_ms)
            await self._api.trigger_playback(self.target_start_ms)
            logger.info(
                "Playback scheduled at %d (receiver clock), offset %.1fms",
                self.target_start_ms,
                self.clock_offset_ms,
            )

            recording = await recording_task
            recording_task = None

            self._transition(CalibrationStage.CALCULATING)
            start_offset_samples = max(
                0,
                round(
                    (scheduled_local_ms - recording.started_at_ms) * spec.sample_rate / 1000.0
                ),
            )
            loop = asyncio.get_running_loop()
            measurement = await loop.run_in_executor(
                None, self._detector.measure, recording, spec, start_offset_samples
            )
            self.measurement = measurement
            if measurement.confidence < LOW_CONFIDENCE_THRESHOLD:
                logger.warning(
                    "Low confidence measurement: latency=%.1fms confidence=%.2f",
                    measurement.latency_ms,
                    measurement.confidence,
                )

            self._transition(CalibrationStage.SENDING)
            await self._api.submit_result(measurement)
            self._transition(CalibrationStage.COMPLETED)
            logger.info(
                "Calibration completed: latency=%.1fms confidence=%.2f",
                measurement.latency_ms,
                measurement.confidence,
            )
            return measurement

        except asyncio.CancelledError:
            self._fail("cancelled")
            raise
        except CalibrationError as err:
            self._fail(str(err) or type(err).__name__, err)
            raise
        except Exception as err:
            self._fail(f"Unexpected error: {err}", err)
            raise CalibrationError(f"Unexpected error: {err}") from err
        finally:
            if recording_task is not None:
                await _discard_recording(recording_task)

    async def _estimate_clock_offset(self) -> float:
        estimator = ClockOffsetEstimator(
            self._api.server_time_ms,
            samples=self._config.clock_samples,
            sample_delay_s=self._config.clock_sample_delay_s,
            clock_ms=self._clock_ms,
        )
        try:
            return await estimator.estimate()
        except CalibrationError as err:
            logger.warning("Clock offset unavailable (%s); assuming 0", err)
            return 0.0

    async def _wait_for_capture_start(
        self, recording_task: asyncio.Task[RecordedAudio], started: asyncio.Event
    ) -> None:
        """Return once the recorder reports a live stream, or raise its error."""
        started_waiter = create_task(started.wait(), name="calibration-capture-start")
        try:
            await asyncio.wait(
                {recording_task, started_waiter}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not started_waiter.done():
                started_waiter.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await started_waiter

        if not started.is_set():
            # The recorder finished before reporting a live stream.
            await recording_task
            raise RecordingError("Recorder finished before the input stream started")


async def _discard_recording(task: asyncio.Task[RecordedAudio]) -> None:
    """Cancel an unfinished capture and drop its samples."""
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.debug("Discarded recording ended with an error", exc_info=True)
