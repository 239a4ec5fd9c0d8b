"""Local calibration receiver for single-machine testing.

Implements the receiver side of the calibration API on top of aiohttp so the
client can be exercised against real speakers without a separate playback
device. Playback of the structured signal is scheduled on the event loop at
the requested receiver-clock instant.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import Any, Final, Protocol

import numpy as np
import sounddevice
from aiohttp import web

from airsync.calibration import protocol
from airsync.calibration.generator import synthesize
from airsync.calibration.signal import CalibrationSignalSpec, build_structured_spec, spec_to_dict
from airsync.utils import wall_clock_ms

logger = logging.getLogger(__name__)

MAX_APPLIED_OFFSET_MS: Final[float] = 250.0
"""Largest output-delay compensation the receiver applies."""


class SignalPlayer(Protocol):
    """Plays a block of mono samples immediately."""

    def play(self, samples: np.ndarray, sample_rate: int) -> None: ...


class SoundDevicePlayer:
    """Plays samples through a sounddevice output device."""

    def __init__(self, device: int | None = None) -> None:
        """Initialize the player.

        Args:
            device: Output device index, or None for the default.
        """
        self._device = device

    def play(self, samples: np.ndarray, sample_rate: int) -> None:
        """Start non-blocking playback."""
        sounddevice.play(samples, samplerate=sample_rate, device=self._device)


def apply_offset(latency_ms: float) -> tuple[float, bool]:
    """Return the output-delay compensation for a latency and whether it was clamped."""
    clamped = min(MAX_APPLIED_OFFSET_MS, max(-MAX_APPLIED_OFFSET_MS, latency_ms))
    return -clamped, clamped != latency_ms


class CalibrationReceiver:
    """aiohttp application serving the calibration endpoints."""

    def __init__(
        self,
        player: SignalPlayer,
        spec: CalibrationSignalSpec | None = None,
        *,
        port: int = 5000,
        prefix: str = "/api",
    ) -> None:
        """Initialize the receiver.

        Args:
            player: Output used when playback is triggered.
            spec: Signal to serve; the default structured signal when omitted.
            port: Port to listen on.
            prefix: Path prefix for every endpoint.
        """
        self._player = player
        self._spec = spec or build_structured_spec()
        self._samples = synthesize(self._spec)
        self._port = port
        self._prefix = prefix.rstrip("/")
        self._armed_delay_ms: int | None = None
        self._playback_handle: asyncio.TimerHandle | None = None
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None
        self.last_result: dict[str, Any] | None = None
        self.playback_count = 0

    @property
    def spec(self) -> CalibrationSignalSpec:
        """The signal served to clients."""
        return self._spec

    def create_app(self) -> web.Application:
        """Build the aiohttp application."""
        app = web.Application()
        p = self._prefix
        app.router.add_get(f"{p}/{protocol.TIME_PATH}", self._handle_time)
        app.router.add_get(f"{p}/{protocol.SPEC_PATH}", self._handle_spec)
        app.router.add_post(f"{p}/{protocol.REQUEST_PATH}", self._handle_request)
        app.router.add_post(f"{p}/{protocol.READY_PATH}", self._handle_ready)
        app.router.add_post(f"{p}/{protocol.RESULT_PATH}", self._handle_result)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def start(self) -> None:
        """Start serving on all interfaces."""
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, "0.0.0.0", self._port)
        await self._site.start()
        logger.info("Calibration receiver listening on port %d at %s", self._port, self._prefix)

    async def stop(self) -> None:
        """Stop serving and cancel any scheduled playback."""
        self._cancel_playback()
        if self._site is not None:
            await self._site.stop()
            self._site = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.debug("Calibration receiver stopped")

    async def __aenter__(self) -> CalibrationReceiver:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.stop()

    async def _on_shutdown(self, _app: web.Application) -> None:
        self._cancel_playback()

    def _cancel_playback(self) -> None:
        if self._playback_handle is not None:
            self._playback_handle.cancel()
            self._playback_handle = None

    @staticmethod
    async def _json_body(request: web.Request) -> Mapping[str, Any]:
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as err:
            raise web.HTTPBadRequest(text=f"invalid JSON: {err}") from err
        if not isinstance(data, Mapping):
            raise web.HTTPBadRequest(text="expected a JSON object")
        return data

    @staticmethod
    def _number(data: Mapping[str, Any], key: str) -> float:
        value = data.get(key)
        if isinstance(value, bool) or not isinstance(value, int | float):
            raise web.HTTPBadRequest(text=f"field {key!r} must be a number")
        return float(value)

    async def _handle_time(self, _request: web.Request) -> web.Response:
        return web.json_response({"server_time_ms": int(wall_clock_ms())})

    async def _handle_spec(self, _request: web.Request) -> web.Response:
        return web.json_response({"spec": spec_to_dict(self._spec)})

    async def _handle_request(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        self._armed_delay_ms = int(self._number(data, "delay_ms"))
        self._cancel_playback()
        logger.info("Playback armed with %dms lead time", self._armed_delay_ms)
        return web.json_response({"armed": True})

    async def _handle_ready(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        if self._armed_delay_ms is None:
            raise web.HTTPConflict(text="playback was not requested")
        target_start_ms = self._number(data, "target_start_ms")
        self._armed_delay_ms = None

        delay_s = max(0.0, (target_start_ms - wall_clock_ms()) / 1000.0)
        loop = asyncio.get_running_loop()
        self._playback_handle = loop.call_later(delay_s, self._play)
        logger.info("Playback scheduled in %.3fs", delay_s)
        return web.json_response({"scheduled": True, "delay_ms": round(delay_s * 1000.0)})

    def _play(self) -> None:
        self._playback_handle = None
        self.playback_count += 1
        try:
            self._player.play(self._samples, self._spec.sample_rate)
        except sounddevice.PortAudioError:
            logger.exception("Failed to start calibration playback")

    async def _handle_result(self, request: web.Request) -> web.Response:
        data = await self._json_body(request)
        latency_ms = self._number(data, "latency_ms")
        confidence = self._number(data, "confidence")
        self.last_result = dict(data)
        applied_offset_ms, was_clamped = apply_offset(latency_ms)
        logger.info(
            "Received calibration result: latency=%.1fms confidence=%.2f -> offset %.1fms",
            latency_ms,
            confidence,
            applied_offset_ms,
        )
        return web.json_response(
            {
                "measured_latency_ms": latency_ms,
                "applied_offset_ms": applied_offset_ms,
                "was_clamped": was_clamped,
            }
        )
