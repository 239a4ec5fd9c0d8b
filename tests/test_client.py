"""HTTP tests for the receiver client against the local test receiver."""

from __future__ import annotations

import asyncio

import aiohttp
import numpy as np
import pytest
from aiohttp import test_utils, web

from airsync.calibration.client import ReceiverCalibrationClient
from airsync.calibration.protocol import ChirpConfig, request_payload
from airsync.calibration.signal import CalibrationSignalSpec, build_structured_spec
from airsync.calibration.types import Detection, LatencyMeasurement
from airsync.errors import DecodeError, NetworkError
from airsync.receiver import CalibrationReceiver, apply_offset
from airsync.utils import timestamp_ms, wall_clock_ms


class RecordingPlayer:
    def __init__(self) -> None:
        self.played: list[tuple[np.ndarray, int, float]] = []

    def play(self, samples: np.ndarray, sample_rate: int) -> None:
        self.played.append((samples, sample_rate, wall_clock_ms()))


async def _with_receiver(receiver: CalibrationReceiver, scenario) -> None:
    async with test_utils.TestServer(receiver.create_app()) as server:
        async with ReceiverCalibrationClient(str(server.make_url("/api"))) as client:
            await scenario(client, server)


def test_fetch_spec_and_time(two_marker_spec: CalibrationSignalSpec) -> None:
    receiver = CalibrationReceiver(RecordingPlayer(), two_marker_spec)

    async def scenario(client: ReceiverCalibrationClient, _server: test_utils.TestServer) -> None:
        assert await client.fetch_spec() == two_marker_spec
        before = wall_clock_ms()
        server_time = await client.server_time_ms()
        assert before - 1_000 <= server_time <= wall_clock_ms() + 1_000

    asyncio.run(_with_receiver(receiver, scenario))


def test_default_receiver_serves_structured_spec() -> None:
    receiver = CalibrationReceiver(RecordingPlayer())

    async def scenario(client: ReceiverCalibrationClient, _server: test_utils.TestServer) -> None:
        assert await client.fetch_spec() == build_structured_spec()

    asyncio.run(_with_receiver(receiver, scenario))


def test_request_then_ready_schedules_playback(two_marker_spec: CalibrationSignalSpec) -> None:
    player = RecordingPlayer()
    receiver = CalibrationReceiver(player, two_marker_spec)

    async def scenario(client: ReceiverCalibrationClient, _server: test_utils.TestServer) -> None:
        await client.request_playback(100, ChirpConfig())
        target = timestamp_ms() + 80
        await client.trigger_playback(target)
        assert player.played == []
        await asyncio.sleep(0.3)
        assert len(player.played) == 1
        samples, sample_rate, played_at = player.played[0]
        assert sample_rate == 48_000
        assert len(samples) == two_marker_spec.length_samples
        assert played_at >= target - 20

    asyncio.run(_with_receiver(receiver, scenario))


def test_ready_without_request_is_rejected(two_marker_spec: CalibrationSignalSpec) -> None:
    player = RecordingPlayer()
    receiver = CalibrationReceiver(player, two_marker_spec)

    async def scenario(client: ReceiverCalibrationClient, _server: test_utils.TestServer) -> None:
        with pytest.raises(NetworkError, match="409"):
            await client.trigger_playback(timestamp_ms())

    asyncio.run(_with_receiver(receiver, scenario))
    assert player.played == []


def test_submit_result(two_marker_spec: CalibrationSignalSpec) -> None:
    receiver = CalibrationReceiver(RecordingPlayer(), two_marker_spec)
    measurement = LatencyMeasurement(
        latency_ms=42.5,
        confidence=0.87,
        detections=(
            Detection("click", 2_540, 0.91, 42.5),
            Detection("tone", 3_540, 0.83, 42.6, used=False),
        ),
    )

    async def scenario(client: ReceiverCalibrationClient, _server: test_utils.TestServer) -> None:
        applied = await client.submit_result(measurement)
        assert applied is not None
        assert applied.measured_latency_ms == 42.5
        assert applied.applied_offset_ms == -42.5
        assert not applied.was_clamped

    asyncio.run(_with_receiver(receiver, scenario))
    assert receiver.last_result is not None
    assert receiver.last_result["latency_ms"] == 42.5
    assert receiver.last_result["detections"][1] == {
        "marker_id": "tone",
        "sample_index": 3_540,
        "correlation": 0.83,
        "latency_ms": 42.6,
    }


def test_large_result_is_clamped(two_marker_spec: CalibrationSignalSpec) -> None:
    receiver = CalibrationReceiver(RecordingPlayer(), two_marker_spec)

    async def scenario(client: ReceiverCalibrationClient, _server: test_utils.TestServer) -> None:
        applied = await client.submit_result(LatencyMeasurement(400.0, 0.9))
        assert applied is not None
        assert applied.applied_offset_ms == -250.0
        assert applied.was_clamped

    asyncio.run(_with_receiver(receiver, scenario))


def test_apply_offset() -> None:
    assert apply_offset(12.0) == (-12.0, False)
    assert apply_offset(-300.0) == (250.0, True)
    assert apply_offset(250.0) == (-250.0, False)


def test_receiver_rejects_malformed_json(two_marker_spec: CalibrationSignalSpec) -> None:
    receiver = CalibrationReceiver(RecordingPlayer(), two_marker_spec)

    async def scenario() -> None:
        async with test_utils.TestServer(receiver.create_app()) as server:
            async with aiohttp.ClientSession() as session:
                url = server.make_url("/api/calibration/request")
                async with session.post(url, data="{not json") as response:
                    assert response.status == 400
                async with session.post(url, data=b"\xff\xfe{") as response:
                    assert response.status == 400
                async with session.post(url, json={"delay_ms": "soon"}) as response:
                    assert response.status == 400
                async with session.post(url, json=request_payload(1, 500)) as response:
                    assert response.status == 200

    asyncio.run(scenario())


def _app_with(path: str, handler) -> web.Application:
    app = web.Application()
    app.router.add_get(path, handler)
    return app


def test_invalid_json_body_is_decode_error() -> None:
    async def not_json(_request: web.Request) -> web.Response:
        return web.Response(text="<html>oops</html>")

    async def scenario() -> None:
        async with test_utils.TestServer(_app_with("/api/time", not_json)) as server:
            async with ReceiverCalibrationClient(str(server.make_url("/api"))) as client:
                with pytest.raises(DecodeError):
                    await client.server_time_ms()

    asyncio.run(scenario())


def test_unknown_marker_kind_is_decode_error() -> None:
    async def bad_spec(_request: web.Request) -> web.Response:
        return web.json_response(
            {
                "spec": {
                    "sample_rate": 48000,
                    "length_samples": 1000,
                    "markers": [
                        {"id": "a", "kind": "sweep", "start_sample": 0, "duration_samples": 10}
                    ],
                }
            }
        )

    async def scenario() -> None:
        async with test_utils.TestServer(_app_with("/api/calibration/spec", bad_spec)) as server:
            async with ReceiverCalibrationClient(str(server.make_url("/api"))) as client:
                with pytest.raises(DecodeError):
                    await client.fetch_spec()

    asyncio.run(scenario())


def test_http_error_status_is_network_error() -> None:
    async def failing(_request: web.Request) -> web.Response:
        raise web.HTTPServiceUnavailable(text="busy")

    async def scenario() -> None:
        async with test_utils.TestServer(_app_with("/api/calibration/spec", failing)) as server:
            async with ReceiverCalibrationClient(str(server.make_url("/api"))) as client:
                with pytest.raises(NetworkError, match="503"):
                    await client.fetch_spec()

    asyncio.run(scenario())


def test_unreachable_receiver_is_network_error() -> None:
    async def scenario() -> None:
        async with ReceiverCalibrationClient("http://127.0.0.1:1/api", timeout_s=2.0) as client:
            with pytest.raises(NetworkError):
                await client.server_time_ms()

    asyncio.run(scenario())
