"""Tests for hook execution."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import pytest

from airsync.calibration.types import LatencyMeasurement
from airsync.hooks import EVENT_CALIBRATED, EVENT_FAILED, hook_environment, run_hook


def test_environment_for_completed_session() -> None:
    env = hook_environment(
        event=EVENT_CALIBRATED,
        receiver_url="http://pi.local:5000/api",
        measurement=LatencyMeasurement(latency_ms=12.3456, confidence=0.8),
    )
    assert env["AIRSYNC_EVENT"] == "calibrated"
    assert env["AIRSYNC_RECEIVER_URL"] == "http://pi.local:5000/api"
    assert env["AIRSYNC_LATENCY_MS"] == "12.346"
    assert env["AIRSYNC_CONFIDENCE"] == "0.800"
    assert "AIRSYNC_FAILURE_REASON" not in env


def test_environment_for_failed_session() -> None:
    env = hook_environment(event=EVENT_FAILED, failure_reason="cancelled")
    assert env["AIRSYNC_EVENT"] == "failed"
    assert env["AIRSYNC_FAILURE_REASON"] == "cancelled"
    assert "AIRSYNC_LATENCY_MS" not in env


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
def test_run_hook_passes_environment(tmp_path: Path) -> None:
    out = tmp_path / "event.txt"
    command = f'printf "%s %s" "$AIRSYNC_EVENT" "$AIRSYNC_LATENCY_MS" > "{out}"'

    asyncio.run(
        run_hook(
            command,
            event=EVENT_CALIBRATED,
            measurement=LatencyMeasurement(latency_ms=20.0, confidence=1.0),
        )
    )

    assert out.read_text() == "calibrated 20.000"


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
def test_failing_hook_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    with caplog.at_level(logging.WARNING, logger="airsync.hooks"):
        asyncio.run(run_hook("exit 3", event=EVENT_FAILED))
    assert "exit 3" in caplog.text


@pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell")
def test_hook_with_undecodable_output_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    command = "printf '\\377\\376' >&2; exit 3"
    with caplog.at_level(logging.WARNING, logger="airsync.hooks"):
        asyncio.run(run_hook(command, event=EVENT_CALIBRATED))
    assert "exit 3" in caplog.text
    assert "\ufffd" in caplog.text
