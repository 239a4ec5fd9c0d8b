"""Hook execution for external script integration."""

from __future__ import annotations

import asyncio
import logging
import os

from airsync.calibration.types import LatencyMeasurement

logger = logging.getLogger(__name__)

EVENT_CALIBRATED = "calibrated"
EVENT_FAILED = "failed"


def hook_environment(
    *,
    event: str,
    receiver_url: str | None = None,
    measurement: LatencyMeasurement | None = None,
    failure_reason: str | None = None,
) -> dict[str, str]:
    """Build the environment for a hook, with AIRSYNC_ prefixed variables."""
    env = os.environ.copy()
    env["AIRSYNC_EVENT"] = event
    if receiver_url:
        env["AIRSYNC_RECEIVER_URL"] = receiver_url
    if measurement is not None:
        env["AIRSYNC_LATENCY_MS"] = f"{measurement.latency_ms:.3f}"
        env["AIRSYNC_CONFIDENCE"] = f"{measurement.confidence:.3f}"
    if failure_reason:
        env["AIRSYNC_FAILURE_REASON"] = failure_reason
    return env


async def run_hook(
    command: str,
    *,
    event: str,
    receiver_url: str | None = None,
    measurement: LatencyMeasurement | None = None,
    failure_reason: str | None = None,
) -> None:
    """Execute a hook command after a calibration session ends.

    Args:
        command: Shell command to execute.
        event: ``"calibrated"`` or ``"failed"``.
        receiver_url: Receiver the session talked to.
        measurement: Final measurement, for a completed session.
        failure_reason: Human-readable reason, for a failed session.
    """
    env = hook_environment(
        event=event,
        receiver_url=receiver_url,
        measurement=measurement,
        failure_reason=failure_reason,
    )

    logger.debug("Running hook for %s event: %s", event, command)

    try:
        # Shell allows commands like "systemctl restart shairport-sync"
        proc = await asyncio.create_subprocess_shell(
            command,
            env=env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await proc.communicate()

        if proc.returncode != 0:
            logger.warning(
                "Hook command failed (exit %d): %s\nstderr: %s",
                proc.returncode,
                command,
                stderr.decode(errors="replace").strip() if stderr else "(empty)",
            )
        elif stdout or stderr:
            logger.debug(
                "Hook output: stdout=%s stderr=%s",
                stdout.decode(errors="replace").strip() if stdout else "(empty)",
                stderr.decode(errors="replace").strip() if stderr else "(empty)",
            )
    except Exception:
        logger.exception("Failed to execute hook command: %s", command)
