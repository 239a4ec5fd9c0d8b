"""Command-line entry point for AirSync latency calibration."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import dataclasses
import json
import logging
import signal
import sys
from collections.abc import Sequence
from pathlib import Path

from airsync import __version__
from airsync.audio import SoundDeviceRecorder, query_devices, resolve_device
from airsync.calibration.client import ReceiverCalibrationClient
from airsync.calibration.generator import write_signal
from airsync.calibration.session import CalibrationSession, SessionConfig, StageTransition
from airsync.calibration.signal import DEFAULT_SAMPLE_RATE, build_structured_spec, spec_to_dict
from airsync.calibration.types import LatencyMeasurement
from airsync.errors import CalibrationError
from airsync.hooks import EVENT_CALIBRATED, EVENT_FAILED, run_hook
from airsync.receiver import CalibrationReceiver, SoundDevicePlayer
from airsync.settings import Settings, get_settings
from airsync.utils import create_task

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _print_event(message: str) -> None:
    print(message, flush=True)  # noqa: T201


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        prog="airsync", description="Measure and compensate speaker output latency."
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        type=str.upper,
        help="Logging level (default: stored setting or WARNING)",
    )
    parser.add_argument(
        "--config-dir", help="Directory for stored settings (default: ~/.config/airsync)"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    calibrate = subparsers.add_parser("calibrate", help="Run one calibration session")
    calibrate.add_argument("--url", help="Receiver API root, e.g. http://raspberrypi.local:5000/api")
    calibrate.add_argument("--input-device", help="Input device index or name fragment")
    calibrate.add_argument("--lead-time-ms", type=int, help="Playback lead time in milliseconds")
    calibrate.add_argument("--hook", help="Shell command to run when the session ends")

    generate = subparsers.add_parser(
        "generate-signal", help="Write the structured calibration signal to an audio file"
    )
    generate.add_argument("output", type=Path, help="Output file (.flac or .wav)")
    generate.add_argument("--sample-rate", type=int, default=DEFAULT_SAMPLE_RATE)
    generate.add_argument("--spec-out", type=Path, help="Also write the signal spec as JSON")

    receiver = subparsers.add_parser("receiver", help="Run a local test receiver")
    receiver.add_argument("--port", type=int, default=5000)
    receiver.add_argument("--output-device", help="Output device index or name fragment")

    subparsers.add_parser("list-devices", help="List audio input and output devices")
    return parser


def _format_measurement(measurement: LatencyMeasurement) -> list[str]:
    lines = [
        f"Latency: {measurement.latency_ms:.1f} ms",
        f"Confidence: {measurement.confidence:.2f}",
    ]
    if measurement.detections:
        lines.append("Markers:")
        lines.extend(
            f"  {d.marker_id:<10} sample={d.sample_index:<8d} corr={d.correlation:.3f} "
            f"latency={d.latency_ms:+.2f}ms{'' if d.used else ' (rejected)'}"
            for d in measurement.detections
        )
    else:
        lines.append("No markers detected")
    return lines


async def run_calibrate(args: argparse.Namespace, settings: Settings) -> int:
    """Run one calibration session and report the outcome."""
    settings.update(
        receiver_url=args.url,
        input_device=args.input_device,
        lead_time_ms=args.lead_time_ms,
        hook=args.hook,
    )
    url = settings.receiver_url
    if not url:
        logger.error("No receiver URL given; pass --url")
        return 1

    try:
        input_device = resolve_device(settings.input_device, kind="input")
    except ValueError as err:
        logger.error("%s", err)
        return 1

    config = SessionConfig(input_device=input_device)
    if settings.lead_time_ms is not None:
        config = dataclasses.replace(config, lead_time_ms=settings.lead_time_ms)

    async with ReceiverCalibrationClient(url) as client:
        session = CalibrationSession(client, SoundDeviceRecorder(), config=config)

        def on_stage(transition: StageTransition) -> None:
            suffix = (
                f" (~{transition.expected_duration_s:.1f}s)"
                if transition.expected_duration_s is not None
                else ""
            )
            _print_event(f"[{transition.stage.value}]{suffix}")

        session.add_stage_listener(on_stage)

        session_task = create_task(session.run(), name="calibration-session")
        loop = asyncio.get_running_loop()
        # Signal handlers aren't supported on this platform (e.g., Windows)
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(signal.SIGINT, session_task.cancel)
            loop.add_signal_handler(signal.SIGTERM, session_task.cancel)
        try:
            measurement = await session_task
        except (asyncio.CancelledError, CalibrationError):
            measurement = None
        finally:
            with contextlib.suppress(NotImplementedError):
                loop.remove_signal_handler(signal.SIGINT)
                loop.remove_signal_handler(signal.SIGTERM)

    if measurement is None:
        _print_event(f"Calibration failed: {session.failure_reason}")
        if settings.hook:
            await run_hook(
                settings.hook,
                event=EVENT_FAILED,
                receiver_url=url,
                failure_reason=session.failure_reason,
            )
        return 1

    for line in _format_measurement(measurement):
        _print_event(line)
    if settings.hook:
        await run_hook(
            settings.hook, event=EVENT_CALIBRATED, receiver_url=url, measurement=measurement
        )
    return 0


async def run_generate(args: argparse.Namespace) -> int:
    """Write the default structured signal and optionally its spec."""
    spec = build_structured_spec(args.sample_rate)
    loop = asyncio.get_running_loop()
    try:
        path = await loop.run_in_executor(None, write_signal, spec, args.output)
        if args.spec_out is not None:
            await loop.run_in_executor(
                None, args.spec_out.write_text, json.dumps(spec_to_dict(spec), indent=2)
            )
    except (OSError, RuntimeError) as err:
        logger.error("Failed to write calibration signal: %s", err)
        return 1
    _print_event(
        f"Wrote {spec.duration_s:.2f}s signal with {len(spec.markers)} markers to {path}"
    )
    return 0


async def run_receiver(args: argparse.Namespace, settings: Settings) -> int:
    """Serve the calibration API until interrupted."""
    settings.update(output_device=args.output_device)
    try:
        output_device = resolve_device(settings.output_device, kind="output")
    except ValueError as err:
        logger.error("%s", err)
        return 1

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, stop.set)
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    try:
        async with CalibrationReceiver(SoundDevicePlayer(output_device), port=args.port):
            _print_event(f"Calibration receiver running on port {args.port}")
            await stop.wait()
    except OSError as err:
        logger.error("Failed to start receiver: %s", err)
        return 1
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)
            loop.remove_signal_handler(signal.SIGTERM)
    return 0


def run_list_devices() -> int:
    """Print audio devices with their capabilities."""
    devices = query_devices()
    if not devices:
        _print_event("No audio devices found")
        return 1
    for device in devices:
        defaults = []
        if device.is_default_input:
            defaults.append("default input")
        if device.is_default_output:
            defaults.append("default output")
        _print_event(
            f"{device.index:>3}  {device.name}  in={device.input_channels} "
            f"out={device.output_channels} {device.sample_rate:.0f}Hz"
            + (f"  [{', '.join(defaults)}]" if defaults else "")
        )
    return 0


async def _main_async(args: argparse.Namespace) -> int:
    settings = await get_settings(args.config_dir)
    settings.update(log_level=args.log_level)
    logging.getLogger().setLevel(settings.log_level or "WARNING")

    try:
        if args.command == "calibrate":
            return await run_calibrate(args, settings)
        if args.command == "generate-signal":
            return await run_generate(args)
        if args.command == "receiver":
            return await run_receiver(args, settings)
        return run_list_devices()
    finally:
        await settings.flush()


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments and run the selected command."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=args.log_level or logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return asyncio.run(_main_async(args))
    except KeyboardInterrupt:
        return 1


if __name__ == "__main__":
    sys.exit(main())
