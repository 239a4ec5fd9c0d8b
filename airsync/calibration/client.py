"""HTTP client for a receiver's calibration API."""

from __future__ import annotations

import json
import logging
from typing import Any

import aiohttp
from aiohttp import ClientError, ClientTimeout
from yarl import URL

from airsync.calibration import protocol
from airsync.calibration.protocol import CalibrationApplyResponse, ChirpConfig
from airsync.calibration.signal import CalibrationSignalSpec, spec_from_response
from airsync.calibration.types import LatencyMeasurement
from airsync.errors import DecodeError, NetworkError
from airsync.utils import timestamp_ms

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0


class ReceiverCalibrationClient:
    """Talks to one receiver over HTTP+JSON.

    Transport failures, timeouts and non-2xx replies surface as `NetworkError`;
    bodies that do not parse surface as `DecodeError`. Nothing is retried.
    """

    def __init__(
        self,
        base_url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Receiver API root, e.g. ``http://raspberrypi.local:5000/api``.
            session: Optional shared aiohttp session; one is created (and owned)
                on first use when omitted.
            timeout_s: Total timeout applied to each request.
        """
        self._base_url = URL(base_url.rstrip("/") + "/")
        self._session = session
        self._owns_session = session is None
        self._timeout = ClientTimeout(total=timeout_s)

    @property
    def base_url(self) -> str:
        """The receiver API root."""
        return str(self._base_url)

    async def close(self) -> None:
        """Close the underlying session if this client created it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> ReceiverCalibrationClient:
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        """Async context manager exit."""
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = self._base_url.join(URL(path))
        logger.debug("%s %s", method, url)
        try:
            async with self._get_session().request(
                method, url, json=payload, timeout=self._timeout
            ) as response:
                body = await response.read()
                if response.status >= 400:
                    raise NetworkError(
                        f"{method} {url} failed with HTTP {response.status}: "
                        f"{body.decode(errors='replace').strip()[:200]}"
                    )
        except (ClientError, TimeoutError) as err:
            raise NetworkError(f"{method} {url} failed: {type(err).__name__}: {err}") from err

        if not body.strip():
            return None
        try:
            return json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as err:
            raise DecodeError(f"{method} {url} returned invalid JSON: {err}") from err

    async def server_time_ms(self) -> float:
        """Return the receiver's current wall-clock time in milliseconds."""
        data = await self._request("GET", protocol.TIME_PATH)
        return protocol.server_time_from_response(data)

    async def fetch_spec(self) -> CalibrationSignalSpec:
        """Fetch the structured signal the receiver will play."""
        data = await self._request("GET", protocol.SPEC_PATH)
        spec = spec_from_response(data)
        logger.info(
            "Fetched signal spec: %d markers, %.2fs at %d Hz",
            len(spec.markers),
            spec.duration_s,
            spec.sample_rate,
        )
        return spec

    async def request_playback(self, delay_ms: int, chirp_config: ChirpConfig | None = None) -> None:
        """Arm structured playback; nothing plays until `trigger_playback`."""
        await self._request(
            "POST",
            protocol.REQUEST_PATH,
            protocol.request_payload(timestamp_ms(), delay_ms, chirp_config),
        )

    async def trigger_playback(self, target_start_ms: int) -> None:
        """Commit to starting playback at ``target_start_ms`` on the receiver clock."""
        await self._request(
            "POST",
            protocol.READY_PATH,
            protocol.ready_payload(timestamp_ms(), target_start_ms),
        )

    async def submit_result(self, measurement: LatencyMeasurement) -> CalibrationApplyResponse | None:
        """Report a measurement; returns the receiver's apply summary when it sends one."""
        data = await self._request(
            "POST",
            protocol.RESULT_PATH,
            protocol.result_payload(timestamp_ms(), measurement),
        )
        if data is None:
            return None
        applied = CalibrationApplyResponse.from_dict(data)
        logger.info(
            "Receiver applied offset %.1fms%s",
            applied.applied_offset_ms,
            " (clamped)" if applied.was_clamped else "",
        )
        return applied
