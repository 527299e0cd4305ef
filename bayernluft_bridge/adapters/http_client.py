"""HTTP client for talking to ventilation controllers.

Every failure is classified into :class:`FailureKind`, logged with the
device's name and converted into ``None``/``False``. Nothing network related
propagates past this module; callers decide how to recover.
"""

from __future__ import annotations

import asyncio
import errno
import json
import logging
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

from ..config import HttpConfig
from ..core import Device

LOGGER = logging.getLogger(__name__)


class FailureKind(str, Enum):
    NETWORK_TIMEOUT = "network_timeout"
    NETWORK_REFUSED = "network_refused"
    NETWORK_OTHER = "network_other"
    PARSE_INVALID_JSON = "parse_invalid_json"
    PARSE_OTHER = "parse_other"


_FAILURE_MESSAGES: Dict[FailureKind, str] = {
    FailureKind.NETWORK_TIMEOUT: "the connection timed out",
    FailureKind.NETWORK_REFUSED: "the connection has been refused",
    FailureKind.NETWORK_OTHER: "an unexpected network error occurred",
    FailureKind.PARSE_INVALID_JSON: (
        "the response is not valid JSON; check that the device's export "
        "template is installed"
    ),
    FailureKind.PARSE_OTHER: "the response could not be decoded",
}


def classify_network_error(exc: BaseException) -> FailureKind:
    """Map a transport exception onto the network part of the taxonomy."""

    if isinstance(exc, asyncio.TimeoutError):
        return FailureKind.NETWORK_TIMEOUT
    if isinstance(exc, aiohttp.ClientConnectorError):
        if isinstance(exc.os_error, ConnectionRefusedError):
            return FailureKind.NETWORK_REFUSED
        if exc.errno == errno.ECONNREFUSED:
            return FailureKind.NETWORK_REFUSED
    if isinstance(exc, ConnectionRefusedError):
        return FailureKind.NETWORK_REFUSED
    if isinstance(exc, OSError) and exc.errno == errno.ETIMEDOUT:
        return FailureKind.NETWORK_TIMEOUT
    return FailureKind.NETWORK_OTHER


def classify_parse_error(exc: BaseException) -> FailureKind:
    if isinstance(exc, json.JSONDecodeError):
        return FailureKind.PARSE_INVALID_JSON
    return FailureKind.PARSE_OTHER


def _is_success(status: int) -> bool:
    return 200 <= status < 300


class DeviceHttpClient:
    """Non-blocking GET helper shared by the checker, poller and dispatcher."""

    def __init__(
        self,
        config: Optional[HttpConfig] = None,
        *,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.config = config or HttpConfig()
        self._session: Optional[aiohttp.ClientSession] = session
        self._owns_session = session is None
        self._last_failures: Dict[str, FailureKind] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def get(self, url: str, device: Device) -> Optional[Any]:
        """Fetch ``url`` and return its decoded JSON body, or None on failure."""

        session = await self._ensure_session()
        try:
            async with session.get(url) as response:
                if not _is_success(response.status):
                    self._record_failure(
                        device,
                        FailureKind.NETWORK_OTHER,
                        url,
                        detail=f"HTTP status {response.status}",
                    )
                    return None
                body = await response.read()
        except asyncio.CancelledError:
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as exc:
            self._record_failure(device, classify_network_error(exc), url, detail=exc)
            return None

        try:
            data = json.loads(body.decode(response.charset or "utf-8"))
        except (ValueError, LookupError) as exc:
            self._record_failure(device, classify_parse_error(exc), url, detail=exc)
            return None

        self._last_failures.pop(device.id, None)
        return data

    async def get_ok(self, url: str, device: Device) -> bool:
        """Issue a GET and report whether the device answered with a 2xx status."""

        session = await self._ensure_session()
        try:
            async with session.get(url) as response:
                status = response.status
        except asyncio.CancelledError:
            raise
        except (asyncio.TimeoutError, aiohttp.ClientError, OSError) as exc:
            self._record_failure(device, classify_network_error(exc), url, detail=exc)
            return False

        if not _is_success(status):
            LOGGER.warning(
                "Device %s answered %s with HTTP status %d", device.name, url, status
            )
            return False

        self._last_failures.pop(device.id, None)
        return True

    def last_failure(self, device_id: str) -> Optional[FailureKind]:
        return self._last_failures.get(device_id)

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    def _record_failure(
        self,
        device: Device,
        kind: FailureKind,
        url: str,
        *,
        detail: object = None,
    ) -> None:
        self._last_failures[device.id] = kind
        LOGGER.error(
            "Request to device %s failed (%s): %s [url=%s, detail=%s]",
            device.name,
            kind.value,
            _FAILURE_MESSAGES[kind],
            url,
            detail,
        )
