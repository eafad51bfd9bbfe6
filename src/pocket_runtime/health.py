from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from .logging_utils import log_event
from .models import HealthResult

HEALTH_PATH = "/health"
OPENAPI_PATH = "/openapi.json"
EXPECTED_TITLE_TOKENS = ("pocket", "tts")
EXPECTED_ROUTE = "/tts"
DEFAULT_PROBE_TIMEOUT = 2.0
DEFAULT_POLL_INTERVAL = 0.3

_COLLISION_MESSAGE = "Another service appears to be running on this port."


def base_url(host: str, port: int) -> str:
    """Build the service base URL, bracketing IPv6 literals."""
    host = host.strip()
    try:
        if ipaddress.ip_address(host).version == 6:
            host = f"[{host}]"
    except ValueError:
        pass
    return f"http://{host}:{port}"


def _parse_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def health_payload_looks_healthy(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    status = payload.get("status")
    return isinstance(status, str) and status.lower() == "healthy"


def openapi_looks_like_service(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    info = payload.get("info")
    title = info.get("title") if isinstance(info, dict) else None
    title = title.lower() if isinstance(title, str) else ""
    routes = payload.get("paths")
    has_route = isinstance(routes, dict) and EXPECTED_ROUTE in routes
    return all(token in title for token in EXPECTED_TITLE_TOKENS) and has_route


class HealthVerifier:
    """Two-tier probe: a healthy `/health` payload, then an OpenAPI signature match."""

    def __init__(
        self,
        *,
        timeout: float = DEFAULT_PROBE_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._transport = transport
        self._logger = logger or logging.getLogger(__name__)
        self.last_checked_at: Optional[datetime] = None

    async def check(self, url: str) -> HealthResult:
        root = url.rstrip("/")
        try:
            async with httpx.AsyncClient(
                timeout=self._timeout, transport=self._transport
            ) as client:
                response = await client.get(root + HEALTH_PATH)
                self._mark_checked()
                if response.status_code != 200:
                    return HealthResult(
                        is_healthy=False,
                        status_code=response.status_code,
                        message=f"HTTP {response.status_code}",
                    )
                if not health_payload_looks_healthy(_parse_json(response)):
                    return HealthResult(
                        is_healthy=False,
                        status_code=response.status_code,
                        message="Health payload is not Pocket TTS.",
                    )
                if not await self._openapi_matches(client, root):
                    return HealthResult(
                        is_healthy=False,
                        status_code=response.status_code,
                        message=_COLLISION_MESSAGE,
                    )
                return HealthResult(
                    is_healthy=True,
                    status_code=200,
                    message=None,
                    is_service_confirmed=True,
                )
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            self._mark_checked()
            return HealthResult(is_healthy=False, message=f"Invalid base URL: {exc}")
        except httpx.HTTPError as exc:
            self._mark_checked()
            return HealthResult(
                is_healthy=False, message=str(exc) or exc.__class__.__name__
            )

    async def wait_for_healthy(
        self,
        url: str,
        timeout_seconds: float,
        *,
        is_alive: Callable[[], bool],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> bool:
        deadline = time.monotonic() + timeout_seconds
        last: Optional[HealthResult] = None
        while time.monotonic() < deadline:
            if cancel_event is not None and cancel_event.is_set():
                return False
            if not is_alive():
                return False
            last = await self.check(url)
            if last.is_healthy:
                return True
            if not is_alive():
                return False
            await asyncio.sleep(self._poll_interval)
        log_event(
            self._logger,
            logging.WARNING,
            "pocket_runtime.health.failed",
            url=url,
            timeout_seconds=timeout_seconds,
            status_code=last.status_code if last else None,
            message=last.message if last else None,
        )
        return False

    async def _openapi_matches(self, client: httpx.AsyncClient, root: str) -> bool:
        try:
            response = await client.get(root + OPENAPI_PATH)
        except httpx.HTTPError:
            return False
        if response.status_code != 200:
            return False
        return openapi_looks_like_service(_parse_json(response))

    def _mark_checked(self) -> None:
        self.last_checked_at = datetime.now(timezone.utc)
