import asyncio

import httpx
import pytest

from pocket_runtime.health import HealthVerifier, base_url

POCKET_OPENAPI = {
    "openapi": "3.1.0",
    "info": {"title": "Kyutai Pocket TTS API", "version": "0.4.2"},
    "paths": {"/health": {}, "/tts": {}},
}


def make_verifier(handler) -> HealthVerifier:
    return HealthVerifier(timeout=1.0, poll_interval=0.01, transport=httpx.MockTransport(handler))


def service(health_payload=None, openapi=None, health_status=200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            return httpx.Response(health_status, json=health_payload or {"status": "healthy"})
        if request.url.path == "/openapi.json":
            return httpx.Response(200, json=openapi if openapi is not None else POCKET_OPENAPI)
        return httpx.Response(404)

    return handler


def test_base_url_brackets_ipv6():
    assert base_url("127.0.0.1", 8000) == "http://127.0.0.1:8000"
    assert base_url("localhost", 8001) == "http://localhost:8001"
    assert base_url("::1", 8002) == "http://[::1]:8002"


@pytest.mark.anyio
async def test_confirmed_service_is_healthy():
    verifier = make_verifier(service())

    result = await verifier.check("http://127.0.0.1:8000/")

    assert result.is_healthy is True
    assert result.is_service_confirmed is True
    assert result.status_code == 200
    assert verifier.last_checked_at is not None


@pytest.mark.anyio
async def test_status_match_is_case_insensitive():
    verifier = make_verifier(service(health_payload={"status": "HEALTHY"}))
    assert (await verifier.check("http://127.0.0.1:8000")).is_healthy is True


@pytest.mark.anyio
async def test_other_service_on_port_is_a_collision():
    openapi = {"info": {"title": "Inventory Service"}, "paths": {"/items": {}}}
    verifier = make_verifier(service(openapi=openapi))

    result = await verifier.check("http://127.0.0.1:8000")

    assert result.is_healthy is False
    assert result.is_service_confirmed is False
    assert result.status_code == 200
    assert result.message == "Another service appears to be running on this port."


@pytest.mark.anyio
async def test_title_without_tts_route_is_rejected():
    openapi = {"info": {"title": "Pocket TTS"}, "paths": {"/health": {}}}
    verifier = make_verifier(service(openapi=openapi))

    assert (await verifier.check("http://127.0.0.1:8000")).is_healthy is False


@pytest.mark.anyio
async def test_non_200_health_reports_status():
    verifier = make_verifier(service(health_status=503))

    result = await verifier.check("http://127.0.0.1:8000")

    assert result.is_healthy is False
    assert result.status_code == 503
    assert result.message == "HTTP 503"


@pytest.mark.anyio
async def test_unexpected_health_payload():
    verifier = make_verifier(service(health_payload={"status": "starting"}))

    result = await verifier.check("http://127.0.0.1:8000")

    assert result.is_healthy is False
    assert result.message == "Health payload is not Pocket TTS."


@pytest.mark.anyio
async def test_transport_error_has_no_status_code():
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    verifier = make_verifier(refuse)

    result = await verifier.check("http://127.0.0.1:8000")

    assert result.is_healthy is False
    assert result.status_code is None
    assert "connection refused" in (result.message or "")
    assert verifier.last_checked_at is not None


@pytest.mark.anyio
async def test_invalid_url_is_reported():
    verifier = HealthVerifier(timeout=1.0)

    result = await verifier.check("not a url")

    assert result.is_healthy is False
    assert result.status_code is None
    assert (result.message or "").startswith("Invalid base URL")


@pytest.mark.anyio
async def test_wait_for_healthy_polls_until_ready():
    calls = {"health": 0}
    ready = service()

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health":
            calls["health"] += 1
            if calls["health"] < 3:
                raise httpx.ConnectError("not yet", request=request)
        return ready(request)

    verifier = make_verifier(handler)

    assert await verifier.wait_for_healthy(
        "http://127.0.0.1:8000", 5.0, is_alive=lambda: True
    )
    assert calls["health"] == 3


@pytest.mark.anyio
async def test_wait_for_healthy_stops_when_process_dies():
    verifier = make_verifier(service(health_status=503))

    assert not await verifier.wait_for_healthy(
        "http://127.0.0.1:8000", 5.0, is_alive=lambda: False
    )


@pytest.mark.anyio
async def test_wait_for_healthy_honours_cancel_and_deadline():
    verifier = make_verifier(service(health_status=503))
    cancel = asyncio.Event()
    cancel.set()

    assert not await verifier.wait_for_healthy(
        "http://127.0.0.1:8000", 5.0, is_alive=lambda: True, cancel_event=cancel
    )
    assert not await verifier.wait_for_healthy(
        "http://127.0.0.1:8000", 0.1, is_alive=lambda: True
    )
