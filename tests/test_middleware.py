"""Tests for middleware components."""
import asyncio
import uuid
import pytest
import structlog
from fastapi import APIRouter
from httpx import AsyncClient, ASGITransport
from starlette.datastructures import Headers
from structlog.testing import capture_logs
from ingest.main import create_app
from ingest.metrics import Instrumentation, InstrumentedRoute
from ingest.middleware import resolve_client_ip


def _faulty_router():
    router = APIRouter(route_class=InstrumentedRoute)

    @router.get("/boom")
    async def boom():
        raise RuntimeError("handler blew up")

    @router.get("/sleepy")
    async def sleepy():
        await asyncio.sleep(5)
        return {"ok": True}

    @router.get("/context")
    async def context():
        return structlog.contextvars.get_contextvars()

    return router


@pytest.mark.asyncio
async def test_request_id_generated(client):
    """Test that a request ID is generated when none is sent."""
    response = await client.get("/healthz")
    request_id = response.headers["X-Request-ID"]
    assert uuid.UUID(request_id)


@pytest.mark.asyncio
async def test_request_id_preserved(client):
    """Test that an inbound request ID is echoed back."""
    response = await client.get("/healthz", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_request_ids_are_unique(client):
    """Test that concurrent requests get distinct IDs."""
    responses = await asyncio.gather(*(client.get("/healthz") for _ in range(20)))
    ids = {r.headers["X-Request-ID"] for r in responses}
    assert len(ids) == 20


def test_client_ip_header_precedence():
    """Test the client address resolution order."""
    headers = Headers(
        {
            "True-Client-IP": "1.1.1.1",
            "X-Real-IP": "2.2.2.2",
            "X-Forwarded-For": "3.3.3.3, 10.0.0.1",
        }
    )
    assert resolve_client_ip(headers, "9.9.9.9") == "1.1.1.1"

    headers = Headers({"X-Real-IP": "2.2.2.2", "X-Forwarded-For": "3.3.3.3"})
    assert resolve_client_ip(headers, "9.9.9.9") == "2.2.2.2"

    headers = Headers({"X-Forwarded-For": "3.3.3.3, 10.0.0.1"})
    assert resolve_client_ip(headers, "9.9.9.9") == "3.3.3.3"


def test_client_ip_falls_back_to_peer():
    """Test that the transport peer is used without proxy headers."""
    assert resolve_client_ip(Headers({}), "9.9.9.9") == "9.9.9.9"
    assert resolve_client_ip(Headers({"X-Forwarded-For": " "}), "9.9.9.9") == "9.9.9.9"
    assert resolve_client_ip(Headers({}), None) is None


@pytest.mark.asyncio
async def test_logging_context_bound_for_handlers():
    """Test that handlers log with the resolved client address and request ID."""
    app = create_app(instrumentation=Instrumentation())
    app.include_router(_faulty_router())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get(
            "/context",
            headers={"X-Request-ID": "req-ctx", "X-Forwarded-For": "3.3.3.3, 10.0.0.1"},
        )

    assert response.json() == {"request_id": "req-ctx", "client_ip": "3.3.3.3"}


@pytest.mark.asyncio
async def test_handler_fault_is_recovered():
    """Test that an exception becomes a 500 and the app keeps serving."""
    instrumentation = Instrumentation()
    app = create_app(instrumentation=instrumentation)
    app.include_router(_faulty_router())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        with capture_logs() as logs:
            response = await client.get("/boom")

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "InternalServerError"
        assert data["path"] == "/boom"
        assert any(entry["event"] == "unhandled.exception" for entry in logs)

        response = await client.get("/healthz")
        assert response.status_code == 200

    count = instrumentation.registry.get_sample_value(
        "http_requests_total",
        {"route": "/boom", "method": "GET", "code": "Internal Server Error"},
    )
    assert count == 1


@pytest.mark.asyncio
async def test_recovered_error_keeps_request_id():
    """Test that a 500 from the recovery layer still echoes the request ID."""
    app = create_app(instrumentation=Instrumentation())
    app.include_router(_faulty_router())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/boom", headers={"X-Request-ID": "req-500"})
        generated = await client.get("/boom")

    assert response.status_code == 500
    assert response.headers["X-Request-ID"] == "req-500"
    assert response.json()["request_id"] == "req-500"

    assert generated.status_code == 500
    request_id = generated.headers["X-Request-ID"]
    assert uuid.UUID(request_id)
    assert generated.json()["request_id"] == request_id


@pytest.mark.asyncio
async def test_timeout_returns_gateway_timeout():
    """Test that a handler over the ceiling gets a 504."""
    instrumentation = Instrumentation()
    app = create_app(instrumentation=instrumentation, request_timeout=0.2)
    app.include_router(_faulty_router())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        slow, health = await asyncio.gather(client.get("/sleepy"), client.get("/healthz"))

    assert slow.status_code == 504
    assert slow.json()["error"] == "GatewayTimeout"
    # Only the slow request is affected
    assert health.status_code == 200

    count = instrumentation.registry.get_sample_value(
        "http_requests_total",
        {"route": "/sleepy", "method": "GET", "code": "Gateway Timeout"},
    )
    assert count == 1


@pytest.mark.asyncio
async def test_timeout_logged_as_gateway_timeout():
    """Test that the access log records the 504 the client receives."""
    app = create_app(instrumentation=Instrumentation(), request_timeout=0.2)
    app.include_router(_faulty_router())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        with capture_logs() as logs:
            response = await client.get("/sleepy", headers={"X-Request-ID": "req-504"})

    assert response.status_code == 504
    assert response.headers["X-Request-ID"] == "req-504"

    access = [entry for entry in logs if entry["event"] == "http_request"]
    assert len(access) == 1
    assert access[0]["path"] == "/sleepy"
    assert access[0]["http_status"] == 504
    assert access[0]["cancelled"] is True


@pytest.mark.asyncio
async def test_completed_request_not_marked_cancelled(client):
    """Test that a normal request is logged with cancelled=False."""
    with capture_logs() as logs:
        await client.get("/healthz")

    access = [entry for entry in logs if entry["event"] == "http_request"]
    assert access[0]["cancelled"] is False


@pytest.mark.asyncio
async def test_access_log_written(client):
    """Test that every request produces one access log line."""
    with capture_logs() as logs:
        await client.get("/healthz")
        await client.post("/events", json={"payload": "x"})

    access = [entry for entry in logs if entry["event"] == "http_request"]
    assert len(access) == 2
    assert access[0]["method"] == "GET"
    assert access[0]["path"] == "/healthz"
    assert access[0]["http_status"] == 200
    assert access[0]["duration_ms"] >= 0
    assert access[1]["method"] == "POST"
    assert access[1]["http_status"] == 400


@pytest.mark.asyncio
async def test_client_error_not_logged_as_failure(client):
    """Test that a 400 does not produce error-level logs."""
    with capture_logs() as logs:
        await client.post("/events", content=b"{invalid json}")

    assert not [entry for entry in logs if entry["log_level"] in ("error", "critical")]
