"""Tests for the HTTP payment gateway backend (httpx MockTransport, no network)."""

import json
import uuid

import httpx
import pytest

from jobescrow.config import settings
from jobescrow.services.payment_gateway import (
    HttpPaymentGateway,
    SimulatedPaymentGateway,
    get_payment_gateway,
)


def _gateway(handler) -> HttpPaymentGateway:  # type: ignore[no-untyped-def]
    return HttpPaymentGateway(
        base_url="https://pay.example.com/v1",
        api_key="sk_test",
        timeout=2.0,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_hold_sends_idempotency_key_and_amount() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(201, json={"reference": "hold_123"})

    job_id = uuid.uuid4()
    result = await _gateway(handler).hold(10_250, job_id, f"{job_id}:hold")

    assert result.success
    assert result.reference == "hold_123"
    request = seen[0]
    assert request.url.path == "/v1/holds"
    assert request.headers["Idempotency-Key"] == f"{job_id}:hold"
    assert request.headers["Authorization"] == "Bearer sk_test"
    assert json.loads(request.content) == {
        "amount": 10_250, "currency": settings.currency, "job_id": str(job_id),
    }


@pytest.mark.asyncio
async def test_settle_posts_destination() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert request.url.path == "/v1/settlements"
        assert body["destination_account"] == "platform:fees"
        return httpx.Response(200, json={"reference": "stl_1"})

    result = await _gateway(handler).settle(500, "platform:fees", uuid.uuid4(), "k")
    assert result.success


@pytest.mark.asyncio
async def test_client_error_is_not_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(402, json={"message": "Insufficient balance on card"})

    result = await _gateway(handler).hold(100, uuid.uuid4(), "k")
    assert not result.success
    assert not result.retryable
    assert result.error == "Insufficient balance on card"


@pytest.mark.asyncio
async def test_server_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    result = await _gateway(handler).reverse(100, uuid.uuid4(), "k")
    assert not result.success
    assert result.retryable
    assert not result.timed_out


@pytest.mark.asyncio
async def test_timeout_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    result = await _gateway(handler).settle(100, "user:x", uuid.uuid4(), "k")
    assert not result.success
    assert result.retryable
    assert result.timed_out


@pytest.mark.asyncio
async def test_connection_error_is_retryable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    result = await _gateway(handler).hold(100, uuid.uuid4(), "k")
    assert result.retryable
    assert not result.timed_out


@pytest.mark.asyncio
async def test_simulated_gateway_succeeds() -> None:
    result = await SimulatedPaymentGateway().hold(100, uuid.uuid4(), "abc:hold")
    assert result.success
    assert result.reference == "sim-hold-abc:hold"


def test_backend_selection() -> None:
    assert isinstance(get_payment_gateway(), SimulatedPaymentGateway)
    object.__setattr__(settings, "payment_gateway_backend", "http")
    object.__setattr__(settings, "payment_gateway_url", "https://pay.example.com")
    assert isinstance(get_payment_gateway(), HttpPaymentGateway)
