"""Payment gateway collaborator.

Supports two backends:
- HTTP gateway via httpx (production)
- Simulated (development / testing): logs the movement and succeeds

Set PAYMENT_GATEWAY_BACKEND=http and configure PAYMENT_GATEWAY_* settings for
production. Every call carries an idempotency key so that a retried
release or refund never moves money twice at the gateway.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx

from jobescrow.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayResult:
    success: bool
    reference: str | None = None
    retryable: bool = False
    error: str | None = None
    timed_out: bool = False


class PaymentGateway(Protocol):
    async def hold(self, amount: int, job_id: uuid.UUID, idempotency_key: str) -> GatewayResult: ...

    async def settle(
        self, amount: int, destination_account: str, job_id: uuid.UUID, idempotency_key: str,
    ) -> GatewayResult: ...

    async def reverse(self, amount: int, job_id: uuid.UUID, idempotency_key: str) -> GatewayResult: ...


def account_for_user(user_id: uuid.UUID) -> str:
    return f"user:{user_id}"


class SimulatedPaymentGateway:
    """Development gateway: logs each movement and always succeeds."""

    async def hold(self, amount: int, job_id: uuid.UUID, idempotency_key: str) -> GatewayResult:
        logger.info("GATEWAY hold amount=%d job=%s key=%s", amount, job_id, idempotency_key)
        return GatewayResult(success=True, reference=f"sim-hold-{idempotency_key}")

    async def settle(
        self, amount: int, destination_account: str, job_id: uuid.UUID, idempotency_key: str,
    ) -> GatewayResult:
        logger.info(
            "GATEWAY settle amount=%d to=%s job=%s key=%s",
            amount, destination_account, job_id, idempotency_key,
        )
        return GatewayResult(success=True, reference=f"sim-settle-{idempotency_key}")

    async def reverse(self, amount: int, job_id: uuid.UUID, idempotency_key: str) -> GatewayResult:
        logger.info("GATEWAY reverse amount=%d job=%s key=%s", amount, job_id, idempotency_key)
        return GatewayResult(success=True, reference=f"sim-reverse-{idempotency_key}")


class HttpPaymentGateway:
    """Production gateway: JSON over HTTPS with a bearer API key."""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.payment_gateway_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.payment_gateway_api_key
        self.timeout = timeout if timeout is not None else settings.payment_gateway_timeout_seconds
        self._transport = transport

    async def _post(self, path: str, payload: dict, idempotency_key: str) -> GatewayResult:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Idempotency-Key": idempotency_key,
        }
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self._transport,
        ) as client:
            try:
                resp = await client.post(path, json=payload, headers=headers)
            except httpx.TimeoutException:
                logger.error("Payment gateway timed out on %s (key %s)", path, idempotency_key)
                return GatewayResult(
                    success=False, retryable=True, timed_out=True, error="Payment gateway timed out",
                )
            except httpx.RequestError as e:
                logger.error("Payment gateway request failed on %s: %s", path, e)
                return GatewayResult(success=False, retryable=True, error=str(e))

        if resp.status_code >= 500:
            return GatewayResult(
                success=False, retryable=True,
                error=f"Payment gateway returned {resp.status_code}",
            )
        body = resp.json() if resp.content else {}
        if resp.status_code >= 400:
            return GatewayResult(
                success=False,
                retryable=False,
                error=body.get("message") or f"Payment gateway returned {resp.status_code}",
            )
        return GatewayResult(success=True, reference=body.get("reference"))

    async def hold(self, amount: int, job_id: uuid.UUID, idempotency_key: str) -> GatewayResult:
        return await self._post(
            "/holds", {"amount": amount, "currency": settings.currency, "job_id": str(job_id)},
            idempotency_key,
        )

    async def settle(
        self, amount: int, destination_account: str, job_id: uuid.UUID, idempotency_key: str,
    ) -> GatewayResult:
        return await self._post(
            "/settlements",
            {
                "amount": amount,
                "currency": settings.currency,
                "destination_account": destination_account,
                "job_id": str(job_id),
            },
            idempotency_key,
        )

    async def reverse(self, amount: int, job_id: uuid.UUID, idempotency_key: str) -> GatewayResult:
        return await self._post(
            "/reversals", {"amount": amount, "currency": settings.currency, "job_id": str(job_id)},
            idempotency_key,
        )


def get_payment_gateway() -> PaymentGateway:
    if settings.payment_gateway_backend == "http":
        return HttpPaymentGateway()
    return SimulatedPaymentGateway()
