"""Error taxonomy for the job/escrow core.

Every error raised by the services is a ``MarketplaceError``. The HTTP
layer maps them to JSON responses in ``register_exception_handlers``;
nothing in the core swallows them.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    code = "marketplace_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(MarketplaceError):
    """Bad input shape or range: amount <= 0, past deadline, missing field."""

    code = "validation_error"
    status_code = 422


class NotFoundError(MarketplaceError):
    code = "not_found"
    status_code = 404


class AuthorizationError(MarketplaceError):
    """Actor is not permitted to perform this action on this job."""

    code = "forbidden"
    status_code = 403


class InvalidTransitionError(MarketplaceError):
    """Action is not allowed from the job's current status."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, from_status: str, action: str) -> None:
        super().__init__(
            f"Cannot {action} a job in status {from_status}",
            {"from": from_status, "action": action},
        )
        self.from_status = from_status
        self.action = action


class StaleStateError(MarketplaceError):
    """Optimistic-concurrency conflict. Re-fetch the job and retry."""

    code = "stale_state"
    status_code = 409
    retryable = True


class EscrowError(MarketplaceError):
    code = "escrow_error"
    status_code = 502


class InsufficientFundsError(EscrowError):
    code = "insufficient_funds"
    status_code = 422


class AlreadyTerminalError(EscrowError):
    """A second, different terminal operation was attempted on an escrow entry."""

    code = "escrow_already_terminal"
    status_code = 409


class GatewayError(EscrowError):
    """The payment gateway rejected or failed to complete an operation."""

    code = "payment_gateway_error"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        timed_out: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details)
        self.retryable = retryable
        self.timed_out = timed_out
        if timed_out:
            self.status_code = 504


class PartialDisbursementError(GatewayError):
    """A payout leg failed after earlier legs had already moved money.

    The status change is rolled back as usual, but the settled legs are
    recorded on the escrow entry so a retry finishes the same disbursement
    instead of paying twice or refunding money that already left.
    """

    code = "disbursement_incomplete"

    def __init__(
        self,
        message: str,
        job_id: Any,
        target: str,
        legs: dict[str, int],
        settled: dict[str, str | None],
        actor: Any,
        actor_role: str,
        retryable: bool = False,
        timed_out: bool = False,
    ) -> None:
        super().__init__(
            message,
            retryable=retryable,
            timed_out=timed_out,
            details={
                "job_id": str(job_id),
                "target": target,
                "settled_legs": sorted(settled),
                "pending_legs": sorted(leg for leg in legs if leg not in settled),
            },
        )
        self.job_id = job_id
        self.target = target
        self.legs = legs
        self.settled = settled
        self.actor = actor
        self.actor_role = actor_role


async def marketplace_error_handler(request: Request, exc: MarketplaceError) -> JSONResponse:
    logger.warning(
        "%s on %s %s: %s",
        exc.code, request.method, request.url.path, exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(MarketplaceError, marketplace_error_handler)  # type: ignore[arg-type]
