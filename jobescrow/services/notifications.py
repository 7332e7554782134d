"""Job event notifications.

Notifications are written to an outbox table inside the same transaction
as the state change that caused them, then delivered out of band by
``dispatch_pending``. Callers never wait on delivery and a delivery failure
never affects the job.

Supports two senders:
- Log-only (development / testing): logs the notification
- Any object implementing ``NotificationSender`` (push/SMS/email bridges)
"""

import logging
import uuid
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from jobescrow.models.job import Job
from jobescrow.models.notification import NotificationDelivery, NotificationStatus

logger = logging.getLogger(__name__)

JOB_EVENTS = frozenset({
    "job.created",
    "job.updated",
    "job.accepted",
    "job.completed",
    "job.satisfied",
    "job.disputed",
    "job.resolved",
    "job.cancelled",
})

MAX_ATTEMPTS = 5


class NotificationSender(Protocol):
    async def send(self, user_id: uuid.UUID, event_type: str, payload: dict) -> None: ...


class LogNotificationSender:
    """Development sender: logs the notification instead of delivering it."""

    async def send(self, user_id: uuid.UUID, event_type: str, payload: dict) -> None:
        logger.info("NOTIFY user=%s event=%s payload=%s", user_id, event_type, payload)


def build_payload(job: Job, event_type: str, details: dict) -> dict:
    return {
        "event": event_type,
        "job_id": str(job.job_id),
        "status": job.status.value,
        "title": job.title,
        "conversation_id": job.conversation_id,
        "timestamp": datetime.now(UTC).isoformat(),
        **details,
    }


def notify(
    db: AsyncSession,
    user_id: uuid.UUID,
    event_type: str,
    payload: dict,
    job_id: uuid.UUID | None = None,
) -> NotificationDelivery:
    """Queue a notification. Persisted with the caller's transaction."""
    delivery = NotificationDelivery(
        delivery_id=uuid.uuid4(),
        user_id=user_id,
        job_id=job_id,
        event_type=event_type,
        payload=payload,
        status=NotificationStatus.PENDING,
    )
    db.add(delivery)
    return delivery


def notify_job_event(
    db: AsyncSession,
    job: Job,
    event_type: str,
    details: dict | None = None,
) -> list[NotificationDelivery]:
    """Queue a notification for every party to the job."""
    if event_type not in JOB_EVENTS:
        raise ValueError(f"Unknown job event {event_type}")
    payload = build_payload(job, event_type, details or {})
    recipients = [job.requirer_id]
    if job.provider_id is not None:
        recipients.append(job.provider_id)
    elif job.candidate_provider_id is not None and event_type in ("job.created", "job.updated"):
        recipients.append(job.candidate_provider_id)
    return [notify(db, user_id, event_type, payload, job.job_id) for user_id in recipients]


async def dispatch_pending(
    db: AsyncSession, sender: NotificationSender, batch_size: int = 100
) -> int:
    """Deliver queued notifications. Returns how many were delivered."""
    result = await db.execute(
        select(NotificationDelivery)
        .where(NotificationDelivery.status == NotificationStatus.PENDING)
        .order_by(NotificationDelivery.created_at)
        .limit(batch_size)
    )
    delivered = 0
    for delivery in result.scalars().all():
        delivery.attempts += 1
        try:
            await sender.send(delivery.user_id, delivery.event_type, delivery.payload)
        except Exception as e:
            logger.warning(
                "Notification %s to %s failed (attempt %d): %s",
                delivery.delivery_id, delivery.user_id, delivery.attempts, e,
            )
            delivery.last_error = str(e)
            if delivery.attempts >= MAX_ATTEMPTS:
                delivery.status = NotificationStatus.FAILED
            continue
        delivery.status = NotificationStatus.DELIVERED
        delivered += 1
    await db.commit()
    return delivered
