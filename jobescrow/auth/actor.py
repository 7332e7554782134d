"""Actor identity for FastAPI requests.

Identity verification belongs to an upstream gateway; by the time a request
reaches this service the caller's user id is carried in ``X-Actor-Id``.
Arbiter rights come from ``settings.arbiter_ids``.
"""

import enum
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fastapi import Request

from jobescrow.config import settings
from jobescrow.errors import AuthorizationError

if TYPE_CHECKING:
    from jobescrow.models.job import Job

ACTOR_HEADER = "X-Actor-Id"


class ActorKind(enum.Enum):
    USER = "user"
    ARBITER = "arbiter"
    SYSTEM = "system"


@dataclass(frozen=True)
class Actor:
    """Who is performing an operation."""

    user_id: uuid.UUID | None
    kind: ActorKind = ActorKind.USER

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, kind=ActorKind.SYSTEM)

    @property
    def is_system(self) -> bool:
        return self.kind == ActorKind.SYSTEM

    @property
    def is_arbiter(self) -> bool:
        return self.kind == ActorKind.ARBITER

    def is_requirer_of(self, job: "Job") -> bool:
        return self.user_id is not None and self.user_id == job.requirer_id

    def is_provider_of(self, job: "Job") -> bool:
        return self.user_id is not None and self.user_id == job.provider_id

    def role_on(self, job: "Job") -> str:
        """Role label used in audit entries and notifications."""
        if self.is_system:
            return "system"
        if self.is_requirer_of(job):
            return "requirer"
        if self.is_provider_of(job):
            return "provider"
        if self.is_arbiter:
            return "arbiter"
        return "user"


def actor_for(user_id: uuid.UUID) -> Actor:
    kind = ActorKind.ARBITER if user_id in settings.arbiter_ids else ActorKind.USER
    return Actor(user_id=user_id, kind=kind)


async def get_actor(request: Request) -> Actor:
    """Resolve the calling actor from the request headers."""
    raw = request.headers.get(ACTOR_HEADER)
    if not raw:
        raise AuthorizationError(f"Missing {ACTOR_HEADER} header")
    try:
        user_id = uuid.UUID(raw)
    except ValueError:
        raise AuthorizationError(f"Malformed {ACTOR_HEADER} header")
    return actor_for(user_id)
