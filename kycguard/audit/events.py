"""
Domain events and their fire-and-forget delivery.

Every state change in the core publishes a DomainEvent after the change
has been saved. Delivery is decoupled from the decision: a sink that
raises is logged and skipped, and the saved state is never rolled back.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Iterable
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field

from kycguard.domain.schema import Principal, utc_now

logger = logging.getLogger(__name__)


class DomainEventType(str, enum.Enum):
    KYC_STATUS_CHANGED = "kyc.status.changed"
    KYC_RISK_UPDATED = "kyc.risk.updated"
    KYC_STEP_COMPLETED = "kyc.step.completed"
    DOCUMENT_ADDED = "document.added"
    DOCUMENT_VERIFIED = "document.verified"
    DOCUMENT_REJECTED = "document.rejected"
    PROFILE_CREATED = "profile.created"
    PROFILE_UPDATED = "profile.updated"
    PROFILE_DEACTIVATED = "profile.deactivated"
    ROLE_CREATED = "role.created"
    ROLE_UPDATED = "role.updated"
    ROLE_DELETED = "role.deleted"


SYSTEM_ACTOR = "system"


class DomainEvent(BaseModel):
    """An immutable record of one state change, attributed to its actor."""

    model_config = ConfigDict(frozen=True)

    id: UUID = Field(default_factory=uuid4)
    event_type: DomainEventType
    aggregate_id: str
    actor_subject: str
    actor_role: str | None = None
    occurred_at: datetime = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def by(
        cls,
        actor: Principal | None,
        event_type: DomainEventType,
        aggregate_id: Any,
        occurred_at: datetime | None = None,
        **payload: Any,
    ) -> "DomainEvent":
        """Build an event attributed to ``actor`` (None means the system)."""
        return cls(
            event_type=event_type,
            aggregate_id=str(aggregate_id),
            actor_subject=actor.subject if actor is not None else SYSTEM_ACTOR,
            actor_role=actor.role if actor is not None else None,
            occurred_at=occurred_at or utc_now(),
            payload=payload,
        )


class EventSink(ABC):
    """A consumer of domain events (audit trail, notifications, ...)."""

    @abstractmethod
    def publish(self, event: DomainEvent) -> None:
        ...


class InMemoryEventSink(EventSink):
    """Collects events in a list."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def publish(self, event: DomainEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: DomainEventType) -> list[DomainEvent]:
        return [e for e in self.events if e.event_type == event_type]


class EventPublisher:
    """Fans events out to every registered sink without ever raising."""

    def __init__(self, sinks: Iterable[EventSink] = ()) -> None:
        self.sinks: list[EventSink] = list(sinks)

    def subscribe(self, sink: EventSink) -> None:
        self.sinks.append(sink)

    def publish(self, event: DomainEvent) -> None:
        for sink in self.sinks:
            try:
                sink.publish(event)
            except Exception:
                logger.exception(
                    "Event delivery failed: sink=%s type=%s aggregate=%s",
                    type(sink).__name__, event.event_type.value, event.aggregate_id,
                )
