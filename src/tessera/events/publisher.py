"""Event publisher — durable emission of identity/authorization changes.

Learn: State changes and their events are two separate writes (store,
then bus) with no shared transaction. The rules that make that safe:

1. The mutation commits first. If the process dies before publishing,
   the store is still valid; the event is simply late or missing and
   recovery belongs to the caller/infrastructure (retry, outbox).
2. publish() returns an Ack only after the bus durably accepted the
   entry. Any failure surfaces — it is never swallowed.
3. Event ids are derived from (type, subject, causation id), so a
   retried publish produces the same id and consumers dedupe on it.
   The publisher keeps no history of its own.
"""

import asyncio
import json
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from tessera.config import settings
from tessera.db.models import utcnow
from tessera.errors import UnavailableError
from tessera.events.bus import EventBus
from tessera.events.types import EVENT_TYPES

logger = structlog.get_logger()

# Fixed namespace: changing it changes every event id ever derived.
EVENT_NAMESPACE = uuid.UUID("6f1c2a9e-4b7d-5e3f-9a18-2c0d7b4e8f61")


def event_id_for(
    event_type: str, subject_user_id: Optional[int], causation_id: str
) -> uuid.UUID:
    """Deterministic event id — same inputs, same id, across processes."""
    subject = "" if subject_user_id is None else str(subject_user_id)
    return uuid.uuid5(EVENT_NAMESPACE, f"{event_type}:{subject}:{causation_id}")


class DomainEvent(BaseModel):
    """Immutable description of one state transition."""

    event_id: uuid.UUID
    type: str
    subject_user_id: Optional[int]
    causation_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: datetime

    model_config = {"frozen": True}

    def to_fields(self) -> dict[str, str]:
        """Flatten for the stream entry (Redis fields are strings)."""
        return {
            "event_id": str(self.event_id),
            "type": self.type,
            "subject_user_id": "" if self.subject_user_id is None else str(self.subject_user_id),
            "causation_id": self.causation_id,
            "payload": json.dumps(self.payload, default=str, sort_keys=True),
            "occurred_at": self.occurred_at.isoformat(),
        }


def build_event(
    event_type: str,
    subject_user_id: Optional[int],
    causation_id: str,
    payload: Optional[dict[str, Any]] = None,
) -> DomainEvent:
    if event_type not in EVENT_TYPES:
        raise ValueError(f"Unknown event type: {event_type}")
    return DomainEvent(
        event_id=event_id_for(event_type, subject_user_id, causation_id),
        type=event_type,
        subject_user_id=subject_user_id,
        causation_id=causation_id,
        payload=payload or {},
        occurred_at=utcnow(),
    )


@dataclass(frozen=True)
class Ack:
    event_id: uuid.UUID
    entry_id: str


class EventPublisher:
    """At-least-once publisher over an EventBus, bounded by a timeout."""

    def __init__(self, bus: EventBus, timeout: Optional[float] = None):
        self.bus = bus
        self.timeout = timeout if timeout is not None else settings.bus_timeout_seconds

    async def publish(self, event: DomainEvent) -> Ack:
        """Durably enqueue the event. Raises UnavailableError on failure."""
        log = logger.bind(event_id=str(event.event_id), event_type=event.type)
        try:
            entry_id = await asyncio.wait_for(
                self.bus.append(event.type, event.to_fields()),
                timeout=self.timeout,
            )
        except TimeoutError as e:
            log.warning("event.publish_timeout", timeout=self.timeout)
            raise UnavailableError(
                f"Event bus did not acknowledge within {self.timeout}s"
            ) from e
        except UnavailableError as e:
            log.warning("event.publish_failed", error=str(e))
            raise

        log.info("event.published", entry_id=entry_id)
        return Ack(event_id=event.event_id, entry_id=entry_id)
