"""Per-request wiring for the session facade.

Learn: Each request gets its own AsyncSession (get_db) and a fresh
facade around it; the bus and HTTP client are process-wide. Tests swap
any of these through app.dependency_overrides.
"""

from typing import Optional

import httpx
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tessera.db.engine import get_db
from tessera.events.bus import EventBus, RedisStreamBus
from tessera.events.publisher import EventPublisher
from tessera.services.session_facade import SessionFacade


def get_event_bus() -> EventBus:
    return RedisStreamBus()


def get_publisher(bus: EventBus = Depends(get_event_bus)) -> EventPublisher:
    return EventPublisher(bus)


def get_http_client() -> Optional[httpx.AsyncClient]:
    """Outbound client for the identity provider. None → one per call."""
    return None


def get_session_facade(
    db: AsyncSession = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
    http: Optional[httpx.AsyncClient] = Depends(get_http_client),
) -> SessionFacade:
    return SessionFacade(db, publisher, http)
