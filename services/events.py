"""Post-commit domain events.

Services publish exactly one ``DomainEvent`` after each successful commit.
Subscribers refresh whatever they derive from the affected aggregates; a
failing subscriber is logged and never reaches the caller.
"""

from __future__ import annotations

import inspect
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

Subscriber = Callable[["DomainEvent"], Union[None, Awaitable[None]]]

FREEZE_SUBMITTED = "freeze.submitted"
APPROVAL_SUBMITTED = "approval.submitted"
APPROVAL_DECIDED = "approval.decided"
MEMBERSHIP_ACTIVATED = "membership.activated"
MEMBERSHIP_FROZEN = "membership.frozen"
MEMBERSHIP_RESUMED = "membership.resumed"
MEMBERSHIP_CANCELLED = "membership.cancelled"
MEMBERSHIP_EXPIRED = "membership.expired"
REVERSAL_RECORDED = "reversal.recorded"


@dataclass
class DomainEvent:
    name: str
    aggregate_type: str
    aggregate_id: str
    branch_id: Optional[str] = None
    membership_id: Optional[str] = None
    member_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EventBus:
    """In-process observer registry keyed by event name ("*" matches all)."""

    def __init__(self) -> None:
        self._subscribers: Dict[str, Dict[str, Subscriber]] = {}

    def subscribe(self, name: str, handler: Subscriber) -> str:
        handler_id = str(uuid.uuid4())
        self._subscribers.setdefault(name, {})[handler_id] = handler
        return handler_id

    def unsubscribe(self, name: str, handler_id: str) -> bool:
        handlers = self._subscribers.get(name, {})
        return handlers.pop(handler_id, None) is not None

    def clear(self) -> None:
        self._subscribers.clear()

    def _handlers_for(self, name: str) -> List[Subscriber]:
        return list(self._subscribers.get(name, {}).values()) + list(self._subscribers.get("*", {}).values())

    async def publish(self, event: DomainEvent) -> int:
        delivered = 0
        for handler in self._handlers_for(event.name):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except Exception:
                logger.exception("Domain event subscriber failed for %s (%s)", event.name, event.id)
        logger.debug("Published %s for %s:%s to %d subscribers", event.name, event.aggregate_type, event.aggregate_id, delivered)
        return delivered


event_bus = EventBus()


async def publish_event(event: DomainEvent) -> None:
    """Publish on the process-wide bus. Call only after the owning commit."""
    await event_bus.publish(event)


async def redis_event_forwarder(event: DomainEvent) -> None:
    """Forward events to a Redis channel for cache invalidation elsewhere."""
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        await redis_client.publish(settings.DOMAIN_EVENTS_CHANNEL, json.dumps(event.to_dict()))
    finally:
        await redis_client.aclose()
