from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable
from datetime import datetime
from typing import Any

from sqlmodel import Session

from storefront.domain.models import EventEnvelope, EventRecord

EventHandler = Callable[[EventEnvelope], None]

SUBSCRIPTION_TRANSITIONED = "subscription.transitioned"
INVOICE_ISSUED = "subscription.invoice.issued"
INVOICE_SUBMITTED = "subscription.invoice.submitted"
INVOICE_APPROVED = "subscription.invoice.approved"
INVOICE_REJECTED = "subscription.invoice.rejected"


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        self._subscribers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: EventHandler) -> None:
        if handler in self._subscribers.get(event_type, []):
            self._subscribers[event_type].remove(handler)

    def record(self, session: Session, event: EventEnvelope) -> EventEnvelope:
        """Stage the event in the caller's transaction; handlers run on dispatch()."""
        session.add(
            EventRecord(
                event_id=event.event_id,
                event_type=event.event_type,
                tenant_id=event.tenant_id,
                ts=event.ts,
                actor_id=event.actor_id,
                correlation_id=event.correlation_id,
                payload=event.payload,
            )
        )
        return event

    def dispatch(self, events: list[EventEnvelope]) -> None:
        for event in events:
            handlers = [*self._subscribers.get(event.event_type, []), *self._subscribers.get("*", [])]
            for handler in handlers:
                handler(event)

    def build(
        self,
        event_type: str,
        tenant_id: str,
        payload: dict[str, Any],
        *,
        actor_id: str | None = None,
        ts: datetime | None = None,
    ) -> EventEnvelope:
        if ts is None:
            return EventEnvelope(event_type=event_type, tenant_id=tenant_id, actor_id=actor_id, payload=payload)
        return EventEnvelope(event_type=event_type, tenant_id=tenant_id, actor_id=actor_id, ts=ts, payload=payload)


event_bus = EventBus()
