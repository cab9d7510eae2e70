from __future__ import annotations

from datetime import UTC, datetime

from sqlmodel import Session, SQLModel, create_engine, select

from storefront.domain.models import EventEnvelope, EventRecord
from storefront.infra.events import INVOICE_ISSUED, SUBSCRIPTION_TRANSITIONED, EventBus


def test_committed_events_are_stored_and_dispatched() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []

    def handler(event: EventEnvelope) -> None:
        seen.append(event.event_id)

    event = EventEnvelope(
        event_type=SUBSCRIPTION_TRANSITIONED,
        tenant_id="tenant-a",
        payload={"from": "TRIAL", "to": "OVERDUE", "trigger": "TRIAL_EXPIRED", "version": 2},
    )
    bus.subscribe(SUBSCRIPTION_TRANSITIONED, handler)

    with Session(engine) as session:
        bus.record(session, event)
        session.commit()
    bus.dispatch([event])

    with Session(engine) as session:
        stored = session.exec(select(EventRecord)).all()

    assert len(stored) == 1
    assert stored[0].event_id == event.event_id
    assert stored[0].payload["trigger"] == "TRIAL_EXPIRED"
    assert seen == [event.event_id]


def test_recorded_events_reach_handlers_only_on_dispatch() -> None:
    engine = create_engine("sqlite:///:memory:")
    SQLModel.metadata.create_all(engine)

    bus = EventBus()
    seen: list[str] = []
    bus.subscribe("*", lambda event: seen.append(event.event_type))

    ts = datetime(2026, 10, 16, tzinfo=UTC)
    event = bus.build(SUBSCRIPTION_TRANSITIONED, "tenant-a", {"to": "OVERDUE"}, actor_id="system", ts=ts)
    assert event.ts == ts
    assert event.actor_id == "system"

    with Session(engine) as session:
        bus.record(session, event)
        session.rollback()
    assert seen == []

    with Session(engine) as session:
        assert session.exec(select(EventRecord)).all() == []

    bus.dispatch([event])
    assert seen == [SUBSCRIPTION_TRANSITIONED]


def test_unsubscribed_handler_is_not_called() -> None:
    bus = EventBus()
    handler_calls: list[str] = []

    def handler(event: EventEnvelope) -> None:
        handler_calls.append(event.tenant_id)

    bus.subscribe(INVOICE_ISSUED, handler)
    bus.unsubscribe(INVOICE_ISSUED, handler)
    bus.unsubscribe(INVOICE_ISSUED, handler)
    bus.dispatch([bus.build(INVOICE_ISSUED, "tenant-b", {"invoice_number": "INV-202610-000001"})])

    assert handler_calls == []
