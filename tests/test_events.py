from __future__ import annotations

from datetime import date, datetime, timedelta
from pathlib import Path, PurePosixPath

import pytest

from marketplace_core.errors import NotFound
from marketplace_core.events import EventFilter, NotificationEventStore, event_fingerprint, event_id_for
from marketplace_core.models import NotificationEvent
from marketplace_core.paths import Family, index_path
from marketplace_core.services import Services


def _event(
    clock_now: datetime,
    *,
    event_type: str = "milestone_payment_received",
    target_id: int = 31,
    actor_id: int = 32,
    entity_id: str = "P-100_INV-P-100-001",
    project_id: str = "P-100",
) -> NotificationEvent:
    key = event_fingerprint(event_type, entity_id, target_id)
    return NotificationEvent(
        id=event_id_for(key),
        timestamp=clock_now,
        type=event_type,
        actor_id=actor_id,
        target_id=target_id,
        entity_type="invoice",
        entity_id=entity_id,
        context={"projectId": project_id},
    )


@pytest.fixture
def events(services: Services) -> NotificationEventStore:
    return services.events


def test_fingerprint_is_deterministic_and_audience_specific() -> None:
    a = event_fingerprint("milestone_payment_sent", "P-1_INV-1", 32)
    assert a == event_fingerprint("milestone_payment_sent", "P-1_INV-1", 32)
    assert a != event_fingerprint("milestone_payment_sent", "P-1_INV-1", 31)
    assert a != event_fingerprint("milestone_payment_received", "P-1_INV-1", 32)
    assert event_id_for(a) == f"evt_{a[:24]}"


def test_append_writes_one_file_per_event(events: NotificationEventStore, clock, data_root: Path) -> None:
    event = _event(clock())
    relative = events.append(event)

    assert relative == PurePosixPath(
        f"notifications/events/2025/July/01/milestone_payment_received/{event.id}.json"
    )
    assert (data_root / relative).is_file()
    assert events.get(event.id).model_dump() == event.model_dump()


def test_exists_uses_fingerprint_index(events: NotificationEventStore, clock) -> None:
    event = _event(clock())
    key = event_fingerprint(event.type, event.entity_id, event.target_id)
    assert events.exists(key) is False

    events.append(event)
    assert events.exists(key) is True


def test_exists_falls_back_to_scan_and_repairs_index(
    events: NotificationEventStore, clock, data_root: Path
) -> None:
    event = _event(clock())
    events.append(event)
    index_path(data_root, Family.NOTIFICATIONS).unlink()
    clock.advance(days=2)

    key = event_fingerprint(event.type, event.entity_id, event.target_id)
    assert events.exists(key) is True
    assert events.index.lookup(Family.NOTIFICATIONS, key) is not None


def test_scan_fallback_is_bounded_by_lookback(events: NotificationEventStore, clock, data_root: Path) -> None:
    event = _event(clock())
    events.append(event)
    index_path(data_root, Family.NOTIFICATIONS).unlink()
    clock.advance(days=events.lookback_days + 1)

    assert events.exists(event_fingerprint(event.type, event.entity_id, event.target_id)) is False


def test_list_filters_in_memory(events: NotificationEventStore, clock) -> None:
    events.append(_event(clock(), target_id=31, actor_id=32))
    events.append(_event(clock(), event_type="milestone_payment_sent", target_id=32, actor_id=31))
    events.append(_event(clock(), target_id=31, entity_id="P-200_INV-P-200-001", project_id="P-200"))

    assert len(events.list()) == 3
    assert {e.target_id for e in events.list(EventFilter(target_id=31))} == {31}
    assert len(events.list(EventFilter(actor_id=31))) == 1
    assert len(events.list(EventFilter(type="milestone_payment_sent"))) == 1
    assert [e.project_id for e in events.list(EventFilter(project_id="P-200"))] == ["P-200"]


def test_list_defaults_to_today(events: NotificationEventStore, clock) -> None:
    events.append(_event(clock()))
    clock.advance(days=1)
    events.append(_event(clock(), entity_id="P-100_INV-P-100-002"))

    assert [e.entity_id for e in events.list()] == ["P-100_INV-P-100-002"]
    yesterday = (clock() - timedelta(days=1)).date()
    everything = events.list(EventFilter(since=yesterday, until=clock().date()))
    assert [e.entity_id for e in everything] == ["P-100_INV-P-100-001", "P-100_INV-P-100-002"]

    with pytest.raises(ValueError):
        events.list(EventFilter(since=date(2025, 7, 3), until=date(2025, 7, 1)))


def test_get_unknown_event(events: NotificationEventStore) -> None:
    with pytest.raises(NotFound):
        events.get("evt_missing")


def test_read_state_projection_never_touches_events(
    events: NotificationEventStore, clock, data_root: Path
) -> None:
    event = _event(clock())
    relative = events.append(event)
    before = (data_root / relative).read_bytes()

    assert events.is_read(event.id, 31) is False
    assert events.mark_read(event.id, 31) is True
    assert events.mark_read(event.id, 31) is False
    assert events.is_read(event.id, 31) is True
    assert events.is_read(event.id, 32) is False
    assert events.unread(31) == []
    assert (data_root / relative).read_bytes() == before
    assert (data_root / "notifications" / "read-states.json").is_file()


def test_rebuild_fingerprint_index(events: NotificationEventStore, clock, data_root: Path) -> None:
    first = _event(clock())
    second = _event(clock(), event_type="milestone_payment_sent", target_id=32, actor_id=31)
    events.append(first)
    events.append(second)
    index_path(data_root, Family.NOTIFICATIONS).unlink()

    assert events.rebuild_fingerprint_index() == 2
    assert events.exists(event_fingerprint(first.type, first.entity_id, first.target_id))
