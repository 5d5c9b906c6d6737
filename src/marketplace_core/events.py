"""Append-only notification event log.

One file per event at
``notifications/events/<YYYY>/<MonthName>/<DD>/<type>/<eventId>.json``. Events
are never rewritten; read state is a separate projection in
``notifications/read-states.json``.

The store does not deduplicate on its own. Callers compute
:func:`event_fingerprint` and check :meth:`NotificationEventStore.exists`
before :meth:`NotificationEventStore.append`. Fingerprints are indexed in
``notifications-index.json``; when the index misses, ``exists`` falls back to a
directory walk over the configured lookback window.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterator

from pydantic import ValidationError

from .canonical import fingerprint
from .errors import CorruptDocument, NotFound
from .fs_json import locked_file, read_json, write_json
from .index import IndexMaintainer
from .models import NotificationEvent
from .paths import READ_STATES, Family, day_directory, resolve, sanitize_component, to_utc
from .scan import DirectoryWalkScanner

logger = logging.getLogger(__name__)


def event_fingerprint(event_type: str, entity_id: str, target_id: int) -> str:
    """Deterministic idempotency key of one fact/audience pair."""
    return fingerprint({"type": event_type, "entityId": str(entity_id), "targetId": int(target_id)})


def event_id_for(event_fingerprint_hex: str) -> str:
    return f"evt_{event_fingerprint_hex[:24]}"


def fingerprint_of(event: NotificationEvent) -> str:
    return event_fingerprint(event.type, event.entity_id, event.target_id)


@dataclass(frozen=True)
class EventFilter:
    """Listing criteria. With no dates, only today's partition is walked."""

    actor_id: int | None = None
    target_id: int | None = None
    type: str | None = None
    project_id: str | None = None
    since: date | None = None
    until: date | None = None

    def matches(self, event: NotificationEvent) -> bool:
        if self.actor_id is not None and event.actor_id != self.actor_id:
            return False
        if self.target_id is not None and event.target_id != self.target_id:
            return False
        if self.type is not None and event.type != self.type:
            return False
        if self.project_id is not None and event.project_id != str(self.project_id):
            return False
        return True


class NotificationEventStore:
    def __init__(
        self,
        data_root: Path,
        *,
        index: IndexMaintainer | None = None,
        locking: bool = True,
        lookback_days: int = 7,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.data_root = data_root
        self.scanner = DirectoryWalkScanner(data_root)
        self.index = index if index is not None else IndexMaintainer(data_root, locking=locking, scanner=self.scanner)
        self.locking = locking
        self.lookback_days = lookback_days
        self.clock = clock

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def path_of(self, event: NotificationEvent) -> PurePosixPath:
        return resolve(Family.NOTIFICATIONS, event.id, event.timestamp, parent_id=event.type)

    def append(self, event: NotificationEvent) -> PurePosixPath:
        """Write *event* to its partition and index its fingerprint.

        Raises:
            TransientIOFailure: If the event file or the index cannot be written.
        """
        relative = self.path_of(event)
        write_json(self.data_root / relative, event.to_document())
        self.index.upsert(Family.NOTIFICATIONS, fingerprint_of(event), relative, event.timestamp)
        logger.info("Appended %s event %s for target %s", event.type, event.id, event.target_id)
        return relative

    def exists(self, event_fingerprint_hex: str) -> bool:
        """Return True if an event with this fingerprint has been appended."""
        relative = self.index.lookup(Family.NOTIFICATIONS, event_fingerprint_hex)
        if relative is not None and (self.data_root / relative).is_file():
            return True

        today = self.clock().date()
        since = today - timedelta(days=self.lookback_days)
        for relative, event in self._walk(since, today, None):
            if fingerprint_of(event) == event_fingerprint_hex:
                self.index.upsert(Family.NOTIFICATIONS, event_fingerprint_hex, relative, event.timestamp)
                logger.info("Repaired notification fingerprint index for %s", event.id)
                return True
        return False

    def get(self, event_id: str) -> NotificationEvent:
        """Return one event by id (full walk of the event tree).

        Raises:
            NotFound: If no event has this id.
        """
        filename = f"{event_id}.json"
        for relative in self.scanner.iter_paths(Family.NOTIFICATIONS):
            if relative.name == filename:
                return self.parse_document(relative, self.scanner.read(relative))
        raise NotFound("notification", event_id)

    def list(self, criteria: EventFilter | None = None) -> list[NotificationEvent]:
        """Return matching events sorted by timestamp, walking only the requested days."""
        criteria = criteria if criteria is not None else EventFilter()
        today = self.clock().date()
        since = criteria.since or criteria.until or today
        until = criteria.until or criteria.since or today
        if since > until:
            raise ValueError(f"since ({since}) is after until ({until})")
        events = [event for _, event in self._walk(since, until, criteria.type) if criteria.matches(event)]
        return sorted(events, key=lambda event: (event.timestamp, event.id))

    def rebuild_fingerprint_index(self) -> int:
        def key_of(_relative: PurePosixPath, document: dict[str, Any]) -> str | None:
            try:
                return event_fingerprint(document["type"], document["entityId"], document["targetId"])
            except (KeyError, TypeError, ValueError):
                return None

        return self.index.rebuild(Family.NOTIFICATIONS, key_of=key_of)

    def _walk(
        self, since: date, until: date, event_type: str | None
    ) -> Iterator[tuple[PurePosixPath, NotificationEvent]]:
        day = since
        while day <= until:
            directory = day_directory(Family.NOTIFICATIONS, day)
            absolute = self.data_root / directory
            if absolute.is_dir():
                if event_type is not None:
                    type_dirs = [sanitize_component(event_type)]
                else:
                    type_dirs = sorted(p.name for p in absolute.iterdir() if p.is_dir())
                for type_dir in type_dirs:
                    for relative in self.scanner.iter_directory(directory / type_dir):
                        yield relative, self.parse_document(relative, self.scanner.read(relative))
            day += timedelta(days=1)

    def parse_document(self, relative: PurePosixPath, raw: Any) -> NotificationEvent:
        try:
            return NotificationEvent.model_validate(raw)
        except ValidationError as exc:
            raise CorruptDocument(self.data_root / relative, f"invalid notification event: {exc}") from exc

    # ------------------------------------------------------------------
    # Read-state projection
    # ------------------------------------------------------------------

    @property
    def read_states_path(self) -> Path:
        return self.data_root / READ_STATES

    def _read_states(self) -> dict[str, dict[str, str]]:
        raw = read_json(self.read_states_path, default={})
        if not isinstance(raw, dict) or not all(isinstance(value, dict) for value in raw.values()):
            raise CorruptDocument(self.read_states_path, "read states must map user ids to objects")
        return raw

    def mark_read(self, event_id: str, user_id: int) -> bool:
        """Record that *user_id* has read *event_id*. Returns False if it already was."""
        with locked_file(self.read_states_path, enabled=self.locking):
            states = self._read_states()
            per_user = states.setdefault(str(user_id), {})
            if event_id in per_user:
                return False
            per_user[event_id] = to_utc(self.clock()).isoformat()
            write_json(self.read_states_path, states)
        return True

    def is_read(self, event_id: str, user_id: int) -> bool:
        return event_id in self._read_states().get(str(user_id), {})

    def unread(self, user_id: int, criteria: EventFilter | None = None) -> list[NotificationEvent]:
        criteria = criteria if criteria is not None else EventFilter()
        if criteria.target_id is None:
            criteria = EventFilter(
                actor_id=criteria.actor_id,
                target_id=int(user_id),
                type=criteria.type,
                project_id=criteria.project_id,
                since=criteria.since,
                until=criteria.until,
            )
        seen = self._read_states().get(str(user_id), {})
        return [event for event in self.list(criteria) if event.id not in seen]
