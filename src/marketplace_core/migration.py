"""Legacy flat-file layout to partitioned layout migration.

The legacy layout keeps one JSON array per family at the data root
(``projects.json``, ``project-tasks.json``, ...). :meth:`MigrationService.migrate`
copies records that are not in the partitioned tree yet and is safe to re-run;
:meth:`MigrationService.analyze` and :meth:`MigrationService.validate` only
report.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Any

from .errors import CorruptDocument, StoreError, ValidationFailure
from .events import NotificationEventStore, fingerprint_of
from .fs_json import read_json
from .models import StoredEntity
from .paths import SCHEMES, Family, legacy_path
from .report import Report
from .storage import DocumentCollection, StorageClient

logger = logging.getLogger(__name__)

ENTITY_FAMILIES = (
    Family.USERS,
    Family.ORGANIZATIONS,
    Family.PROJECTS,
    Family.TASKS,
    Family.INVOICES,
    Family.GIGS,
)

# Bookkeeping fields that may legitimately differ between layouts.
_IGNORED_FIELDS = {"updatedAt"}


class MigrationService:
    def __init__(self, storage: StorageClient, events: NotificationEventStore | None = None) -> None:
        self.storage = storage
        self.events = events

    # ------------------------------------------------------------------
    # Legacy layout
    # ------------------------------------------------------------------

    def load_legacy(self, family: Family) -> list[Any]:
        """Return the raw records of *family*'s legacy file (empty when absent).

        Raises:
            CorruptDocument: If the file is unparseable or not a JSON array.
        """
        path = legacy_path(self.storage.data_root, family)
        if path is None:
            return []
        raw = read_json(path, default=[])
        if not isinstance(raw, list):
            raise CorruptDocument(path, "legacy file must contain a JSON array")
        return raw

    def _legacy_entities(self, family: Family, report: Report) -> dict[str, StoredEntity]:
        collection = self.storage.collection(family)
        legacy_file = SCHEMES[family].legacy_file
        try:
            records = self.load_legacy(family)
        except CorruptDocument as exc:
            report.error(str(legacy_file), str(exc))
            return {}
        entities: dict[str, StoredEntity] = {}
        for position, record in enumerate(records):
            location = f"{legacy_file}[{position}]"
            if not isinstance(record, dict):
                report.error(location, "record is not a JSON object")
                continue
            try:
                entity = collection.validate(record)
            except ValidationFailure as exc:
                report.error(location, str(exc))
                continue
            if entity.key in entities:
                report.warning(location, f"duplicate {family.value} id {entity.key}; keeping the first")
                continue
            entities[entity.key] = entity
        return entities

    def _partitioned_entities(
        self, collection: DocumentCollection[Any], report: Report
    ) -> dict[str, tuple[PurePosixPath, StoredEntity]]:
        entities: dict[str, tuple[PurePosixPath, StoredEntity]] = {}
        for relative in collection.scanner.iter_paths(collection.family):
            try:
                entity = collection.parse_document(relative, collection.scanner.read(relative))
            except CorruptDocument as exc:
                report.error(relative.as_posix(), exc.reason)
                continue
            entities.setdefault(entity.key, (relative, entity))
        return entities

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def analyze(self) -> Report:
        """Compare the legacy and partitioned layouts without writing anything."""
        report = Report("Migration analysis")
        for family in ENTITY_FAMILIES:
            collection = self.storage.collection(family)
            legacy = self._legacy_entities(family, report)
            partitioned = self._partitioned_entities(collection, report)
            report.count(f"{family.value} legacy", len(legacy))
            report.count(f"{family.value} partitioned", len(partitioned))
            for key, entity in legacy.items():
                location = f"{family.value}:{key}"
                if key not in partitioned:
                    report.warning(location, "present in legacy layout only")
                    report.count(f"{family.value} pending")
                    continue
                differing = self._diff(entity, partitioned[key][1])
                if differing:
                    report.warning(location, f"fields differ between layouts: {', '.join(differing)}")
            for key in sorted(set(partitioned) - set(legacy)):
                report.warning(f"{family.value}:{key}", "present in partitioned layout only")
        return report

    def migrate(self, *, dry_run: bool = False) -> Report:
        """Write every legacy record missing from the partitioned layout.

        Records already present (index first, then a directory walk) are
        skipped, so a second run writes nothing. Invalid records are reported
        and left alone.
        """
        report = Report("Migration dry run" if dry_run else "Migration")
        for family in ENTITY_FAMILIES:
            collection = self.storage.collection(family)
            for key, entity in self._legacy_entities(family, report).items():
                if collection.locate(key) is not None:
                    report.count("skipped")
                    continue
                if dry_run:
                    report.count("would write")
                    logger.info("Would migrate %s %s to %s", family.value, key, collection.path_of(entity))
                    continue
                try:
                    collection.save(entity)
                except StoreError as exc:
                    report.error(f"{family.value}:{key}", f"write failed: {exc}")
                    continue
                report.count("written")
                logger.info("Migrated %s %s", family.value, key)
        logger.info("%s finished: %s", report.title, report.counts)
        return report

    def validate(self) -> Report:
        """Check every index entry against the partitioned tree.

        Reports stale entries, entries whose derived path disagrees with the
        stored one, unindexed documents and documents missing required fields.
        """
        report = Report("Migration validation")
        for family in ENTITY_FAMILIES:
            self._validate_family(self.storage.collection(family), report)
        if self.events is not None:
            self._validate_fingerprints(self.events, report)
        return report

    def _validate_family(self, collection: DocumentCollection[Any], report: Report) -> None:
        family = collection.family
        try:
            entries = self.storage.index.load(family)
        except CorruptDocument as exc:
            report.error(f"{family.value}-index", str(exc))
            return
        report.count(f"{family.value} indexed", len(entries))
        partitioned = self._partitioned_entities(collection, report)

        for key, entry in sorted(entries.items()):
            location = f"{family.value}:{key}"
            if key not in partitioned:
                absolute = self.storage.data_root / entry.path
                if not absolute.is_file():
                    report.error(location, f"stale index entry: {entry.path} does not exist")
                else:
                    report.error(location, f"index points at {entry.path}, which holds another id")
                continue
            relative, entity = partitioned[key]
            if relative.as_posix() != entry.path:
                report.error(location, f"index path {entry.path} differs from stored path {relative}")
            derived = collection.path_of(entity)
            if derived != relative:
                report.error(location, f"derived path {derived} differs from stored path {relative}")

        for key in sorted(set(partitioned) - set(entries)):
            report.error(f"{family.value}:{key}", "document has no index entry")

    def _validate_fingerprints(self, events: NotificationEventStore, report: Report) -> None:
        try:
            entries = self.storage.index.load(Family.NOTIFICATIONS)
        except CorruptDocument as exc:
            report.error("notifications-index", str(exc))
            return
        report.count("notifications indexed", len(entries))
        for key, entry in sorted(entries.items()):
            location = f"notifications:{key[:12]}"
            relative = PurePosixPath(entry.path)
            try:
                raw = read_json(self.storage.data_root / relative)
                if raw is None:
                    report.error(location, f"stale index entry: {entry.path} does not exist")
                    continue
                event = events.parse_document(relative, raw)
            except CorruptDocument as exc:
                report.error(location, exc.reason)
                continue
            if fingerprint_of(event) != key:
                report.error(location, f"{entry.path} does not match its fingerprint")

    @staticmethod
    def _diff(left: StoredEntity, right: StoredEntity) -> list[str]:
        a = {k: v for k, v in left.to_document().items() if k not in _IGNORED_FIELDS}
        b = {k: v for k, v in right.to_document().items() if k not in _IGNORED_FIELDS}
        return sorted(key for key in set(a) | set(b) if a.get(key) != b.get(key))
