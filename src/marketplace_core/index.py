"""Per-family ``id -> partition path`` index files.

Each family keeps one small JSON object at ``<data>/<family>-index.json``::

    {"P-100": {"path": "projects/2025/07/01/P-100/project.json",
               "createdAt": "2025-07-01T09:30:00Z"}}

Index writes take an advisory lock on the index file so concurrent upserts of
different ids do not drop each other. :meth:`IndexMaintainer.rebuild` regenerates
an index from the partition tree and is the repair path for any drift.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any, Callable

from pydantic import ValidationError

from .errors import CorruptDocument
from .fs_json import locked_file, read_json, write_json
from .models import DocumentModel
from .paths import SCHEMES, Family, index_path, to_utc
from .scan import DirectoryWalkScanner, DocumentScanner

logger = logging.getLogger(__name__)

KeyFunction = Callable[[PurePosixPath, dict[str, Any]], str | None]


class IndexEntry(DocumentModel):
    path: str
    created_at: datetime


def _default_key(family: Family) -> KeyFunction:
    scheme = SCHEMES[family]

    def key_of(relative: PurePosixPath, _document: dict[str, Any]) -> str | None:
        if "{id}" in scheme.document:
            return scheme.id_from_filename(relative.name)
        return relative.parent.name

    return key_of


def _created_at(document: dict[str, Any]) -> datetime | None:
    raw = document.get("createdAt") or document.get("timestamp")
    if raw is None:
        return None
    try:
        return to_utc(raw)
    except (TypeError, ValueError):
        return None


class IndexMaintainer:
    def __init__(
        self,
        data_root: Path,
        *,
        locking: bool = True,
        scanner: DocumentScanner | None = None,
    ) -> None:
        self.data_root = data_root
        self.locking = locking
        self.scanner = scanner if scanner is not None else DirectoryWalkScanner(data_root)

    def path_for(self, family: Family) -> Path:
        return index_path(self.data_root, family)

    def load(self, family: Family) -> dict[str, IndexEntry]:
        """Return the whole index for *family* (empty when the file is missing).

        Raises:
            CorruptDocument: If the index file is unparseable or malformed.
        """
        path = self.path_for(family)
        raw = read_json(path, default={})
        if not isinstance(raw, dict):
            raise CorruptDocument(path, "index must be a JSON object")
        try:
            return {str(key): IndexEntry.model_validate(value) for key, value in raw.items()}
        except ValidationError as exc:
            raise CorruptDocument(path, f"malformed index entry: {exc}") from exc

    def lookup(self, family: Family, entity_id: str) -> PurePosixPath | None:
        entry = self.load(family).get(str(entity_id))
        return PurePosixPath(entry.path) if entry is not None else None

    def upsert(self, family: Family, entity_id: str, path: PurePosixPath, created_at: datetime) -> bool:
        """Record *entity_id* at *path*.

        Returns:
            ``True`` if the index changed, ``False`` if the entry was already
            identical (the index file is then left untouched).
        """
        entry = IndexEntry(path=path.as_posix(), created_at=to_utc(created_at))
        index_file = self.path_for(family)
        with locked_file(index_file, enabled=self.locking):
            entries = self.load(family)
            if entries.get(str(entity_id)) == entry:
                return False
            entries[str(entity_id)] = entry
            self._write(family, entries)
        logger.debug("Indexed %s %s -> %s", family.value, entity_id, entry.path)
        return True

    def remove(self, family: Family, entity_id: str) -> bool:
        index_file = self.path_for(family)
        with locked_file(index_file, enabled=self.locking):
            entries = self.load(family)
            if entries.pop(str(entity_id), None) is None:
                return False
            self._write(family, entries)
        return True

    def rebuild(self, family: Family, *, key_of: KeyFunction | None = None) -> int:
        """Regenerate the index for *family* from a full directory walk.

        Documents that cannot be read or carry no creation timestamp are
        skipped with a warning; the migration validator reports them.

        Returns:
            Number of entries in the rebuilt index.
        """
        key_function = key_of if key_of is not None else _default_key(family)
        entries: dict[str, IndexEntry] = {}
        for relative in self.scanner.iter_paths(family):
            try:
                document = self.scanner.read(relative)
            except CorruptDocument as exc:
                logger.warning("Skipping unreadable document during %s index rebuild: %s", family.value, exc)
                continue
            if not isinstance(document, dict):
                logger.warning("Skipping non-object document %s", relative)
                continue
            key = key_function(relative, document)
            created_at = _created_at(document)
            if key is None or created_at is None:
                logger.warning("Skipping %s: missing id or creation timestamp", relative)
                continue
            if key in entries:
                logger.warning(
                    "Duplicate %s id %s at %s and %s; keeping the first",
                    family.value,
                    key,
                    entries[key].path,
                    relative,
                )
                continue
            entries[key] = IndexEntry(path=relative.as_posix(), created_at=created_at)

        with locked_file(self.path_for(family), enabled=self.locking):
            self._write(family, entries)
        logger.info("Rebuilt %s index with %d entries", family.value, len(entries))
        return len(entries)

    def _write(self, family: Family, entries: dict[str, IndexEntry]) -> None:
        payload = {key: entries[key].to_document() for key in sorted(entries)}
        write_json(self.path_for(family), payload)
