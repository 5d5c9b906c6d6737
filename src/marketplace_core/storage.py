"""Storage engine: CRUD over date-partitioned JSON documents.

Every read goes back to disk; nothing is cached between calls. Lookups by id
go through the family index and fall back to a directory walk when the index
is missing the id or points at a file that no longer exists, repairing the
index entry on the way.

Concurrency contract: ``update`` holds the document's advisory lock for its
read-modify-write and returns the value that was actually written. ``save``
replaces a whole document and is last-writer-wins; callers must not assume
their version survived a concurrent writer.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Generic, Iterator, TypeVar

from pydantic import ValidationError

from .errors import AlreadyExists, CorruptDocument, NotFound, ValidationFailure
from .fs_json import locked_file, read_json, write_json
from .index import IndexMaintainer
from .models import (
    Gig,
    Invoice,
    InvoiceStatus,
    Organization,
    Project,
    StoredEntity,
    Task,
    User,
)
from .paths import SCHEMES, Family, resolve
from .scan import DirectoryWalkScanner, DocumentScanner
from .wallet import WalletLedger

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=StoredEntity)
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


class DocumentCollection(Generic[ModelT]):
    """CRUD operations for one entity family."""

    def __init__(
        self,
        model: type[ModelT],
        data_root: Path,
        index: IndexMaintainer,
        scanner: DocumentScanner,
        *,
        locking: bool = True,
        clock: Clock = utc_now,
    ) -> None:
        self.model = model
        self.family: Family = model.family
        self.data_root = data_root
        self.index = index
        self.scanner = scanner
        self.locking = locking
        self.clock = clock

    # ------------------------------------------------------------------
    # Validation and paths
    # ------------------------------------------------------------------

    def validate(self, payload: ModelT | dict[str, Any]) -> ModelT:
        """Validate *payload* against the family model.

        Raises:
            ValidationFailure: If required fields are missing or invariants fail.
        """
        data = payload.to_document() if isinstance(payload, StoredEntity) else payload
        try:
            return self.model.model_validate(data)
        except ValidationError as exc:
            raise ValidationFailure(f"{self.family.value} failed validation: {exc}") from exc

    def path_of(self, entity: ModelT) -> PurePosixPath:
        return resolve(self.family, entity.key, entity.created_at, parent_id=entity.parent_key)

    def _absolute(self, relative: PurePosixPath) -> Path:
        return self.data_root / relative

    def parse_document(self, relative: PurePosixPath, raw: Any) -> ModelT:
        try:
            return self.model.model_validate(raw)
        except ValidationError as exc:
            raise CorruptDocument(self._absolute(relative), f"failed validation: {exc}") from exc

    def _id_of(self, relative: PurePosixPath) -> str:
        scheme = SCHEMES[self.family]
        if "{id}" in scheme.document:
            return scheme.id_from_filename(relative.name) or ""
        return relative.parent.name

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def locate(self, entity_id: object) -> PurePosixPath | None:
        """Return the relative path of *entity_id*, or ``None`` if it does not exist."""
        key = str(entity_id)
        relative = self.index.lookup(self.family, key)
        if relative is not None:
            if self._absolute(relative).is_file():
                return relative
            logger.warning("Stale %s index entry for %s -> %s", self.family.value, key, relative)

        for candidate in self.scanner.iter_paths(self.family):
            if self._id_of(candidate) != key:
                continue
            entity = self.parse_document(candidate, self.scanner.read(candidate))
            if entity.key == key:
                self.index.upsert(self.family, key, candidate, entity.created_at)
                logger.info("Repaired %s index entry for %s", self.family.value, key)
                return candidate
        return None

    def find(self, entity_id: object) -> ModelT | None:
        """Return the entity, or ``None`` when it does not exist."""
        relative = self.locate(entity_id)
        if relative is None:
            return None
        raw = read_json(self._absolute(relative))
        if raw is None:
            return None
        return self.parse_document(relative, raw)

    def read(self, entity_id: object) -> ModelT:
        """Return the entity.

        Raises:
            NotFound: If the entity does not exist.
            CorruptDocument: If its document cannot be parsed or validated.
        """
        entity = self.find(entity_id)
        if entity is None:
            raise NotFound(self.family.value, str(entity_id))
        return entity

    def exists(self, entity_id: object) -> bool:
        return self.locate(entity_id) is not None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @contextmanager
    def locked(self, entity: ModelT) -> Iterator[None]:
        """Hold the advisory lock of *entity*'s document."""
        with locked_file(self._absolute(self.path_of(entity)), enabled=self.locking):
            yield

    def create(self, payload: ModelT | dict[str, Any]) -> ModelT:
        """Persist a new entity and index it.

        Raises:
            ValidationFailure: If the payload is invalid (nothing is written).
            AlreadyExists: If an entity with the same id is already stored, or
                another document already occupies its partition path.
        """
        entity = self.validate(payload)
        if self.locate(entity.key) is not None:
            raise AlreadyExists(f"{self.family.value} already exists: {entity.key}")
        relative = self.path_of(entity)
        if self._absolute(relative).exists():
            raise AlreadyExists(f"{self.family.value} {entity.key}: {relative} is already occupied")
        self._write(entity)
        logger.info("Created %s %s", self.family.value, entity.key)
        return entity

    def save(self, payload: ModelT | dict[str, Any]) -> ModelT:
        """Write a whole entity, creating or replacing it (last writer wins).

        Raises:
            ValidationFailure: If the payload is invalid or would move an
                existing entity to a different partition.
        """
        entity = self.validate(payload)
        existing = self.locate(entity.key)
        if existing is not None and existing != self.path_of(entity):
            raise ValidationFailure(
                f"{self.family.value} {entity.key} is stored at {existing}; "
                f"createdAt and parent keys are immutable"
            )
        self._write(entity)
        return entity

    def update(
        self,
        entity_id: object,
        patch: dict[str, Any] | Callable[[ModelT], dict[str, Any]],
        *,
        lock: bool = True,
    ) -> ModelT:
        """Apply *patch* to a stored entity and return the post-write value.

        Patch keys may use field names or their camelCase aliases. A callable
        patch receives the entity as read under the lock; an empty patch
        leaves the document untouched. The id, parent key and ``createdAt``
        cannot change.

        Raises:
            NotFound: If the entity does not exist.
            ValidationFailure: If the patched entity is invalid.
        """
        current = self.read(entity_id)
        with locked_file(self._absolute(self.path_of(current)), enabled=self.locking and lock):
            current = self.read(entity_id)
            changes = patch(current) if callable(patch) else patch
            if not changes:
                return current
            merged = current.model_dump(mode="python", by_alias=True)
            merged.update(self._alias_keys(changes))
            merged["updatedAt"] = self.clock()
            updated = self.validate(merged)
            if (updated.key, updated.parent_key, updated.created_at) != (
                current.key,
                current.parent_key,
                current.created_at,
            ):
                raise ValidationFailure(f"{self.family.value} {current.key}: id, parent and createdAt are immutable")
            self._write(updated, index=False)
        return updated

    def delete(self, entity_id: object) -> ModelT:
        """Archive an entity. Documents are never unlinked."""
        entity = self.read(entity_id)
        if entity.is_archived:
            return entity
        return self.update(entity_id, self._archive_patch(entity))

    def _archive_patch(self, entity: ModelT) -> dict[str, Any]:
        return {"archived_at": self.clock()}

    def _alias_keys(self, patch: dict[str, Any]) -> dict[str, Any]:
        fields = self.model.model_fields
        aliased: dict[str, Any] = {}
        for key, value in patch.items():
            field = fields.get(key)
            aliased[field.alias if field is not None and field.alias else key] = value
        return aliased

    def _write(self, entity: ModelT, *, index: bool = True) -> None:
        relative = self.path_of(entity)
        write_json(self._absolute(relative), entity.to_document())
        if index:
            self.index.upsert(self.family, entity.key, relative, entity.created_at)

    # ------------------------------------------------------------------
    # Aggregate reads
    # ------------------------------------------------------------------

    def iter_all(self, *, include_archived: bool = False) -> Iterator[ModelT]:
        for relative in self.scanner.iter_paths(self.family):
            entity = self.parse_document(relative, self.scanner.read(relative))
            if include_archived or not entity.is_archived:
                yield entity

    def list_all(self, *, include_archived: bool = False) -> list[ModelT]:
        """Return every entity of the family via a full directory walk."""
        return list(self.iter_all(include_archived=include_archived))

    def rebuild_index(self) -> int:
        """Regenerate the family index, keyed by each parsed document's own id."""

        def key_of(relative: PurePosixPath, document: dict[str, Any]) -> str | None:
            try:
                return self.parse_document(relative, document).key
            except CorruptDocument:
                return None

        return self.index.rebuild(self.family, key_of=key_of)


class InvoiceCollection(DocumentCollection[Invoice]):
    """Invoices are financial records: only drafts can be removed, by discarding them."""

    def _archive_patch(self, entity: Invoice) -> dict[str, Any]:
        if entity.status is not InvoiceStatus.DRAFT:
            raise ValidationFailure(
                f"invoice {entity.invoice_number} is {entity.status.value}; only drafts can be discarded"
            )
        return {"status": InvoiceStatus.DISCARDED, "archived_at": self.clock()}


class StorageClient:
    """Every storage family behind one constructor-injected object."""

    def __init__(self, data_root: Path, *, locking: bool = True, clock: Clock = utc_now) -> None:
        self.data_root = data_root
        self.locking = locking
        self.clock = clock
        self.scanner = DirectoryWalkScanner(data_root)
        self.index = IndexMaintainer(data_root, locking=locking, scanner=self.scanner)
        common: dict[str, Any] = {"locking": locking, "clock": clock}
        self.projects = DocumentCollection(Project, data_root, self.index, self.scanner, **common)
        self.tasks = DocumentCollection(Task, data_root, self.index, self.scanner, **common)
        self.invoices = InvoiceCollection(Invoice, data_root, self.index, self.scanner, **common)
        self.gigs = DocumentCollection(Gig, data_root, self.index, self.scanner, **common)
        self.users = DocumentCollection(User, data_root, self.index, self.scanner, **common)
        self.organizations = DocumentCollection(Organization, data_root, self.index, self.scanner, **common)
        self.wallet = WalletLedger(data_root, locking=locking, clock=clock)

    def collection(self, family: Family) -> DocumentCollection[Any]:
        collections: dict[Family, DocumentCollection[Any]] = {
            Family.PROJECTS: self.projects,
            Family.TASKS: self.tasks,
            Family.INVOICES: self.invoices,
            Family.GIGS: self.gigs,
            Family.USERS: self.users,
            Family.ORGANIZATIONS: self.organizations,
        }
        try:
            return collections[family]
        except KeyError:
            raise ValueError(f"{family.value} is not an entity collection") from None

    @property
    def collections(self) -> list[DocumentCollection[Any]]:
        return [self.projects, self.tasks, self.invoices, self.gigs, self.users, self.organizations]

    def tasks_for_project(self, project_id: str) -> list[Task]:
        tasks = [task for task in self.tasks.iter_all() if task.project_id == str(project_id)]
        return sorted(tasks, key=lambda task: (task.order, task.task_id))

    def invoices_for_project(self, project_id: str, *, include_archived: bool = True) -> list[Invoice]:
        invoices = [
            invoice
            for invoice in self.invoices.iter_all(include_archived=include_archived)
            if invoice.project_id == str(project_id)
        ]
        return sorted(invoices, key=lambda invoice: (invoice.created_at, invoice.invoice_number))
