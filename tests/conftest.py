from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Callable

import pytest

from marketplace_core.models import (
    InvoicingMethod,
    Organization,
    Project,
    Task,
    TaskStatus,
    User,
    UserType,
)
from marketplace_core.services import Services, build_services
from marketplace_core.settings import RuntimeSettings
from marketplace_core.storage import StorageClient

FIXED_NOW = datetime(2025, 7, 1, 9, 30, tzinfo=UTC)
COMMISSIONER_ID = 32
FREELANCER_ID = 31
ORGANIZATION_ID = 10


class FrozenClock:
    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def data_root(tmp_path: Path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def settings() -> RuntimeSettings:
    return RuntimeSettings()


@pytest.fixture
def services(data_root: Path, clock: FrozenClock, settings: RuntimeSettings) -> Services:
    return build_services(settings, data_root, clock=clock, sleep=lambda _seconds: None)


@pytest.fixture
def storage(services: Services) -> StorageClient:
    return services.storage


@pytest.fixture
def seed_people(storage: StorageClient, clock: FrozenClock) -> Callable[..., None]:
    def _seed(*, with_organization: bool = True) -> None:
        if not storage.users.exists(COMMISSIONER_ID):
            storage.users.create(
                User(
                    id=COMMISSIONER_ID,
                    name="Nadia Okafor",
                    type=UserType.COMMISSIONER,
                    organization_id=ORGANIZATION_ID,
                    created_at=clock(),
                )
            )
        if not storage.users.exists(FREELANCER_ID):
            storage.users.create(
                User(id=FREELANCER_ID, name="Tobi Adeyemi", type=UserType.FREELANCER, created_at=clock())
            )
        if with_organization and not storage.organizations.exists(ORGANIZATION_ID):
            storage.organizations.create(
                Organization(
                    id=ORGANIZATION_ID,
                    name="Lagos Creative Studio",
                    logo="/logos/lagos.png",
                    contact_person_id=COMMISSIONER_ID,
                    created_at=clock(),
                )
            )

    return _seed


@pytest.fixture
def seed_project(
    storage: StorageClient, clock: FrozenClock, seed_people: Callable[..., None]
) -> Callable[..., Project]:
    """Create users, the organization, a project and one task per given status."""

    def _seed(
        project_id: str = "P-100",
        *,
        method: InvoicingMethod = InvoicingMethod.COMPLETION,
        budget: float = 5000,
        upfront: float | None = None,
        tasks: tuple[TaskStatus, ...] = (TaskStatus.APPROVED, TaskStatus.ONGOING),
        with_organization: bool = True,
    ) -> Project:
        seed_people(with_organization=with_organization)
        project = storage.projects.create(
            Project(
                project_id=project_id,
                title="Brand refresh",
                invoicing_method=method,
                total_budget=budget,
                upfront_commitment=upfront if upfront is not None else (600 if method is InvoicingMethod.COMPLETION else 0),
                freelancer_id=FREELANCER_ID,
                commissioner_id=COMMISSIONER_ID,
                organization_id=ORGANIZATION_ID,
                created_at=clock(),
            )
        )
        for position, status in enumerate(tasks, start=1):
            storage.tasks.create(
                Task(
                    task_id=f"{project_id}-T{position}",
                    project_id=project_id,
                    title=f"Deliverable {position}",
                    status=status,
                    completed=status is TaskStatus.APPROVED,
                    rejected=status is TaskStatus.REJECTED,
                    order=position,
                    created_at=clock(),
                )
            )
        return project

    return _seed
