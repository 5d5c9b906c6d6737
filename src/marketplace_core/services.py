from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable

from .events import NotificationEventStore
from .gateway import PaymentGateway
from .invoicing import ReconciliationService
from .migration import MigrationService
from .retry import RetryPolicy
from .settings import RuntimeSettings
from .storage import StorageClient
from .tasks import TaskWorkflow


@dataclass(frozen=True)
class Services:
    """Every service wired to one storage client. Nothing here is a module-level singleton."""

    settings: RuntimeSettings
    storage: StorageClient
    events: NotificationEventStore
    gateway: PaymentGateway
    reconciliation: ReconciliationService
    tasks: TaskWorkflow
    migration: MigrationService


def build_services(
    settings: RuntimeSettings,
    data_root: Path,
    *,
    clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    sleep: Callable[[float], None] | None = None,
) -> Services:
    storage = StorageClient(data_root, locking=settings.index_locking, clock=clock)
    events = NotificationEventStore(
        data_root,
        index=storage.index,
        locking=settings.index_locking,
        lookback_days=settings.notification_lookback_days,
        clock=clock,
    )
    gateway = PaymentGateway(storage, events, disabled=settings.payment_notifications_disabled, clock=clock)
    extra = {"sleep": sleep} if sleep is not None else {}
    reconciliation = ReconciliationService(
        storage,
        gateway,
        retry_policy=RetryPolicy.from_settings(settings),
        clock=clock,
        **extra,
    )
    return Services(
        settings=settings,
        storage=storage,
        events=events,
        gateway=gateway,
        reconciliation=reconciliation,
        tasks=TaskWorkflow(storage, clock=clock),
        migration=MigrationService(storage, events),
    )
