from importlib.metadata import version

from .errors import (
    AlreadyExists,
    CorruptDocument,
    DuplicateFact,
    IllegalTransition,
    NotFound,
    PaymentStepFailed,
    RetryExhausted,
    StoreError,
    TransientIOFailure,
    ValidationFailure,
)
from .events import EventFilter, NotificationEventStore, event_fingerprint
from .gateway import PaymentGateway
from .index import IndexMaintainer
from .invoicing import FeeSchedule, FeeSplit, PaymentResult, ReconciliationService, StorefrontSale, split_fee
from .migration import MigrationService
from .models import (
    EnrichedPayment,
    Gig,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    InvoicingMethod,
    Milestone,
    NotificationEvent,
    Organization,
    PaymentFact,
    Project,
    ProjectStatus,
    Task,
    TaskStatus,
    User,
    UserType,
    WalletTransaction,
)
from .paths import Family, resolve
from .report import Report, ValidationIssue
from .retry import RetryPolicy, run_with_retry
from .services import Services, build_services
from .settings import RuntimeSettings, load_settings
from .storage import DocumentCollection, StorageClient
from .tasks import TaskWorkflow
from .wallet import WalletLedger


def get_version() -> str:
    try:
        return version("marketplace-core")
    except Exception:
        return "0.0.0"


__all__ = [
    "AlreadyExists",
    "CorruptDocument",
    "DocumentCollection",
    "DuplicateFact",
    "EnrichedPayment",
    "EventFilter",
    "Family",
    "FeeSchedule",
    "FeeSplit",
    "Gig",
    "IllegalTransition",
    "IndexMaintainer",
    "Invoice",
    "InvoiceKind",
    "InvoiceStatus",
    "InvoicingMethod",
    "MigrationService",
    "Milestone",
    "NotFound",
    "NotificationEvent",
    "NotificationEventStore",
    "Organization",
    "PaymentFact",
    "PaymentGateway",
    "PaymentResult",
    "PaymentStepFailed",
    "Project",
    "ProjectStatus",
    "ReconciliationService",
    "Report",
    "RetryExhausted",
    "RetryPolicy",
    "RuntimeSettings",
    "Services",
    "StorageClient",
    "StoreError",
    "StorefrontSale",
    "Task",
    "TaskStatus",
    "TaskWorkflow",
    "TransientIOFailure",
    "User",
    "UserType",
    "ValidationFailure",
    "ValidationIssue",
    "WalletLedger",
    "WalletTransaction",
    "build_services",
    "event_fingerprint",
    "get_version",
    "load_settings",
    "resolve",
    "run_with_retry",
    "split_fee",
]
