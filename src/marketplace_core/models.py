from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .paths import Family, is_safe_component, to_utc

CENT = Decimal("0.01")


def to_money(value: float | int | str | Decimal) -> Decimal:
    """Convert an amount to a Decimal rounded half-up to cents."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


class ProjectStatus(str, Enum):
    ONGOING = "ongoing"
    PAUSED = "paused"
    COMPLETED = "completed"


class InvoicingMethod(str, Enum):
    MILESTONE = "milestone"
    COMPLETION = "completion"


class TaskStatus(str, Enum):
    ONGOING = "Ongoing"
    IN_REVIEW = "In review"
    APPROVED = "Approved"
    REJECTED = "Rejected"


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    DISCARDED = "discarded"


class InvoiceKind(str, Enum):
    TASK = "task"
    UPFRONT = "upfront"


class UserType(str, Enum):
    FREELANCER = "freelancer"
    COMMISSIONER = "commissioner"


class TransactionType(str, Enum):
    CREDIT = "credit"
    DEBIT = "debit"


INVOICE_STATUS_TRANSITIONS: dict[InvoiceStatus, set[InvoiceStatus]] = {
    InvoiceStatus.DRAFT: {InvoiceStatus.SENT, InvoiceStatus.DISCARDED},
    InvoiceStatus.SENT: {InvoiceStatus.PAID},
    InvoiceStatus.PAID: set(),
    InvoiceStatus.DISCARDED: set(),
}

TASK_STATUS_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.ONGOING: {TaskStatus.IN_REVIEW},
    TaskStatus.IN_REVIEW: {TaskStatus.APPROVED, TaskStatus.REJECTED},
    TaskStatus.REJECTED: {TaskStatus.IN_REVIEW},
    TaskStatus.APPROVED: set(),
}


class DocumentModel(BaseModel):
    """Base for every JSON document: camelCase on disk, legacy fields preserved."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        coerce_numbers_to_str=True,
    )

    def to_document(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class StoredEntity(DocumentModel):
    """A date-partitioned entity with a stable id and a creation timestamp."""

    family: ClassVar[Family]

    created_at: datetime
    updated_at: datetime | None = None
    archived_at: datetime | None = None

    @field_validator("created_at", "updated_at", "archived_at")
    @classmethod
    def _normalize_timestamps(cls, value: datetime | None) -> datetime | None:
        return None if value is None else to_utc(value)

    @model_validator(mode="after")
    def _check_path_keys(self) -> StoredEntity:
        for label, value in (("id", self.key), ("parent id", self.parent_key)):
            if value is not None and not is_safe_component(value):
                raise ValueError(f"{label} {value!r} must use only letters, digits, '.', '_' and '-'")
        return self

    @property
    def key(self) -> str:
        raise NotImplementedError

    @property
    def parent_key(self) -> str | None:
        return None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None


class Project(StoredEntity):
    family: ClassVar[Family] = Family.PROJECTS

    project_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    status: ProjectStatus = ProjectStatus.ONGOING
    invoicing_method: InvoicingMethod = InvoicingMethod.COMPLETION
    total_budget: float = Field(ge=0)
    upfront_commitment: float = Field(default=0, ge=0)
    paid_to_date: float = Field(default=0, ge=0)
    remaining_budget: float | None = None
    freelancer_id: int
    commissioner_id: int
    organization_id: int | None = None
    currency: str = "USD"
    paid_invoices: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_budget(self) -> Project:
        if self.invoicing_method is InvoicingMethod.MILESTONE and self.upfront_commitment > 0:
            raise ValueError("upfrontCommitment applies to completion invoicing only")
        if self.upfront_commitment > self.total_budget:
            raise ValueError("upfrontCommitment cannot exceed totalBudget")
        return self

    @property
    def key(self) -> str:
        return self.project_id


class Task(StoredEntity):
    family: ClassVar[Family] = Family.TASKS

    task_id: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    status: TaskStatus = TaskStatus.ONGOING
    completed: bool = False
    rejected: bool = False
    order: int = Field(default=0, ge=0)
    feedback_count: int = Field(default=0, ge=0)
    submitted_at: datetime | None = None
    approved_at: datetime | None = None
    rejected_at: datetime | None = None

    @model_validator(mode="after")
    def _check_status_flags(self) -> Task:
        if self.completed and self.rejected:
            raise ValueError("a task cannot be both completed and rejected")
        if self.completed and self.status is TaskStatus.ONGOING:
            raise ValueError("an Ongoing task cannot be completed")
        if self.status is TaskStatus.REJECTED and not self.rejected:
            raise ValueError("a Rejected task must have rejected=true")
        if self.status is TaskStatus.APPROVED and not self.completed:
            raise ValueError("an Approved task must have completed=true")
        return self

    @property
    def key(self) -> str:
        return self.task_id

    @property
    def parent_key(self) -> str:
        return self.project_id


class Milestone(DocumentModel):
    description: str
    amount: float = Field(ge=0)
    task_id: str | None = None


class PaymentDetails(DocumentModel):
    platform_fee: float = Field(ge=0)
    freelancer_amount: float = Field(ge=0)
    fee_rate: float
    processed_at: datetime


class Invoice(StoredEntity):
    family: ClassVar[Family] = Family.INVOICES

    invoice_number: str = Field(min_length=1)
    project_id: str = Field(min_length=1)
    freelancer_id: int
    commissioner_id: int
    status: InvoiceStatus = InvoiceStatus.DRAFT
    kind: InvoiceKind = InvoiceKind.TASK
    total_amount: float = Field(ge=0)
    milestones: list[Milestone] = Field(default_factory=list)
    payment_details: PaymentDetails | None = None
    sent_at: datetime | None = None
    paid_at: datetime | None = None

    @model_validator(mode="after")
    def _check_payment(self) -> Invoice:
        if self.status is InvoiceStatus.PAID and self.payment_details is None:
            raise ValueError("a paid invoice requires paymentDetails")
        if self.payment_details is not None:
            split = to_money(self.payment_details.platform_fee) + to_money(self.payment_details.freelancer_amount)
            if split != to_money(self.total_amount):
                raise ValueError(
                    f"platformFee + freelancerAmount ({split}) does not equal totalAmount ({self.total_amount})"
                )
        return self

    @property
    def key(self) -> str:
        return self.invoice_number

    @property
    def parent_key(self) -> str:
        return self.project_id

    @property
    def task_ids(self) -> set[str]:
        return {m.task_id for m in self.milestones if m.task_id is not None}


class User(StoredEntity):
    family: ClassVar[Family] = Family.USERS

    id: int
    name: str = Field(min_length=1)
    type: UserType
    display_name: str | None = None
    email: str | None = None
    organization_id: int | None = None

    @property
    def key(self) -> str:
        return str(self.id)

    @property
    def label(self) -> str:
        return self.display_name or self.name


class Organization(StoredEntity):
    family: ClassVar[Family] = Family.ORGANIZATIONS

    id: int
    name: str = Field(min_length=1)
    logo: str | None = None
    contact_person_id: int | None = None

    @property
    def key(self) -> str:
        return str(self.id)


class Gig(StoredEntity):
    family: ClassVar[Family] = Family.GIGS

    id: int
    title: str = Field(min_length=1)
    commissioner_id: int
    organization_id: int | None = None
    status: str = "Available"
    lower_budget: float | None = Field(default=None, ge=0)
    upper_budget: float | None = Field(default=None, ge=0)

    @property
    def key(self) -> str:
        return str(self.id)


class WalletTransaction(DocumentModel):
    transaction_id: str
    user_id: int
    type: TransactionType
    amount: float = Field(gt=0)
    project_id: str | None = None
    invoice_number: str
    date: datetime
    source: str = "invoice"

    @field_validator("date")
    @classmethod
    def _normalize_date(cls, value: datetime) -> datetime:
        return to_utc(value)


class NotificationEvent(DocumentModel):
    """Immutable notification fact; read state lives in a separate projection."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime
    type: str
    actor_id: int
    target_id: int
    entity_type: str
    entity_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return to_utc(value)

    @property
    def project_id(self) -> str | None:
        value = self.context.get("projectId", self.metadata.get("projectId"))
        return None if value is None else str(value)


class PaymentFact(BaseModel):
    """A bare payment: who paid whom, for which invoice, how much."""

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    actor_id: int
    target_id: int
    project_id: str
    invoice_number: str
    amount: float = Field(gt=0)


class EnrichedPayment(BaseModel):
    """A payment fact joined with display-ready context."""

    model_config = ConfigDict(frozen=True, coerce_numbers_to_str=True)

    project_id: str
    invoice_number: str
    amount: float = Field(gt=0)
    commissioner_id: int
    freelancer_id: int
    freelancer_name: str | None = None
    organization_name: str | None = None
    organization_logo: str | None = None
    project_title: str | None = None
    task_title: str | None = None
    remaining_budget: float | None = None
