"""Turns bare payment facts into two audience-specific notification events."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, Callable

from .errors import StoreError
from .events import NotificationEventStore, event_fingerprint, event_id_for
from .models import EnrichedPayment, NotificationEvent, PaymentFact, to_money
from .storage import StorageClient

logger = logging.getLogger(__name__)

PAYMENT_SENT = "milestone_payment_sent"
PAYMENT_RECEIVED = "milestone_payment_received"


def format_amount(value: float | Decimal) -> str:
    return f"${to_money(value):,.2f}"


def payment_entity_id(project_id: str, invoice_number: str) -> str:
    return f"{project_id}_{invoice_number}"


@dataclass(frozen=True)
class Audience:
    """One side of a payment: who is told, by whom, with which event type."""

    name: str
    event_type: str
    target_id: int
    actor_id: int
    title: str | None
    message: str | None

    @property
    def degraded(self) -> bool:
        return self.title is None or self.message is None


def _payer_side(payment: EnrichedPayment) -> Audience:
    title = message = None
    if payment.freelancer_name:
        amount = format_amount(payment.amount)
        title = f"You just paid {payment.freelancer_name} {amount}"
        message = (
            f"You just paid {payment.freelancer_name} {amount} for submitting "
            f"{payment.task_title or 'their work'} for {payment.project_title or 'your project'}."
        )
        if payment.remaining_budget is not None:
            message += f" Remaining budget: {format_amount(payment.remaining_budget)}."
    return Audience(
        name="commissioner",
        event_type=PAYMENT_SENT,
        target_id=payment.commissioner_id,
        actor_id=payment.freelancer_id,
        title=title,
        message=message,
    )


def _recipient_side(payment: EnrichedPayment) -> Audience:
    title = message = None
    if payment.organization_name:
        amount = format_amount(payment.amount)
        title = f"{payment.organization_name} paid {amount}"
        message = (
            f"{payment.organization_name} has paid {amount} for your recent "
            f"{payment.task_title or 'submission'} for {payment.project_title or 'their project'}."
        )
        if payment.remaining_budget is not None:
            message += f" This project has a remaining budget of {format_amount(payment.remaining_budget)}."
    return Audience(
        name="freelancer",
        event_type=PAYMENT_RECEIVED,
        target_id=payment.freelancer_id,
        actor_id=payment.commissioner_id,
        title=title,
        message=message,
    )


class PaymentGateway:
    def __init__(
        self,
        storage: StorageClient,
        events: NotificationEventStore,
        *,
        disabled: bool = False,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.storage = storage
        self.events = events
        self.disabled = disabled
        self.clock = clock

    def enrich(self, fact: PaymentFact) -> EnrichedPayment | None:
        """Join *fact* with names, organization and budget context.

        The fact's actor is the paying commissioner and its target is the
        freelancer being paid.

        Returns:
            The enriched payment, or ``None`` when the project, either user or
            the organization cannot be found. Misses are logged, not raised.
        """
        project = self.storage.projects.find(fact.project_id)
        if project is None:
            logger.warning("Cannot enrich payment %s: project %s not found", fact.invoice_number, fact.project_id)
            return None
        commissioner = self.storage.users.find(fact.actor_id)
        freelancer = self.storage.users.find(fact.target_id)
        if commissioner is None or freelancer is None:
            logger.warning(
                "Cannot enrich payment %s: user %s not found",
                fact.invoice_number,
                fact.actor_id if commissioner is None else fact.target_id,
            )
            return None
        organization_id = project.organization_id or commissioner.organization_id
        organization = self.storage.organizations.find(organization_id) if organization_id is not None else None
        if organization is None:
            logger.warning(
                "Cannot enrich payment %s: organization for project %s not found",
                fact.invoice_number,
                fact.project_id,
            )
            return None

        task_title = None
        invoice = self.storage.invoices.find(fact.invoice_number)
        if invoice is not None:
            for task_id in sorted(invoice.task_ids):
                task = self.storage.tasks.find(task_id)
                if task is not None:
                    task_title = task.title
                    break

        if project.remaining_budget is not None:
            remaining = project.remaining_budget
        else:
            remaining = float(to_money(project.total_budget) - to_money(project.paid_to_date))

        return EnrichedPayment(
            project_id=fact.project_id,
            invoice_number=fact.invoice_number,
            amount=fact.amount,
            commissioner_id=commissioner.id,
            freelancer_id=freelancer.id,
            freelancer_name=freelancer.label,
            organization_name=organization.name,
            organization_logo=organization.logo,
            project_title=project.title,
            task_title=task_title,
            remaining_budget=remaining,
        )

    def emit_milestone_payment_notifications(self, payment: EnrichedPayment) -> int:
        """Append the payer-facing and recipient-facing events, each at most once.

        Each side is handled on its own: a side lacking display data, or whose
        write fails, is logged as degraded and the other side still goes out.

        Returns:
            Number of events appended (0, 1 or 2).
        """
        if self.disabled:
            logger.info("Payment notifications disabled; skipping %s", payment.invoice_number)
            return 0

        created = 0
        for audience in (_payer_side(payment), _recipient_side(payment)):
            if audience.degraded:
                logger.warning(
                    "Degraded %s notification for %s: missing display data",
                    audience.name,
                    payment.invoice_number,
                )
                continue
            try:
                if self._emit(payment, audience):
                    created += 1
            except StoreError:
                logger.error(
                    "Failed to emit %s notification for %s",
                    audience.name,
                    payment.invoice_number,
                    exc_info=True,
                )
        logger.info("Emitted %d payment notification(s) for %s", created, payment.invoice_number)
        return created

    def notify_payment(self, fact: PaymentFact) -> int:
        """Enrich *fact* and emit its notifications; returns the count created."""
        if self.disabled:
            logger.info("Payment notifications disabled; skipping %s", fact.invoice_number)
            return 0
        payment = self.enrich(fact)
        if payment is None:
            return 0
        return self.emit_milestone_payment_notifications(payment)

    def _emit(self, payment: EnrichedPayment, audience: Audience) -> bool:
        entity_id = payment_entity_id(payment.project_id, payment.invoice_number)
        key = event_fingerprint(audience.event_type, entity_id, audience.target_id)
        if self.events.exists(key):
            logger.debug("Skipping duplicate %s notification for %s", audience.name, entity_id)
            return False
        self.events.append(
            NotificationEvent(
                id=event_id_for(key),
                timestamp=self.clock(),
                type=audience.event_type,
                actor_id=audience.actor_id,
                target_id=audience.target_id,
                entity_type="invoice",
                entity_id=entity_id,
                metadata=self._metadata(payment, audience),
                context={"projectId": payment.project_id, "invoiceNumber": payment.invoice_number},
            )
        )
        return True

    @staticmethod
    def _metadata(payment: EnrichedPayment, audience: Audience) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "audience": audience.name,
            "title": audience.title,
            "message": audience.message,
            "amount": float(to_money(payment.amount)),
            "invoiceNumber": payment.invoice_number,
            "projectTitle": payment.project_title,
            "taskTitle": payment.task_title,
            "freelancerName": payment.freelancer_name,
            "organizationName": payment.organization_name,
            "organizationLogo": payment.organization_logo,
            "remainingBudget": payment.remaining_budget,
        }
        return {key: value for key, value in metadata.items() if value is not None}
