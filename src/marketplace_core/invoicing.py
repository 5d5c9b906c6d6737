"""Invoice generation, state transitions, payment and ledger reconciliation.

Marking an invoice paid runs four durable steps in order::

    invoice -> wallet credit -> project totals -> notifications

There is no multi-file transaction. Each step is idempotent on its own key
(invoice status, ``(user, credit, invoiceNumber)`` in the ledger,
``project.paidInvoices``, notification fingerprints), so re-running
:meth:`ReconciliationService.mark_paid` after a crash completes the missing
steps without repeating the finished ones.
"""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Callable, Iterator

from .errors import (
    CorruptDocument,
    DuplicateFact,
    IllegalTransition,
    PaymentStepFailed,
    StoreError,
    ValidationFailure,
)
from .gateway import PaymentGateway
from .models import (
    CENT,
    INVOICE_STATUS_TRANSITIONS,
    Invoice,
    InvoiceKind,
    InvoiceStatus,
    InvoicingMethod,
    Milestone,
    PaymentDetails,
    PaymentFact,
    Project,
    Task,
    TaskStatus,
    TransactionType,
    to_money,
)
from .report import Report
from .retry import RetryPolicy, run_with_retry
from .storage import StorageClient

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")
BILLED_STATUSES = {InvoiceStatus.SENT, InvoiceStatus.PAID}


class FeeSchedule(str, Enum):
    FREELANCE = "freelance"
    STOREFRONT = "storefront"

    @property
    def rate(self) -> Decimal:
        return FEE_RATES[self]


FEE_RATES: dict[FeeSchedule, Decimal] = {
    FeeSchedule.FREELANCE: Decimal("0.05"),
    FeeSchedule.STOREFRONT: Decimal("0.30"),
}


@dataclass(frozen=True)
class FeeSplit:
    total: Decimal
    platform_fee: Decimal
    net_amount: Decimal
    rate: Decimal


def split_fee(amount: Decimal | float | str, schedule: FeeSchedule = FeeSchedule.FREELANCE) -> FeeSplit:
    """Split *amount* into the platform fee (rounded half-up to cents) and the remainder.

    Raises:
        ValidationFailure: If the amount is not positive.
    """
    total = to_money(amount)
    if total <= 0:
        raise ValidationFailure(f"amount must be positive, got {total}")
    fee = (total * schedule.rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return FeeSplit(total=total, platform_fee=fee, net_amount=total - fee, rate=schedule.rate)


def allocate(pool: Decimal, rate: Decimal, count: int, *, final: bool) -> list[Decimal]:
    """Bill *count* tasks at *rate*; a final invoice absorbs the rounding remainder of *pool*."""
    if count <= 0:
        return []
    amounts = [rate] * count
    if final:
        amounts[-1] = pool - rate * (count - 1)
    return amounts


def require_transition(invoice: Invoice, target: InvoiceStatus) -> None:
    if target not in INVOICE_STATUS_TRANSITIONS[invoice.status]:
        raise IllegalTransition(
            f"invoice {invoice.invoice_number} cannot move from {invoice.status.value} to {target.value}"
        )


@dataclass(frozen=True)
class PaymentResult:
    invoice_number: str
    freelancer_amount: Decimal
    platform_fee: Decimal
    new_paid_to_date: Decimal
    duplicate: bool = False
    wallet_credited: bool = False
    notifications_created: int = 0


@dataclass(frozen=True)
class StorefrontSale:
    order_id: str
    vendor_id: int
    amount: Decimal | float
    product_id: str | None = None


@dataclass(frozen=True)
class SaleResult:
    order_id: str
    split: FeeSplit
    duplicate: bool


@dataclass(frozen=True)
class BillingState:
    """What has already been billed for a project's tasks."""

    tasks: list[Task]
    invoices: list[Invoice]
    billed_task_ids: set[str]
    billed_amount: Decimal

    @property
    def unbilled(self) -> list[Task]:
        return [task for task in self.tasks if task.task_id not in self.billed_task_ids]

    @property
    def open_draft(self) -> Invoice | None:
        for invoice in self.invoices:
            if invoice.status is InvoiceStatus.DRAFT and invoice.kind is InvoiceKind.TASK:
                return invoice
        return None


class ReconciliationService:
    def __init__(
        self,
        storage: StorageClient,
        gateway: PaymentGateway,
        *,
        retry_policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.storage = storage
        self.gateway = gateway
        self.retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self.sleep = sleep
        self.clock = clock

    # ------------------------------------------------------------------
    # Amounts
    # ------------------------------------------------------------------

    def billing_state(self, project_id: str) -> BillingState:
        tasks = self.storage.tasks_for_project(project_id)
        invoices = self.storage.invoices_for_project(project_id)
        billed_ids: set[str] = set()
        billed_amount = ZERO
        for invoice in invoices:
            if invoice.status not in BILLED_STATUSES or invoice.kind is not InvoiceKind.TASK:
                continue
            for milestone in invoice.milestones:
                if milestone.task_id is not None:
                    billed_ids.add(milestone.task_id)
                    billed_amount += to_money(milestone.amount)
        return BillingState(tasks, invoices, billed_ids, billed_amount)

    def rate_per_task(self, project: Project, state: BillingState) -> Decimal:
        """Amount billed for one task under the project's invoicing method.

        Raises:
            ValidationFailure: If there is nothing left to divide.
        """
        if not state.tasks:
            raise ValidationFailure(f"project {project.project_id} has no tasks")
        if project.invoicing_method is InvoicingMethod.MILESTONE:
            return (to_money(project.total_budget) / len(state.tasks)).quantize(CENT, rounding=ROUND_HALF_UP)
        unbilled = state.unbilled
        if not unbilled:
            raise ValidationFailure(f"project {project.project_id} has no unbilled tasks")
        pool = self._completion_pool(project, state)
        return (pool / len(unbilled)).quantize(CENT, rounding=ROUND_HALF_UP)

    def remaining_budget(self, project: Project, paid_to_date: Decimal, paid_invoices: set[str]) -> Decimal:
        """Budget still payable after *paid_invoices* have been applied."""
        if project.invoicing_method is InvoicingMethod.COMPLETION:
            return to_money(project.total_budget) - paid_to_date
        tasks = self.storage.tasks_for_project(project.project_id)
        if not tasks:
            return to_money(project.total_budget) - paid_to_date
        paid_task_ids: set[str] = set()
        for invoice in self.storage.invoices_for_project(project.project_id):
            if invoice.invoice_number in paid_invoices:
                paid_task_ids |= invoice.task_ids
        outstanding = sum(1 for task in tasks if task.task_id not in paid_task_ids)
        per_task = (to_money(project.total_budget) / len(tasks)).quantize(CENT, rounding=ROUND_HALF_UP)
        return per_task * outstanding

    def _completion_pool(self, project: Project, state: BillingState) -> Decimal:
        return to_money(project.total_budget) - to_money(project.upfront_commitment) - state.billed_amount

    # ------------------------------------------------------------------
    # Generation and transitions
    # ------------------------------------------------------------------

    def next_invoice_number(self, project_id: str, invoices: list[Invoice]) -> str:
        sequence = len(invoices) + 1
        while True:
            candidate = f"INV-{project_id}-{sequence:03d}"
            if not self.storage.invoices.exists(candidate):
                return candidate
            sequence += 1

    def generate_invoice(self, project_id: str, *, auto_send: bool = True) -> Invoice:
        """Bill every approved task that no sent or paid invoice covers yet.

        An open task draft for the project is reused (its lines are replaced)
        rather than a second draft being created, so a retried generation
        does not leave orphaned drafts behind.

        Raises:
            NotFound: If the project does not exist.
            ValidationFailure: If no approved, unbilled task is available.
            TransientIOFailure: On storage I/O failure (safe to retry).
        """
        project = self.storage.projects.read(project_id)
        state = self.billing_state(project.project_id)
        unbilled = state.unbilled
        eligible = [task for task in unbilled if task.status is TaskStatus.APPROVED]
        if not eligible:
            raise ValidationFailure(f"project {project.project_id} has no approved, unbilled tasks")

        rate = self.rate_per_task(project, state)
        if project.invoicing_method is InvoicingMethod.MILESTONE:
            pool = to_money(project.total_budget) - state.billed_amount
        else:
            pool = self._completion_pool(project, state)
        amounts = allocate(pool, rate, len(eligible), final=len(eligible) == len(unbilled))
        milestones = [
            Milestone(description=task.title, amount=float(amount), task_id=task.task_id)
            for task, amount in zip(eligible, amounts)
        ]
        total = sum(amounts, ZERO)
        if total <= 0:
            raise ValidationFailure(f"project {project.project_id} has no budget left to invoice")

        draft = state.open_draft
        if draft is not None:
            invoice = self.storage.invoices.update(
                draft.invoice_number, {"milestones": milestones, "total_amount": float(total)}
            )
            logger.info("Refreshed draft %s for project %s", invoice.invoice_number, project.project_id)
        else:
            invoice = self.storage.invoices.create(
                Invoice(
                    invoice_number=self.next_invoice_number(project.project_id, state.invoices),
                    project_id=project.project_id,
                    freelancer_id=project.freelancer_id,
                    commissioner_id=project.commissioner_id,
                    kind=InvoiceKind.TASK,
                    total_amount=float(total),
                    milestones=milestones,
                    created_at=self.clock(),
                )
            )
            logger.info(
                "Generated invoice %s for project %s: %d task(s), total %s",
                invoice.invoice_number,
                project.project_id,
                len(milestones),
                total,
            )
        if auto_send:
            invoice = self.send_invoice(invoice.invoice_number)
        return invoice

    def generate_invoice_with_retry(self, project_id: str, *, auto_send: bool = True) -> Invoice:
        """:meth:`generate_invoice` under the bounded retry policy.

        Only :class:`~marketplace_core.errors.TransientIOFailure` is retried.

        Raises:
            RetryExhausted: When every attempt failed transiently.
        """
        return run_with_retry(
            self.retry_policy,
            lambda: self.generate_invoice(project_id, auto_send=auto_send),
            name=f"generate invoice for project {project_id}",
            sleep=self.sleep,
        )

    def generate_upfront_invoice(self, project_id: str, *, auto_send: bool = True) -> Invoice:
        """Invoice the upfront commitment of a completion project.

        Raises:
            ValidationFailure: If the project has no upfront commitment.
            DuplicateFact: If the project already has a live upfront invoice.
        """
        project = self.storage.projects.read(project_id)
        amount = to_money(project.upfront_commitment)
        if project.invoicing_method is not InvoicingMethod.COMPLETION or amount <= 0:
            raise ValidationFailure(f"project {project.project_id} has no upfront commitment to invoice")
        invoices = self.storage.invoices_for_project(project.project_id)
        for existing in invoices:
            if existing.kind is InvoiceKind.UPFRONT and existing.status is not InvoiceStatus.DISCARDED:
                raise DuplicateFact(f"project {project.project_id} already has upfront invoice {existing.invoice_number}")
        invoice = self.storage.invoices.create(
            Invoice(
                invoice_number=self.next_invoice_number(project.project_id, invoices),
                project_id=project.project_id,
                freelancer_id=project.freelancer_id,
                commissioner_id=project.commissioner_id,
                kind=InvoiceKind.UPFRONT,
                total_amount=float(amount),
                milestones=[Milestone(description="Upfront commitment", amount=float(amount))],
                created_at=self.clock(),
            )
        )
        logger.info("Generated upfront invoice %s for project %s", invoice.invoice_number, project.project_id)
        if auto_send:
            invoice = self.send_invoice(invoice.invoice_number)
        return invoice

    def send_invoice(self, invoice_number: str) -> Invoice:
        """Move a draft to ``sent``.

        Raises:
            IllegalTransition: If the invoice is not a draft.
            ValidationFailure: If it has no amount, no lines, or bills a task
                that another sent or paid invoice already covers.
        """
        invoice = self.storage.invoices.read(invoice_number)
        require_transition(invoice, InvoiceStatus.SENT)
        if to_money(invoice.total_amount) <= 0:
            raise ValidationFailure(f"invoice {invoice_number} has no amount to send")
        if not invoice.milestones or (invoice.kind is InvoiceKind.TASK and not invoice.task_ids):
            raise ValidationFailure(f"invoice {invoice_number} references no billable work")
        for other in self.storage.invoices_for_project(invoice.project_id):
            if other.invoice_number == invoice.invoice_number or other.status not in BILLED_STATUSES:
                continue
            overlap = invoice.task_ids & other.task_ids
            if overlap:
                raise ValidationFailure(
                    f"task(s) {', '.join(sorted(overlap))} already billed by {other.invoice_number}"
                )

        def to_sent(current: Invoice) -> dict[str, Any]:
            require_transition(current, InvoiceStatus.SENT)
            return {"status": InvoiceStatus.SENT, "sent_at": self.clock()}

        sent = self.storage.invoices.update(invoice_number, to_sent)
        logger.info("Sent invoice %s", invoice_number)
        return sent

    def discard_invoice(self, invoice_number: str) -> Invoice:
        """Discard a draft. Sent and paid invoices are financial records and stay."""
        return self.storage.invoices.delete(invoice_number)

    # ------------------------------------------------------------------
    # Payment
    # ------------------------------------------------------------------

    @contextmanager
    def _step(self, invoice_number: str, step: str) -> Iterator[None]:
        try:
            yield
        except PaymentStepFailed:
            raise
        except StoreError as exc:
            logger.error("Payment of %s failed at %s: %s", invoice_number, step, exc)
            raise PaymentStepFailed(invoice_number, step, exc) from exc

    def mark_paid(self, invoice_number: str) -> PaymentResult:
        """Mark a sent invoice paid, credit the freelancer and notify both parties.

        Holds the invoice's advisory lock for the whole sequence, so a
        concurrent call for the same invoice waits and then sees it paid.
        Calling this on an already-paid invoice completes any step that did
        not finish earlier and returns ``duplicate=True``.

        Raises:
            NotFound: If the invoice or its project does not exist.
            IllegalTransition: If the invoice is a draft or discarded.
            ValidationFailure: If paying would push ``paidToDate`` past the
                project budget. Nothing is written in that case.
            PaymentStepFailed: If a step fails; earlier steps stay applied and
                the error names the failed step.
        """
        invoice = self.storage.invoices.read(invoice_number)
        with self.storage.invoices.locked(invoice):
            invoice = self.storage.invoices.read(invoice_number)
            duplicate = invoice.status is InvoiceStatus.PAID
            if not duplicate:
                require_transition(invoice, InvoiceStatus.PAID)
                project = self.storage.projects.read(invoice.project_id)
                total = to_money(invoice.total_amount)
                if invoice_number not in project.paid_invoices:
                    projected = to_money(project.paid_to_date) + total
                    if projected > to_money(project.total_budget):
                        raise ValidationFailure(
                            f"paying {invoice_number} would raise paidToDate to {projected}, "
                            f"above the budget of {to_money(project.total_budget)}"
                        )
                split = split_fee(total, FeeSchedule.FREELANCE)
                with self._step(invoice_number, "invoice"):
                    invoice = self.storage.invoices.update(
                        invoice_number,
                        {
                            "status": InvoiceStatus.PAID,
                            "paid_at": self.clock(),
                            "payment_details": PaymentDetails(
                                platform_fee=float(split.platform_fee),
                                freelancer_amount=float(split.net_amount),
                                fee_rate=float(split.rate),
                                processed_at=self.clock(),
                            ),
                        },
                        lock=False,
                    )
            else:
                logger.info("Invoice %s already paid; completing any unfinished steps", invoice_number)

            details = invoice.payment_details
            if details is None:
                raise CorruptDocument(self.storage.invoices.path_of(invoice), "paid invoice has no paymentDetails")
            freelancer_amount = to_money(details.freelancer_amount)

            with self._step(invoice_number, "wallet"):
                credit = self.storage.wallet.credit(
                    invoice.freelancer_id,
                    freelancer_amount,
                    invoice_number,
                    project_id=invoice.project_id,
                )
            with self._step(invoice_number, "project"):
                project = self.storage.projects.update(
                    invoice.project_id, lambda current: self._apply_payment(current, invoice)
                )
            with self._step(invoice_number, "notifications"):
                created = self.gateway.notify_payment(
                    PaymentFact(
                        actor_id=invoice.commissioner_id,
                        target_id=invoice.freelancer_id,
                        project_id=invoice.project_id,
                        invoice_number=invoice_number,
                        amount=float(to_money(invoice.total_amount)),
                    )
                )

        if not duplicate:
            logger.info(
                "Invoice %s paid: %s to freelancer %s, fee %s",
                invoice_number,
                freelancer_amount,
                invoice.freelancer_id,
                to_money(details.platform_fee),
            )
        return PaymentResult(
            invoice_number=invoice_number,
            freelancer_amount=freelancer_amount,
            platform_fee=to_money(details.platform_fee),
            new_paid_to_date=to_money(project.paid_to_date),
            duplicate=duplicate,
            wallet_credited=credit.created,
            notifications_created=created,
        )

    def _apply_payment(self, project: Project, invoice: Invoice) -> dict[str, Any]:
        if invoice.invoice_number in project.paid_invoices:
            return {}
        paid_to_date = to_money(project.paid_to_date) + to_money(invoice.total_amount)
        paid_invoices = [*project.paid_invoices, invoice.invoice_number]
        remaining = self.remaining_budget(project, paid_to_date, set(paid_invoices))
        return {
            "paid_to_date": float(paid_to_date),
            "paid_invoices": paid_invoices,
            "remaining_budget": float(remaining),
        }

    def record_storefront_sale(self, sale: StorefrontSale) -> SaleResult:
        """Credit a vendor for a storefront sale under the 30% schedule, once per order."""
        split = split_fee(sale.amount, FeeSchedule.STOREFRONT)
        write = self.storage.wallet.credit(
            sale.vendor_id,
            split.net_amount,
            f"order-{sale.order_id}",
            source="storefront",
        )
        if write.created:
            logger.info("Recorded storefront sale %s: %s to vendor %s", sale.order_id, split.net_amount, sale.vendor_id)
        return SaleResult(order_id=str(sale.order_id), split=split, duplicate=not write.created)

    # ------------------------------------------------------------------
    # Consistency
    # ------------------------------------------------------------------

    def reconcile_ledger(self) -> Report:
        """Cross-check paid invoices, wallet credits and project totals.

        Discrepancies are reported, never corrected.
        """
        report = Report("Ledger reconciliation")
        ledger = self.storage.wallet.transactions()
        invoice_credits: dict[str, list[Any]] = {}
        for txn in ledger:
            if txn.type is TransactionType.CREDIT and txn.source == "invoice":
                invoice_credits.setdefault(txn.invoice_number, []).append(txn)

        paid_by_project: dict[str, list[Invoice]] = {}
        for invoice in self.storage.invoices.iter_all(include_archived=True):
            report.count("invoices")
            if invoice.status is not InvoiceStatus.PAID:
                continue
            report.count("paid invoices")
            paid_by_project.setdefault(invoice.project_id, []).append(invoice)
            location = f"invoice:{invoice.invoice_number}"
            credits = invoice_credits.pop(invoice.invoice_number, [])
            details = invoice.payment_details
            if details is None:
                report.error(location, "paid invoice has no paymentDetails")
                continue
            if to_money(invoice.total_amount) <= 0:
                report.error(location, f"paid invoice has non-positive totalAmount {to_money(invoice.total_amount)}")
                continue
            expected = split_fee(invoice.total_amount, FeeSchedule.FREELANCE)
            fee = to_money(details.platform_fee)
            net = to_money(details.freelancer_amount)
            if fee != expected.platform_fee:
                report.error(location, f"platformFee {fee} differs from expected {expected.platform_fee}")
            if fee + net != expected.total:
                report.error(location, f"platformFee + freelancerAmount = {fee + net}, totalAmount {expected.total}")
            if not credits:
                report.error(location, "no wallet credit for paid invoice")
            elif len(credits) > 1:
                report.error(location, f"{len(credits)} wallet credits for one invoice")
            else:
                credit = credits[0]
                if credit.user_id != invoice.freelancer_id:
                    report.error(location, f"credit went to user {credit.user_id}, not {invoice.freelancer_id}")
                if to_money(credit.amount) != net:
                    report.error(location, f"credit {to_money(credit.amount)} differs from freelancerAmount {net}")

        for invoice_number, credits in sorted(invoice_credits.items()):
            report.error(f"wallet:{invoice_number}", f"{len(credits)} credit(s) for an invoice that is not paid")

        for project in self.storage.projects.iter_all(include_archived=True):
            report.count("projects")
            location = f"project:{project.project_id}"
            paid = paid_by_project.get(project.project_id, [])
            for invoice in paid:
                if invoice.invoice_number not in project.paid_invoices:
                    report.warning(location, f"payment of {invoice.invoice_number} not applied to project totals")
            paid_total = sum((to_money(invoice.total_amount) for invoice in paid), ZERO)
            if paid_total != to_money(project.paid_to_date):
                report.warning(location, f"paidToDate {to_money(project.paid_to_date)} but paid invoices total {paid_total}")
            if to_money(project.paid_to_date) > to_money(project.total_budget):
                report.error(location, "paidToDate exceeds totalBudget")
        return report
