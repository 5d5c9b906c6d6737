from __future__ import annotations

import itertools
from datetime import UTC, datetime

import pytest
from pydantic import ValidationError

from marketplace_core.models import (
    Invoice,
    InvoiceStatus,
    InvoicingMethod,
    PaymentDetails,
    Project,
    Task,
    TaskStatus,
    to_money,
)

CREATED = datetime(2025, 7, 1, tzinfo=UTC)


def _task_is_consistent(status: TaskStatus, completed: bool, rejected: bool) -> bool:
    if completed and rejected:
        return False
    if completed and status is TaskStatus.ONGOING:
        return False
    if status is TaskStatus.REJECTED and (completed or not rejected):
        return False
    if status is TaskStatus.APPROVED and not completed:
        return False
    return True


@pytest.mark.parametrize(
    ("status", "completed", "rejected"),
    list(itertools.product(TaskStatus, [False, True], [False, True])),
)
def test_task_flag_combinations(status: TaskStatus, completed: bool, rejected: bool) -> None:
    payload = {
        "taskId": "T1",
        "projectId": "P-1",
        "title": "Logo",
        "status": status.value,
        "completed": completed,
        "rejected": rejected,
        "createdAt": CREATED.isoformat(),
    }
    if _task_is_consistent(status, completed, rejected):
        task = Task.model_validate(payload)
        assert not (task.completed and task.rejected)
        if task.status is TaskStatus.APPROVED:
            assert task.completed
    else:
        with pytest.raises(ValidationError):
            Task.model_validate(payload)


def test_upfront_commitment_only_for_completion_projects() -> None:
    with pytest.raises(ValidationError):
        Project(
            project_id="P-1",
            title="Site",
            invoicing_method=InvoicingMethod.MILESTONE,
            total_budget=1000,
            upfront_commitment=100,
            freelancer_id=1,
            commissioner_id=2,
            created_at=CREATED,
        )


def test_paid_invoice_requires_exact_payment_details() -> None:
    base = {
        "invoice_number": "INV-1",
        "project_id": "P-1",
        "freelancer_id": 1,
        "commissioner_id": 2,
        "total_amount": 1748.33,
        "status": InvoiceStatus.PAID,
        "created_at": CREATED,
    }
    with pytest.raises(ValidationError):
        Invoice(**base)
    with pytest.raises(ValidationError):
        Invoice(
            **base,
            payment_details=PaymentDetails(
                platform_fee=87.41, freelancer_amount=1660.91, fee_rate=0.05, processed_at=CREATED
            ),
        )
    invoice = Invoice(
        **base,
        payment_details=PaymentDetails(platform_fee=87.42, freelancer_amount=1660.91, fee_rate=0.05, processed_at=CREATED),
    )
    assert invoice.status is InvoiceStatus.PAID


def test_to_money_rounds_half_up() -> None:
    assert str(to_money(0.125)) == "0.13"
    assert str(to_money("2.675")) == "2.68"
    assert str(to_money(10)) == "10.00"


@pytest.mark.parametrize("unsafe", ["P 100", "../P-1", "P/100", "", "  "])
def test_ids_must_be_path_safe(unsafe: str) -> None:
    with pytest.raises(ValidationError):
        Task(task_id="T1", project_id=unsafe, title="Logo", created_at=CREATED)
    with pytest.raises(ValidationError):
        Task(task_id=unsafe, project_id="P-1", title="Logo", created_at=CREATED)
