from __future__ import annotations

from typing import Callable

import pytest

from marketplace_core.errors import IllegalTransition
from marketplace_core.models import Project, ProjectStatus, Task, TaskStatus
from marketplace_core.services import Services


def test_review_cycle(services: Services, seed_project: Callable[..., Project], clock) -> None:
    seed_project(tasks=(TaskStatus.ONGOING,))
    workflow = services.tasks

    submitted = workflow.submit("P-100-T1")
    assert submitted.status is TaskStatus.IN_REVIEW
    assert submitted.submitted_at == clock()

    rejected = workflow.reject("P-100-T1")
    assert rejected.status is TaskStatus.REJECTED
    assert rejected.rejected is True
    assert rejected.completed is False
    assert rejected.feedback_count == 1

    workflow.submit("P-100-T1")
    approved = workflow.approve("P-100-T1")
    assert approved.status is TaskStatus.APPROVED
    assert approved.completed is True
    assert approved.rejected is False
    assert approved.feedback_count == 1


def test_illegal_transitions(services: Services, seed_project: Callable[..., Project]) -> None:
    seed_project(tasks=(TaskStatus.ONGOING, TaskStatus.APPROVED))

    with pytest.raises(IllegalTransition):
        services.tasks.approve("P-100-T1")
    with pytest.raises(IllegalTransition):
        services.tasks.reject("P-100-T1")
    with pytest.raises(IllegalTransition):
        services.tasks.submit("P-100-T2")
    assert services.storage.tasks.read("P-100-T1").status is TaskStatus.ONGOING


def test_project_completes_when_every_task_is_approved(
    services: Services, seed_project: Callable[..., Project]
) -> None:
    seed_project(tasks=(TaskStatus.APPROVED, TaskStatus.IN_REVIEW))

    services.tasks.approve("P-100-T2")

    assert services.storage.projects.read("P-100").status is ProjectStatus.COMPLETED


def test_new_task_reopens_completed_project(
    services: Services, seed_project: Callable[..., Project], clock
) -> None:
    seed_project(tasks=(TaskStatus.IN_REVIEW,))
    services.tasks.approve("P-100-T1")
    assert services.storage.projects.read("P-100").status is ProjectStatus.COMPLETED

    services.storage.tasks.create(Task(task_id="P-100-T9", project_id="P-100", title="Extra", created_at=clock()))
    project = services.tasks.sync_project_status("P-100")

    assert project.status is ProjectStatus.ONGOING


def test_sync_without_changes_does_not_rewrite(services: Services, seed_project: Callable[..., Project]) -> None:
    seed_project(tasks=(TaskStatus.ONGOING,))
    before = services.storage.projects.read("P-100")

    after = services.tasks.sync_project_status("P-100")

    assert after.updated_at == before.updated_at
    assert after.status is ProjectStatus.ONGOING
