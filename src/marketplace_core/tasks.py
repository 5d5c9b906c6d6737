"""Task review workflow and project completion status."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable

from .errors import IllegalTransition
from .models import TASK_STATUS_TRANSITIONS, Project, ProjectStatus, Task, TaskStatus
from .storage import StorageClient

logger = logging.getLogger(__name__)


def _require(task: Task, target: TaskStatus) -> None:
    if target not in TASK_STATUS_TRANSITIONS[task.status]:
        raise IllegalTransition(f"task {task.task_id} cannot move from {task.status.value} to {target.value}")


class TaskWorkflow:
    """Moves tasks through review and keeps ``project.status`` in step.

    A project is ``completed`` exactly when every one of its tasks is
    Approved. Rejecting a task of a completed project reopens it.
    """

    def __init__(self, storage: StorageClient, *, clock: Callable[[], datetime] = lambda: datetime.now(UTC)) -> None:
        self.storage = storage
        self.clock = clock

    def submit(self, task_id: str) -> Task:
        def patch(task: Task) -> dict[str, Any]:
            _require(task, TaskStatus.IN_REVIEW)
            return {
                "status": TaskStatus.IN_REVIEW,
                "completed": False,
                "rejected": False,
                "submitted_at": self.clock(),
            }

        task = self.storage.tasks.update(task_id, patch)
        logger.info("Task %s submitted for review", task_id)
        return task

    def approve(self, task_id: str) -> Task:
        def patch(task: Task) -> dict[str, Any]:
            _require(task, TaskStatus.APPROVED)
            return {
                "status": TaskStatus.APPROVED,
                "completed": True,
                "rejected": False,
                "approved_at": self.clock(),
            }

        task = self.storage.tasks.update(task_id, patch)
        logger.info("Task %s approved", task_id)
        self.sync_project_status(task.project_id)
        return task

    def reject(self, task_id: str) -> Task:
        def patch(task: Task) -> dict[str, Any]:
            _require(task, TaskStatus.REJECTED)
            return {
                "status": TaskStatus.REJECTED,
                "completed": False,
                "rejected": True,
                "feedback_count": task.feedback_count + 1,
                "rejected_at": self.clock(),
            }

        task = self.storage.tasks.update(task_id, patch)
        logger.info("Task %s rejected", task_id)
        self.sync_project_status(task.project_id)
        return task

    def sync_project_status(self, project_id: str) -> Project:
        """Set ``completed`` when all tasks are Approved; reopen a completed project otherwise."""
        tasks = self.storage.tasks_for_project(project_id)
        all_approved = bool(tasks) and all(task.status is TaskStatus.APPROVED for task in tasks)

        def patch(project: Project) -> dict[str, Any]:
            if all_approved and project.status is not ProjectStatus.COMPLETED:
                return {"status": ProjectStatus.COMPLETED}
            if not all_approved and project.status is ProjectStatus.COMPLETED:
                return {"status": ProjectStatus.ONGOING}
            return {}

        project = self.storage.projects.update(project_id, patch)
        logger.debug("Project %s status is %s", project_id, project.status.value)
        return project
