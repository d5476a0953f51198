"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import AsyncContextManager, Optional, Protocol

from .models import (
    Notification,
    Stage,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTask,
)


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    ``atomic()`` opens a unit of work: everything written inside it is applied
    together or not at all, and nested calls join the enclosing unit.
    """

    def atomic(self) -> AsyncContextManager[None]:
        """Return a context manager scoping one atomic unit of work."""

    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        """Persist a new workflow instance."""

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        """Retrieve a workflow instance by id."""

    async def update_instance(self, instance: WorkflowInstance) -> None:
        """Persist all fields of an existing workflow instance."""

    async def activate_instance(self, instance_id: str, now: datetime) -> bool:
        """Flip SCHEDULED to ACTIVE. Return ``False`` if the instance was not SCHEDULED."""

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        """Return persisted instances, optionally filtered by status."""

    async def list_due_instances(self, now: datetime) -> list[WorkflowInstance]:
        """Return SCHEDULED instances whose scheduled start is at or before ``now``."""

    async def create_task(self, task: WorkflowTask) -> WorkflowTask:
        """Persist a new task."""

    async def get_task(self, task_id: str) -> WorkflowTask | None:
        """Retrieve a task by id."""

    async def update_pending_task(self, task: WorkflowTask) -> bool:
        """Write ``task`` only if the stored row is still PENDING."""

    async def list_tasks(
        self,
        workflow_instance_id: Optional[str] = None,
        assignee: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        task_name: Optional[Stage] = None,
    ) -> list[WorkflowTask]:
        """Return tasks matching every given filter, in creation order."""

    async def create_notification(self, notification: Notification) -> Notification:
        """Persist a notification record."""

    async def list_notifications(
        self, user_id: str, unread_only: bool = True
    ) -> list[Notification]:
        """Return notifications addressed to ``user_id``, oldest first."""

    async def mark_notification_read(self, notification_id: str) -> bool:
        """Mark a notification read. Return ``False`` if it does not exist."""
