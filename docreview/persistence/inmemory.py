"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Dict, Optional

from .models import (
    Notification,
    Stage,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTask,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Stored models are replaced, never
    mutated in place, so a unit of work can roll back by restoring the dicts.
    """

    def __init__(self) -> None:
        self._instances: Dict[str, WorkflowInstance] = {}
        self._tasks: Dict[str, WorkflowTask] = {}
        self._notifications: Dict[str, Notification] = {}
        self._lock = asyncio.Lock()
        self._in_unit: ContextVar[bool] = ContextVar(
            f"inmemory_unit_{id(self)}", default=False
        )

    # ------------------------------------------------------------------
    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        if self._in_unit.get():
            yield
            return
        async with self._lock:
            snapshot = (
                dict(self._instances),
                dict(self._tasks),
                dict(self._notifications),
            )
            token = self._in_unit.set(True)
            try:
                yield
            except BaseException:
                self._instances, self._tasks, self._notifications = snapshot
                raise
            finally:
                self._in_unit.reset(token)

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        async with self.atomic():
            self._instances[instance.id] = instance.model_copy()
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        async with self.atomic():
            wf = self._instances.get(instance_id)
            return wf.model_copy() if wf else None

    async def update_instance(self, instance: WorkflowInstance) -> None:
        async with self.atomic():
            if instance.id in self._instances:
                self._instances[instance.id] = instance.model_copy()

    async def activate_instance(self, instance_id: str, now: datetime) -> bool:
        async with self.atomic():
            wf = self._instances.get(instance_id)
            if wf is None or wf.status != WorkflowStatus.SCHEDULED:
                return False
            self._instances[instance_id] = wf.model_copy(
                update={"status": WorkflowStatus.ACTIVE, "actual_start": now}
            )
            return True

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        async with self.atomic():
            return [
                wf.model_copy()
                for wf in self._instances.values()
                if status is None or wf.status == status
            ]

    async def list_due_instances(self, now: datetime) -> list[WorkflowInstance]:
        async with self.atomic():
            return [
                wf.model_copy()
                for wf in self._instances.values()
                if wf.status == WorkflowStatus.SCHEDULED and wf.scheduled_start <= now
            ]

    # ------------------------------------------------------------------
    async def create_task(self, task: WorkflowTask) -> WorkflowTask:
        async with self.atomic():
            self._tasks[task.id] = task.model_copy()
        return task

    async def get_task(self, task_id: str) -> WorkflowTask | None:
        async with self.atomic():
            task = self._tasks.get(task_id)
            return task.model_copy() if task else None

    async def update_pending_task(self, task: WorkflowTask) -> bool:
        async with self.atomic():
            stored = self._tasks.get(task.id)
            if stored is None or stored.status != TaskStatus.PENDING:
                return False
            self._tasks[task.id] = task.model_copy()
            return True

    async def list_tasks(
        self,
        workflow_instance_id: Optional[str] = None,
        assignee: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        task_name: Optional[Stage] = None,
    ) -> list[WorkflowTask]:
        async with self.atomic():
            return [
                t.model_copy()
                for t in self._tasks.values()
                if (workflow_instance_id is None or t.workflow_instance_id == workflow_instance_id)
                and (assignee is None or t.assignee == assignee)
                and (status is None or t.status == status)
                and (task_name is None or t.task_name == task_name)
            ]

    # ------------------------------------------------------------------
    async def create_notification(self, notification: Notification) -> Notification:
        async with self.atomic():
            self._notifications[notification.id] = notification.model_copy()
        return notification

    async def list_notifications(
        self, user_id: str, unread_only: bool = True
    ) -> list[Notification]:
        async with self.atomic():
            return [
                n.model_copy()
                for n in self._notifications.values()
                if n.user_id == user_id and not (unread_only and n.read)
            ]

    async def mark_notification_read(self, notification_id: str) -> bool:
        async with self.atomic():
            n = self._notifications.get(notification_id)
            if n is None:
                return False
            self._notifications[notification_id] = n.model_copy(update={"read": True})
            return True
