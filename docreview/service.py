"""Entry point used by callers of the document review core."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from .config import DocReviewConfig, load_config
from .errors import NotFoundError, ValidationError
from .notifications import NotificationRecorder
from .persistence import get_repository
from .persistence.models import (
    Frequency,
    Notification,
    ReviewDecision,
    Stage,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTask,
)
from .persistence.repository import WorkflowRepository
from .scheduler import WorkflowScheduler
from .sequencer import TaskSequencer
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class DocumentReviewService:
    """Facade over the scheduler, sequencer and repository.

    Web handlers, the CLI and the periodic trigger all talk to this class;
    it holds no state of its own beyond the collaborators it wires together.

    Without an explicit ``repository`` the shared one from
    :func:`get_repository` is used. Passing ``config`` selects a backend from
    that config instead, so such services do not share the cached store.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        config: Optional[DocReviewConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.config = config or load_config()
        self.repository = repository or get_repository(config=config)
        self.notifier = NotificationRecorder(self.repository, clock=clock)
        self.sequencer = TaskSequencer(
            self.repository,
            notifier=self.notifier,
            deadlines=self.config.deadlines,
            clock=clock,
        )
        self.scheduler = WorkflowScheduler(
            self.repository,
            self.sequencer,
            clock=clock,
            interval=self.config.scheduler.interval_seconds,
        )

    # ------------------------------------------------------------------
    # Commands
    async def submit_workflow(
        self,
        name: str,
        started_by: str,
        scheduled_start: datetime,
        frequency: Frequency | str,
        uploader: str,
        preparator: str,
        reviewer: str,
        instructions: Optional[str] = None,
    ) -> WorkflowInstance:
        return await self.scheduler.submit(
            name,
            started_by,
            scheduled_start,
            frequency,
            uploader,
            preparator,
            reviewer,
            instructions,
        )

    async def complete_upload(
        self, task_id: str, file_path: str, comments: Optional[str] = None
    ) -> None:
        await self.sequencer.complete_upload(task_id, file_path, comments)

    async def complete_prepare(
        self, task_id: str, prepared_file_path: str, comments: Optional[str] = None
    ) -> None:
        await self.sequencer.complete_prepare(task_id, prepared_file_path, comments)

    async def complete_review(
        self, task_id: str, decision: ReviewDecision | str, message: str
    ) -> None:
        await self.sequencer.complete_review(task_id, decision, message)

    async def tick(self, now: Optional[datetime] = None) -> list[WorkflowInstance]:
        return await self.scheduler.tick(now)

    async def mark_notification_read(self, notification_id: str) -> None:
        if not await self.repository.mark_notification_read(notification_id):
            raise NotFoundError(f"Notification not found: {notification_id}")

    # ------------------------------------------------------------------
    # Queries
    async def get_tasks_for_assignee(self, user_id: str) -> list[WorkflowTask]:
        """Pending tasks assigned to ``user_id``."""
        return await self.repository.list_tasks(
            assignee=user_id, status=TaskStatus.PENDING
        )

    async def get_review_tasks_for_assignee(self, user_id: str) -> list[WorkflowTask]:
        """Pending review tasks that carry both the original and the prepared file."""
        tasks = await self.repository.list_tasks(
            assignee=user_id, status=TaskStatus.PENDING, task_name=Stage.REVIEW
        )
        return [t for t in tasks if t.original_file_path and t.prepared_file_path]

    async def get_instances_by_status(
        self, status: WorkflowStatus | str
    ) -> list[WorkflowInstance]:
        try:
            status = WorkflowStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown workflow status: {status}", field="status") from None
        return await self.repository.list_instances(status)

    async def list_instances(self) -> list[WorkflowInstance]:
        return await self.repository.list_instances()

    async def get_instance(self, instance_id: str) -> WorkflowInstance:
        instance = await self.repository.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Workflow instance not found: {instance_id}")
        return instance

    async def get_workflow_history(self, instance_id: str) -> list[WorkflowTask]:
        """Every task of the instance, in the order it was created."""
        await self.get_instance(instance_id)
        return await self.repository.list_tasks(workflow_instance_id=instance_id)

    async def get_upcoming_workflows_for_user(
        self, user_id: str
    ) -> list[WorkflowInstance]:
        """Scheduled workflows in which ``user_id`` takes part."""
        scheduled = await self.repository.list_instances(WorkflowStatus.SCHEDULED)
        return [wf for wf in scheduled if user_id in wf.participants]

    async def get_notifications(
        self, user_id: str, unread_only: bool = True
    ) -> list[Notification]:
        notifications = await self.repository.list_notifications(
            user_id, unread_only=unread_only
        )
        logger.debug(f"Found {len(notifications)} notifications for user {user_id}")
        return notifications
