"""Notification records emitted as side effects of task sequencing."""

from __future__ import annotations

import logging

from .persistence.models import Notification, NotificationType, Stage, WorkflowInstance
from .persistence.repository import WorkflowRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

ASSIGNMENT_MESSAGES = {
    Stage.UPLOAD: "New upload task assigned: {name}",
    Stage.PREPARE: "New preparation task assigned for: {name}",
    Stage.REVIEW: "New review task assigned for: {name}",
}
REJECTION_MESSAGE = "Document rejected for: {name}. Reviewer feedback: {feedback}"
COMPLETION_MESSAGE = "Workflow '{name}' completed successfully!"


class NotificationRecorder:
    """Creates unread notification records. Delivery happens elsewhere."""

    def __init__(self, repository: WorkflowRepository, clock: Clock = utcnow) -> None:
        self._repository = repository
        self._clock = clock

    async def record(
        self,
        user_id: str,
        message: str,
        type: NotificationType = NotificationType.INFO,
    ) -> Notification:
        notification = Notification(
            user_id=user_id, message=message, type=type, created_at=self._clock()
        )
        await self._repository.create_notification(notification)
        logger.debug(f"Recorded {type.value} notification {notification.id} for user {user_id}")
        return notification

    async def task_assigned(
        self, instance: WorkflowInstance, stage: Stage, assignee: str
    ) -> Notification:
        template = ASSIGNMENT_MESSAGES[stage]
        return await self.record(assignee, template.format(name=instance.name))

    async def review_rejected(
        self, instance: WorkflowInstance, feedback: str
    ) -> Notification:
        message = REJECTION_MESSAGE.format(name=instance.name, feedback=feedback)
        return await self.record(instance.preparator, message, NotificationType.ERROR)

    async def workflow_completed(self, instance: WorkflowInstance) -> list[Notification]:
        """Notify every participant, one record each."""
        message = COMPLETION_MESSAGE.format(name=instance.name)
        return [
            await self.record(user_id, message, NotificationType.SUCCESS)
            for user_id in instance.participants
        ]
