"""Task sequencing for document review workflows.

Each workflow instance carries a single live token that moves through the
stages START -> UPLOAD -> PREPARE -> REVIEW and then either to END (approved)
or back to PREPARE (rejected). START and END are bookkeeping stages completed
as soon as they are created; the three human stages wait for a ``complete_*``
call from their assignee.

Every public operation runs inside ``repository.atomic()`` so a completed task
and the task it spawns become visible together.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Dict, Optional, Tuple

from .config import DeadlineConfig
from .constants import END_INSTRUCTIONS, START_INSTRUCTIONS
from .errors import (
    InvariantViolation,
    NotFoundError,
    TaskNotPendingError,
    ValidationError,
)
from .notifications import NotificationRecorder
from .persistence.models import (
    ReviewDecision,
    Stage,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTask,
)
from .persistence.repository import WorkflowRepository
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[Tuple[Stage, TaskStatus], Stage] = {
    (Stage.START, TaskStatus.COMPLETED): Stage.UPLOAD,
    (Stage.UPLOAD, TaskStatus.COMPLETED): Stage.PREPARE,
    (Stage.PREPARE, TaskStatus.COMPLETED): Stage.REVIEW,
    (Stage.REVIEW, TaskStatus.COMPLETED): Stage.END,
    (Stage.REVIEW, TaskStatus.REJECTED): Stage.PREPARE,
}


def next_stage(stage: Stage, outcome: TaskStatus) -> Optional[Stage]:
    """Return the stage that follows ``stage`` finishing with ``outcome``.

    ``None`` means the workflow is over. Pairs missing from ``TRANSITIONS``
    raise :class:`InvariantViolation`.
    """
    if stage == Stage.END:
        return None
    try:
        return TRANSITIONS[(Stage(stage), TaskStatus(outcome))]
    except (KeyError, ValueError):
        raise InvariantViolation(
            f"No transition from stage {stage} with outcome {outcome}"
        ) from None


class TaskSequencer:
    """Creates and transitions the tasks of workflow instances."""

    def __init__(
        self,
        repository: WorkflowRepository,
        notifier: Optional[NotificationRecorder] = None,
        deadlines: Optional[DeadlineConfig] = None,
        clock: Clock = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock
        self._notifier = notifier or NotificationRecorder(repository, clock=clock)
        self._deadlines = deadlines or DeadlineConfig()

    # ------------------------------------------------------------------
    # Stage emission
    async def emit_start(self, instance: WorkflowInstance) -> WorkflowTask:
        async with self._repository.atomic():
            now = self._clock()
            task = await self._create_task(
                instance,
                Stage.START,
                instance.started_by,
                status=TaskStatus.COMPLETED,
                instructions=START_INSTRUCTIONS,
                completed_at=now,
                start_date=instance.scheduled_start,
                end_date=now,
            )
            logger.info(f"START task auto-completed for workflow '{instance.name}' ({instance.id})")
            await self._advance(instance, task)
        return task

    async def emit_upload(self, instance: WorkflowInstance) -> WorkflowTask:
        async with self._repository.atomic():
            task = await self._create_task(
                instance,
                Stage.UPLOAD,
                instance.uploader,
                due_days=self._deadlines.upload_days,
            )
            await self._notifier.task_assigned(instance, Stage.UPLOAD, instance.uploader)
        logger.info(f"UPLOAD task {task.id} assigned to {instance.uploader} for workflow {instance.id}")
        return task

    async def emit_prepare(
        self, instance: WorkflowInstance, original_file: Optional[str]
    ) -> WorkflowTask:
        async with self._repository.atomic():
            task = await self._create_task(
                instance,
                Stage.PREPARE,
                instance.preparator,
                due_days=self._deadlines.prepare_days,
                original_file_path=original_file,
            )
            await self._notifier.task_assigned(
                instance, Stage.PREPARE, instance.preparator
            )
        logger.info(
            f"PREPARE task {task.id} assigned to {instance.preparator} "
            f"for workflow {instance.id} (original file: {original_file})"
        )
        return task

    async def emit_review(
        self,
        instance: WorkflowInstance,
        original_file: Optional[str],
        prepared_file: Optional[str],
    ) -> WorkflowTask:
        async with self._repository.atomic():
            uploads = await self._repository.list_tasks(
                workflow_instance_id=instance.id,
                task_name=Stage.UPLOAD,
                status=TaskStatus.COMPLETED,
            )
            if not uploads:
                logger.critical(
                    f"Refusing REVIEW task for workflow '{instance.name}' ({instance.id}): "
                    "no completed upload"
                )
                raise InvariantViolation("review requires a completed upload")
            if not original_file or not prepared_file:
                logger.critical(
                    f"Refusing REVIEW task for workflow {instance.id}: "
                    f"original={original_file!r} prepared={prepared_file!r}"
                )
                raise InvariantViolation(
                    "review requires both an original and a prepared file"
                )
            task = await self._create_task(
                instance,
                Stage.REVIEW,
                instance.reviewer,
                due_days=self._deadlines.review_days,
                original_file_path=original_file,
                prepared_file_path=prepared_file,
            )
            await self._notifier.task_assigned(instance, Stage.REVIEW, instance.reviewer)
        logger.info(f"REVIEW task {task.id} assigned to {instance.reviewer} for workflow {instance.id}")
        return task

    async def emit_end(self, instance: WorkflowInstance) -> WorkflowTask:
        async with self._repository.atomic():
            now = self._clock()
            task = await self._create_task(
                instance,
                Stage.END,
                instance.started_by,
                status=TaskStatus.COMPLETED,
                instructions=END_INSTRUCTIONS,
                completed_at=now,
                start_date=now,
                end_date=now,
            )
            instance.status = WorkflowStatus.COMPLETED
            instance.end_time = now
            await self._repository.update_instance(instance)
            await self._notifier.workflow_completed(instance)
        logger.info(f"Workflow '{instance.name}' ({instance.id}) completed at {now}")
        return task

    # ------------------------------------------------------------------
    # Completion
    async def complete_upload(
        self, task_id: str, file_path: str, comments: Optional[str] = None
    ) -> WorkflowTask:
        if not file_path or not file_path.strip():
            raise ValidationError("An uploaded file is required", field="file_path")
        async with self._repository.atomic():
            task = await self._claim(task_id, Stage.UPLOAD)
            task.original_file_path = file_path
            task.status = TaskStatus.COMPLETED
            task.completed_at = self._clock()
            task.user_comments = comments
            instance = await self._finish(task)
            await self._advance(instance, task)
        return task

    async def complete_prepare(
        self, task_id: str, prepared_file: str, comments: Optional[str] = None
    ) -> WorkflowTask:
        if not prepared_file or not prepared_file.strip():
            raise ValidationError("A prepared file is required", field="prepared_file")
        async with self._repository.atomic():
            task = await self._claim(task_id, Stage.PREPARE)
            task.prepared_file_path = prepared_file
            task.status = TaskStatus.COMPLETED
            task.completed_at = self._clock()
            task.user_comments = comments
            instance = await self._finish(task)
            await self._advance(instance, task)
        return task

    async def complete_review(
        self, task_id: str, decision: ReviewDecision | str, message: str
    ) -> WorkflowTask:
        if not message or not message.strip():
            raise ValidationError("A review message is required", field="message")
        try:
            decision = ReviewDecision(decision)
        except ValueError:
            raise ValidationError(
                f"Decision must be APPROVED or REJECTED, got {decision!r}",
                field="decision",
            ) from None

        async with self._repository.atomic():
            task = await self._claim(task_id, Stage.REVIEW)
            task.reviewer_message = message
            task.user_comments = message
            task.completed_at = self._clock()
            if decision == ReviewDecision.APPROVED:
                task.status = TaskStatus.COMPLETED
            else:
                task.status = TaskStatus.REJECTED
            instance = await self._finish(task)

            if decision == ReviewDecision.APPROVED:
                logger.info(f"Review {task.id} approved for workflow {instance.id}")
            else:
                logger.warning(
                    f"Review {task.id} rejected for workflow {instance.id}: {message}"
                )
            await self._advance(instance, task)
            if decision == ReviewDecision.REJECTED:
                await self._notifier.review_rejected(instance, message)
        return task

    # ------------------------------------------------------------------
    # Helpers
    async def _advance(self, instance: WorkflowInstance, task: WorkflowTask) -> None:
        target = next_stage(task.task_name, task.status)
        if target == Stage.UPLOAD:
            await self.emit_upload(instance)
        elif target == Stage.PREPARE:
            await self.emit_prepare(instance, task.original_file_path)
        elif target == Stage.REVIEW:
            await self.emit_review(
                instance, task.original_file_path, task.prepared_file_path
            )
        elif target == Stage.END:
            await self.emit_end(instance)

    async def _claim(self, task_id: str, stage: Stage) -> WorkflowTask:
        task = await self._repository.get_task(task_id)
        if task is None:
            logger.error(f"{stage.value} task not found: {task_id}")
            raise NotFoundError(f"{stage.value.title()} task not found: {task_id}")
        if task.task_name != stage:
            raise ValidationError(
                f"Task {task_id} is a {task.task_name.value} task, not {stage.value}",
                field="task_id",
            )
        if task.status != TaskStatus.PENDING:
            raise TaskNotPendingError(
                f"Task {task_id} is no longer pending (status {task.status.value})"
            )
        return task

    async def _finish(self, task: WorkflowTask) -> WorkflowInstance:
        """Persist a completed task and return its owning instance."""
        if not await self._repository.update_pending_task(task):
            raise TaskNotPendingError(f"Task {task.id} is no longer pending")
        logger.info(
            f"{task.task_name.value} task {task.id} marked {task.status.value} by {task.assignee}"
        )
        instance = await self._repository.get_instance(task.workflow_instance_id)
        if instance is None:
            logger.critical(
                f"Workflow instance {task.workflow_instance_id} missing for task {task.id}"
            )
            raise NotFoundError(
                f"Workflow instance not found: {task.workflow_instance_id}"
            )
        return instance

    async def _create_task(
        self,
        instance: WorkflowInstance,
        stage: Stage,
        assignee: str,
        status: TaskStatus = TaskStatus.PENDING,
        instructions: Optional[str] = None,
        due_days: Optional[int] = None,
        **fields,
    ) -> WorkflowTask:
        if instance.status != WorkflowStatus.ACTIVE:
            logger.critical(
                f"Refusing {stage.value} task for workflow {instance.id} in status {instance.status.value}"
            )
            raise InvariantViolation(
                f"Cannot create {stage.value} task: workflow {instance.id} is {instance.status.value}"
            )
        if status == TaskStatus.PENDING:
            live = await self._repository.list_tasks(
                workflow_instance_id=instance.id,
                task_name=stage,
                status=TaskStatus.PENDING,
            )
            if live:
                logger.critical(
                    f"Workflow {instance.id} already has a pending {stage.value} task ({live[0].id})"
                )
                raise InvariantViolation(
                    f"Workflow {instance.id} already has a pending {stage.value} task"
                )

        now = self._clock()
        if due_days is not None:
            fields.setdefault("start_date", now)
            fields.setdefault("end_date", now + timedelta(days=due_days))
        task = WorkflowTask(
            workflow_instance_id=instance.id,
            task_name=stage,
            assignee=assignee,
            status=status,
            instructions=instance.instructions if instructions is None else instructions,
            created_at=now,
            **fields,
        )
        return await self._repository.create_task(task)
