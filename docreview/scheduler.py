"""Workflow creation and scheduled activation."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Optional

import pydantic
from pydantic import BaseModel, field_validator, model_validator

from .constants import DEFAULT_SWEEP_INTERVAL_SECONDS
from .errors import ValidationError
from .persistence.models import Frequency, WorkflowInstance, WorkflowStatus
from .persistence.repository import WorkflowRepository
from .sequencer import TaskSequencer
from .utils.clock import Clock, ensure_utc, utcnow

logger = logging.getLogger(__name__)


class WorkflowSubmission(BaseModel):
    """Input accepted by :meth:`WorkflowScheduler.submit`."""

    name: str
    started_by: str
    scheduled_start: datetime
    frequency: Frequency = Frequency.ONCE
    uploader: str
    preparator: str
    reviewer: str
    instructions: Optional[str] = None

    @field_validator("name", "started_by", "uploader", "preparator", "reviewer")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @model_validator(mode="after")
    def _distinct_participants(self) -> "WorkflowSubmission":
        roles = [
            ("uploader", self.uploader),
            ("preparator", self.preparator),
            ("reviewer", self.reviewer),
        ]
        for i, (role_a, user_a) in enumerate(roles):
            for role_b, user_b in roles[i + 1 :]:
                if user_a == user_b:
                    raise ValueError(f"{role_a} and {role_b} must be different users")
        return self


def _as_validation_error(exc: pydantic.ValidationError) -> ValidationError:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err["loc"]) or "participants"
    cause = (err.get("ctx") or {}).get("error")
    message = str(cause) if cause else err["msg"]
    if field != "participants":
        message = f"{field}: {message}"
    return ValidationError(message, field=field)


class WorkflowScheduler:
    """Creates workflow instances and promotes due ones from SCHEDULED to ACTIVE."""

    def __init__(
        self,
        repository: WorkflowRepository,
        sequencer: TaskSequencer,
        clock: Clock = utcnow,
        interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        self._repository = repository
        self._sequencer = sequencer
        self._clock = clock
        self.interval = interval

    async def submit(
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
        """Create a workflow, activating it at once if its start time has passed.

        Raises:
            ValidationError: If a field is empty, the frequency is unknown or
                two roles share the same user. Nothing is persisted.
        """
        try:
            submission = WorkflowSubmission(
                name=name,
                started_by=started_by,
                scheduled_start=scheduled_start,
                frequency=frequency,
                uploader=uploader,
                preparator=preparator,
                reviewer=reviewer,
                instructions=instructions,
            )
        except pydantic.ValidationError as exc:
            error = _as_validation_error(exc)
            logger.warning(f"Rejected workflow submission '{name}': {error}")
            raise error from exc

        now = ensure_utc(self._clock())
        instance = WorkflowInstance(**submission.model_dump())
        logger.info(
            f"Creating workflow '{instance.name}' by {instance.started_by}; participants "
            f"uploader={instance.uploader} preparator={instance.preparator} reviewer={instance.reviewer}"
        )

        if instance.scheduled_start <= now:
            instance.status = WorkflowStatus.ACTIVE
            instance.actual_start = now
            async with self._repository.atomic():
                await self._repository.create_instance(instance)
                await self._sequencer.emit_start(instance)
            logger.info(f"Workflow {instance.id} started immediately")
        else:
            instance.status = WorkflowStatus.SCHEDULED
            await self._repository.create_instance(instance)
            logger.info(
                f"Workflow {instance.id} scheduled to start at {instance.scheduled_start}"
            )
        return instance

    async def tick(self, now: Optional[datetime] = None) -> list[WorkflowInstance]:
        """Activate every SCHEDULED workflow whose start time is at or before ``now``.

        Each instance is activated in its own unit of work. A failure is logged
        and rolled back without affecting the others. Instances already moved
        out of SCHEDULED, by an earlier sweep or a concurrent worker, are skipped.

        Returns:
            The instances activated by this sweep.
        """
        now = ensure_utc(now if now is not None else self._clock())
        due = await self._repository.list_due_instances(now)
        if not due:
            logger.debug(f"No scheduled workflows ready to start at {now}")
            return []

        logger.info(f"Found {len(due)} scheduled workflows ready to start")
        activated: list[WorkflowInstance] = []
        for candidate in due:
            try:
                instance = await self._activate(candidate.id, now)
            except Exception:
                logger.exception(
                    f"Failed to activate workflow '{candidate.name}' ({candidate.id})"
                )
                continue
            if instance is not None:
                activated.append(instance)
        logger.info(f"Activated {len(activated)} of {len(due)} due workflows")
        return activated

    async def _activate(self, instance_id: str, now: datetime) -> WorkflowInstance | None:
        async with self._repository.atomic():
            if not await self._repository.activate_instance(instance_id, now):
                logger.debug(f"Workflow {instance_id} already activated elsewhere")
                return None
            instance = await self._repository.get_instance(instance_id)
            await self._sequencer.emit_start(instance)
        logger.info(
            f"Activated workflow '{instance.name}' ({instance.id}); upload task for {instance.uploader}"
        )
        return instance

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Sweep on a fixed interval.

        Args:
            lifespan: Maximum time in seconds to keep sweeping. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        logger.info(f"Scheduler running every {self.interval}s")
        while True:
            try:
                await self.tick(self._clock())
            except Exception:
                logger.exception("Scheduler sweep failed")

            if lifespan is not None:
                remaining = lifespan - (loop.time() - start_time)
                if remaining <= 0:
                    break
                await asyncio.sleep(min(self.interval, remaining))
                if loop.time() - start_time >= lifespan:
                    break
            else:
                await asyncio.sleep(self.interval)
