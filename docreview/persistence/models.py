"""Data models for persisted workflow state."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from ..utils.clock import ensure_utc, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"


class Stage(str, Enum):
    """Ordered stages of a review workflow."""

    START = "START"
    UPLOAD = "UPLOAD"
    PREPARE = "PREPARE"
    REVIEW = "REVIEW"
    END = "END"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class NotificationType(str, Enum):
    INFO = "INFO"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"


class Frequency(str, Enum):
    """Recurrence tag. Stored for display, never used to re-trigger a run."""

    ONCE = "ONCE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class ReviewDecision(str, Enum):
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class WorkflowInstance(BaseModel):
    """One document review run."""

    id: str = Field(default_factory=new_id)
    name: str
    started_by: str
    uploader: str
    preparator: str
    reviewer: str
    status: WorkflowStatus = WorkflowStatus.SCHEDULED
    frequency: Frequency = Frequency.ONCE
    instructions: Optional[str] = None
    scheduled_start: datetime
    actual_start: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @field_validator("scheduled_start", "actual_start", "end_time")
    @classmethod
    def _to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def participants(self) -> tuple[str, str, str]:
        return (self.uploader, self.preparator, self.reviewer)


class WorkflowTask(BaseModel):
    """A single assignable unit of work within a workflow instance."""

    id: str = Field(default_factory=new_id)
    workflow_instance_id: str
    task_name: Stage
    assignee: str
    status: TaskStatus = TaskStatus.PENDING
    instructions: Optional[str] = None
    original_file_path: Optional[str] = None
    prepared_file_path: Optional[str] = None
    reviewer_message: Optional[str] = None
    user_comments: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("created_at", "completed_at", "start_date", "end_date")
    @classmethod
    def _to_utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class Notification(BaseModel):
    """Fire-and-forget record of an event directed at a user."""

    id: str = Field(default_factory=new_id)
    user_id: str
    message: str
    type: NotificationType = NotificationType.INFO
    read: bool = False
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at")
    @classmethod
    def _to_utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)
