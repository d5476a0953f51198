"""Error taxonomy for document review workflows."""

from __future__ import annotations

from typing import Optional


class DocReviewError(Exception):
    """Base class for all workflow errors."""


class ValidationError(DocReviewError):
    """Raised when caller input breaks a workflow contract.

    ``field`` names the offending input when one can be identified.
    """

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(DocReviewError):
    """Raised when a referenced task, instance or notification does not exist."""


class TaskNotPendingError(NotFoundError):
    """Raised when a task was already completed by a concurrent caller."""


class InvariantViolation(DocReviewError):
    """Raised when task sequencing would break a workflow invariant.

    This signals a bug upstream and is never retried.
    """
