"""docreview: Scheduled document review workflows with a rework loop."""

from .errors import (
    DocReviewError,
    InvariantViolation,
    NotFoundError,
    TaskNotPendingError,
    ValidationError,
)
from .notifications import NotificationRecorder
from .persistence import get_repository
from .scheduler import WorkflowScheduler
from .sequencer import TaskSequencer
from .service import DocumentReviewService

__version__ = "0.1.0"
__all__ = [
    "DocReviewError",
    "DocumentReviewService",
    "InvariantViolation",
    "NotFoundError",
    "NotificationRecorder",
    "TaskNotPendingError",
    "TaskSequencer",
    "ValidationError",
    "WorkflowScheduler",
    "get_repository",
]
