"""End-to-end run of a workflow with one rejection before approval."""

from datetime import datetime, timedelta, timezone

import pytest

from docreview import DocumentReviewService
from docreview.config import DocReviewConfig
from docreview.persistence import (
    NotificationType,
    Stage,
    TaskStatus,
    WorkflowStatus,
)

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


async def _only_pending(service, user_id):
    tasks = await service.get_tasks_for_assignee(user_id)
    assert len(tasks) == 1, f"Expected one pending task for {user_id}, got {tasks}"
    return tasks[0]


@pytest.mark.asyncio
async def test_rejected_then_approved_review(repo, clock):
    service = DocumentReviewService(repository=repo, config=DocReviewConfig(), clock=clock)

    wf = await service.submit_workflow(
        "Q1 Report",
        "1",
        NOW - timedelta(hours=1),
        "ONCE",
        "2",
        "3",
        "4",
        "Process carefully",
    )
    assert wf.status == WorkflowStatus.ACTIVE

    upload = await _only_pending(service, "2")
    assert upload.task_name == Stage.UPLOAD
    clock.advance(hours=1)
    await service.complete_upload(upload.id, "f1.xlsx", "ok")

    prepare = await _only_pending(service, "3")
    assert prepare.original_file_path == "f1.xlsx"
    clock.advance(hours=1)
    await service.complete_prepare(prepare.id, "f1_prepared.xlsx", "done")

    [review] = await service.get_review_tasks_for_assignee("4")
    assert review.original_file_path == "f1.xlsx"
    assert review.prepared_file_path == "f1_prepared.xlsx"
    clock.advance(hours=1)
    await service.complete_review(review.id, "REJECTED", "redo headers")

    rework = await _only_pending(service, "3")
    assert rework.task_name == Stage.PREPARE
    assert rework.id != prepare.id
    assert rework.original_file_path == "f1.xlsx"
    clock.advance(hours=1)
    await service.complete_prepare(rework.id, "f1_v2.xlsx")

    second_review = await _only_pending(service, "4")
    assert second_review.prepared_file_path == "f1_v2.xlsx"
    assert second_review.original_file_path == "f1.xlsx"
    clock.advance(hours=1)
    await service.complete_review(second_review.id, "APPROVED", "good")

    final = await service.get_instance(wf.id)
    assert final.status == WorkflowStatus.COMPLETED
    assert final.end_time == clock.now

    history = await service.get_workflow_history(wf.id)
    assert [(t.task_name, t.status) for t in history] == [
        (Stage.START, TaskStatus.COMPLETED),
        (Stage.UPLOAD, TaskStatus.COMPLETED),
        (Stage.PREPARE, TaskStatus.COMPLETED),
        (Stage.REVIEW, TaskStatus.REJECTED),
        (Stage.PREPARE, TaskStatus.COMPLETED),
        (Stage.REVIEW, TaskStatus.COMPLETED),
        (Stage.END, TaskStatus.COMPLETED),
    ]
    assert all(t.instructions for t in history)
    assert [t.created_at for t in history] == sorted(t.created_at for t in history)
    for user_id in ("1", "2", "3", "4"):
        assert await service.get_tasks_for_assignee(user_id) == []

    def summary(notes):
        return [(n.type, n.message) for n in notes]

    assert summary(await service.get_notifications("2")) == [
        (NotificationType.INFO, "New upload task assigned: Q1 Report"),
        (NotificationType.SUCCESS, "Workflow 'Q1 Report' completed successfully!"),
    ]
    assert summary(await service.get_notifications("3")) == [
        (NotificationType.INFO, "New preparation task assigned for: Q1 Report"),
        (NotificationType.INFO, "New preparation task assigned for: Q1 Report"),
        (
            NotificationType.ERROR,
            "Document rejected for: Q1 Report. Reviewer feedback: redo headers",
        ),
        (NotificationType.SUCCESS, "Workflow 'Q1 Report' completed successfully!"),
    ]
    assert summary(await service.get_notifications("4")) == [
        (NotificationType.INFO, "New review task assigned for: Q1 Report"),
        (NotificationType.INFO, "New review task assigned for: Q1 Report"),
        (NotificationType.SUCCESS, "Workflow 'Q1 Report' completed successfully!"),
    ]
    assert await service.get_notifications("1") == []
