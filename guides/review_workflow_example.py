"""Walk a document review workflow through a rejection and an approval."""

import asyncio
from datetime import timedelta

from docreview import DocumentReviewService
from docreview.config import DocReviewConfig
from docreview.persistence import InMemoryWorkflowRepository
from docreview.utils.clock import utcnow


async def main():
    """Submit a workflow and let each participant finish their task."""
    service = DocumentReviewService(
        repository=InMemoryWorkflowRepository(), config=DocReviewConfig()
    )

    wf = await service.submit_workflow(
        "Q1 Report",
        started_by="1",
        scheduled_start=utcnow() - timedelta(minutes=5),
        frequency="ONCE",
        uploader="2",
        preparator="3",
        reviewer="4",
        instructions="Process carefully",
    )
    print(f"Workflow {wf.id}: {wf.status.value}")

    # Uploader delivers the original
    [upload] = await service.get_tasks_for_assignee("2")
    await service.complete_upload(upload.id, "f1.xlsx", "ok")

    # Preparator delivers a first draft, reviewer sends it back
    [prepare] = await service.get_tasks_for_assignee("3")
    await service.complete_prepare(prepare.id, "f1_prepared.xlsx", "done")
    [review] = await service.get_tasks_for_assignee("4")
    await service.complete_review(review.id, "REJECTED", "redo headers")

    # Second attempt is approved
    [prepare] = await service.get_tasks_for_assignee("3")
    await service.complete_prepare(prepare.id, "f1_v2.xlsx")
    [review] = await service.get_tasks_for_assignee("4")
    await service.complete_review(review.id, "APPROVED", "good")

    print("\nHistory:")
    for task in await service.get_workflow_history(wf.id):
        print(f"  {task.task_name.value:<8} {task.status.value:<10} {task.assignee}")

    print("\nNotifications for preparator:")
    for note in await service.get_notifications("3"):
        print(f"  [{note.type.value}] {note.message}")

    final = await service.get_instance(wf.id)
    print(f"\nWorkflow {final.id}: {final.status.value} at {final.end_time}")


if __name__ == "__main__":
    asyncio.run(main())
