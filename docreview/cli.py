"""Command line interface for document review workflows."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import PurePath
from typing import Awaitable, Optional, TypeVar

import typer

from docreview import DocumentReviewService, get_repository
from docreview.config import load_config
from docreview.errors import InvariantViolation, NotFoundError, ValidationError
from docreview.persistence.models import Frequency, ReviewDecision, WorkflowStatus
from docreview.utils.clock import utcnow

T = TypeVar("T")

app = typer.Typer(help="CLI for document review workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
task_app = typer.Typer(help="Commands for working on tasks")
notification_app = typer.Typer(help="Commands for reading notifications")
scheduler_app = typer.Typer(help="Commands for activating scheduled workflows")

app.add_typer(workflow_app, name="workflow")
app.add_typer(task_app, name="task")
app.add_typer(notification_app, name="notification")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main() -> None:
    """docreview CLI entry point."""
    config = load_config()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _service() -> DocumentReviewService:
    return DocumentReviewService(repository=get_repository(), config=load_config())


def _run(coro: Awaitable[T]) -> T:
    """Run ``coro`` and map core errors to exit codes."""
    try:
        return asyncio.run(coro)
    except (ValidationError, NotFoundError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except InvariantViolation:
        typer.secho("System error: the request could not be processed", fg=typer.colors.RED)
        raise typer.Exit(code=2)


def _check_extension(path: str) -> None:
    allowed = [ext.lower() for ext in load_config().uploads.allowed_extensions]
    if PurePath(path).suffix.lower() not in allowed:
        typer.secho(
            f"Invalid file format: {path}. Allowed: {', '.join(allowed)}",
            fg=typer.colors.RED,
        )
        raise typer.Exit(code=1)


@workflow_app.command("submit")
def workflow_submit(
    name: str,
    started_by: str = typer.Option(..., "--started-by"),
    uploader: str = typer.Option(...),
    preparator: str = typer.Option(...),
    reviewer: str = typer.Option(...),
    start: Optional[datetime] = typer.Option(
        None, help="Scheduled start (UTC). Defaults to now."
    ),
    frequency: Frequency = typer.Option(Frequency.ONCE),
    instructions: Optional[str] = None,
) -> None:
    """
    Submit a new document review workflow.

    Starts immediately when the scheduled start has passed, otherwise waits
    for a scheduler sweep.

    Example:
        docreview workflow submit "Q1 Report" --started-by 1 --uploader 2 \\
            --preparator 3 --reviewer 4 --instructions "Process carefully"
    """
    service = _service()
    instance = _run(
        service.submit_workflow(
            name,
            started_by,
            start or utcnow(),
            frequency,
            uploader,
            preparator,
            reviewer,
            instructions,
        )
    )
    typer.echo(f"Workflow {instance.id}: {instance.status.value}")


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Filter by status"),
) -> None:
    """List workflows with their current status."""
    service = _service()
    if status is None:
        workflows = _run(service.list_instances())
    else:
        workflows = _run(service.get_instances_by_status(status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status.value}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show a workflow and its task history.

    Example:
        docreview workflow show abc123
        # Output: Workflow abc123 'Q1 Report': ACTIVE
        #         - START [COMPLETED] 1
        #         - UPLOAD [PENDING] 2
    """
    service = _service()
    wf = _run(service.get_instance(workflow_id))
    tasks = _run(service.get_workflow_history(workflow_id))
    typer.echo(f"Workflow {wf.id} '{wf.name}': {wf.status.value}")
    typer.echo(
        f"Participants: uploader={wf.uploader} preparator={wf.preparator} reviewer={wf.reviewer}"
    )
    typer.echo(f"Scheduled: {wf.scheduled_start}  Started: {wf.actual_start}  Ended: {wf.end_time}")
    for task in tasks:
        line = f"- {task.task_name.value} [{task.status.value}] {task.assignee}"
        if task.reviewer_message:
            line += f" \"{task.reviewer_message}\""
        typer.echo(line)


@task_app.command("list")
def task_list(user_id: str) -> None:
    """List pending tasks assigned to a user."""
    service = _service()
    tasks = _run(service.get_tasks_for_assignee(user_id))
    if not tasks:
        typer.echo("No pending tasks")
        return
    for task in tasks:
        typer.echo(f"{task.id}\t{task.task_name.value}\t{task.workflow_instance_id}\tdue {task.end_date}")


@task_app.command("upload")
def task_upload(task_id: str, file_path: str, comments: Optional[str] = None) -> None:
    """Complete an upload task with the stored file reference."""
    _check_extension(file_path)
    _run(_service().complete_upload(task_id, file_path, comments))
    typer.echo(f"Upload task {task_id} completed")


@task_app.command("prepare")
def task_prepare(task_id: str, file_path: str, comments: Optional[str] = None) -> None:
    """Complete a prepare task with the prepared file reference."""
    _check_extension(file_path)
    _run(_service().complete_prepare(task_id, file_path, comments))
    typer.echo(f"Prepare task {task_id} completed")


@task_app.command("review")
def task_review(
    task_id: str,
    decision: ReviewDecision = typer.Option(...),
    message: str = typer.Option(...),
) -> None:
    """Approve or reject a review task."""
    _run(_service().complete_review(task_id, decision, message))
    typer.echo(f"Review task {task_id} {decision.value.lower()}")


@notification_app.command("list")
def notification_list(
    user_id: str,
    all_: bool = typer.Option(False, "--all", help="Include read notifications"),
) -> None:
    """List notifications for a user."""
    notifications = _run(_service().get_notifications(user_id, unread_only=not all_))
    if not notifications:
        typer.echo("No notifications")
        return
    for n in notifications:
        marker = " " if n.read else "*"
        typer.echo(f"{marker} {n.id}\t{n.type.value}\t{n.message}")


@notification_app.command("read")
def notification_read(notification_id: str) -> None:
    """Mark a notification as read."""
    _run(_service().mark_notification_read(notification_id))
    typer.echo(f"Notification {notification_id} marked read")


@scheduler_app.command("tick")
def scheduler_tick() -> None:
    """Run a single activation sweep."""
    activated = _run(_service().tick())
    typer.echo(f"Activated {len(activated)} workflows")
    for wf in activated:
        typer.echo(f"{wf.id}\t{wf.name}")


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
) -> None:
    """Sweep for due workflows on the configured interval."""
    service = _service()
    typer.echo(f"Scheduler started (interval {service.scheduler.interval}s)")
    _run(service.scheduler.run(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
