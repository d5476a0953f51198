import asyncio

import pytest
from typer.testing import CliRunner

import docreview.persistence as persistence
from docreview import DocumentReviewService
from docreview.cli import app
from docreview.errors import InvariantViolation
from docreview.persistence import (
    InMemoryWorkflowRepository,
    Stage,
    TaskStatus,
    WorkflowStatus,
)

PARTICIPANTS = [
    "--started-by", "1",
    "--uploader", "2",
    "--preparator", "3",
    "--reviewer", "4",
]


@pytest.fixture(autouse=True)
def _isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("DOCREVIEW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("DOCREVIEW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _pending(repo, stage: Stage):
    tasks = asyncio.run(repo.list_tasks(task_name=stage, status=TaskStatus.PENDING))
    assert len(tasks) == 1, f"Expected one pending {stage.value} task, got {tasks}"
    return tasks[0]


def test_submit_then_show_workflow():
    repo = _setup_repo()
    runner = CliRunner()

    result = runner.invoke(
        app,
        ["workflow", "submit", "Q1 Report", *PARTICIPANTS, "--instructions", "Process carefully"],
    )
    assert (
        result.exit_code == 0
    ), f"Command failed with exit code {result.exit_code}. Output: {result.output}"
    [wf] = asyncio.run(repo.list_instances())
    assert f"Workflow {wf.id}: ACTIVE" in result.output

    result = runner.invoke(app, ["workflow", "show", wf.id])
    assert result.exit_code == 0, f"Output: {result.output}"
    output = result.output
    assert "'Q1 Report': ACTIVE" in output
    assert "- START [COMPLETED] 1" in output
    assert "- UPLOAD [PENDING] 2" in output

    result = runner.invoke(app, ["workflow", "list", "--status", "ACTIVE"])
    assert wf.id in result.output

    result_missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert (
        result_missing.exit_code == 1
    ), f"Expected exit code 1 for missing workflow, got {result_missing.exit_code}. Output: {result_missing.output}"
    assert "Workflow instance not found" in result_missing.output


def test_submit_future_workflow_then_tick():
    repo = _setup_repo()
    runner = CliRunner()

    result = runner.invoke(
        app, ["workflow", "submit", "Budget", *PARTICIPANTS, "--start", "2099-01-01T09:00:00"]
    )
    assert result.exit_code == 0, f"Output: {result.output}"
    assert "SCHEDULED" in result.output

    result = runner.invoke(app, ["scheduler", "tick"])
    assert result.exit_code == 0
    assert "Activated 0 workflows" in result.output
    [wf] = asyncio.run(repo.list_instances())
    assert wf.status == WorkflowStatus.SCHEDULED


def test_submit_with_shared_participant_fails():
    repo = _setup_repo()
    runner = CliRunner()

    result = runner.invoke(
        app,
        [
            "workflow", "submit", "Q1 Report",
            "--started-by", "1",
            "--uploader", "2",
            "--preparator", "3",
            "--reviewer", "2",
        ],
    )
    assert result.exit_code == 1
    assert "uploader and reviewer must be different users" in result.output
    assert asyncio.run(repo.list_instances()) == []


def test_task_commands_drive_review_loop():
    repo = _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["workflow", "submit", "Q1 Report", *PARTICIPANTS])

    result = runner.invoke(app, ["task", "list", "2"])
    upload = _pending(repo, Stage.UPLOAD)
    assert upload.id in result.output

    result = runner.invoke(app, ["task", "upload", upload.id, "report.pdf"])
    assert result.exit_code == 1
    assert "Invalid file format" in result.output
    assert _pending(repo, Stage.UPLOAD).id == upload.id

    result = runner.invoke(app, ["task", "upload", upload.id, "f1.xlsx", "--comments", "ok"])
    assert result.exit_code == 0, f"Output: {result.output}"

    result = runner.invoke(app, ["task", "upload", upload.id, "f1.xlsx"])
    assert result.exit_code == 1
    assert "no longer pending" in result.output

    prepare = _pending(repo, Stage.PREPARE)
    result = runner.invoke(app, ["task", "prepare", prepare.id, "f1_prepared.XLSX"])
    assert result.exit_code == 0, f"Output: {result.output}"

    review = _pending(repo, Stage.REVIEW)
    result = runner.invoke(
        app, ["task", "review", review.id, "--decision", "REJECTED", "--message", "fix totals"]
    )
    assert result.exit_code == 0, f"Output: {result.output}"
    assert "rejected" in result.output

    result = runner.invoke(app, ["notification", "list", "3"])
    assert "ERROR" in result.output
    assert "Reviewer feedback: fix totals" in result.output

    result = runner.invoke(app, ["task", "list", "2"])
    assert "No pending tasks" in result.output


def test_notification_read():
    repo = _setup_repo()
    runner = CliRunner()
    runner.invoke(app, ["workflow", "submit", "Q1 Report", *PARTICIPANTS])

    [note] = asyncio.run(repo.list_notifications("2"))
    result = runner.invoke(app, ["notification", "read", note.id])
    assert result.exit_code == 0, f"Output: {result.output}"

    result = runner.invoke(app, ["notification", "list", "2"])
    assert "No notifications" in result.output
    result = runner.invoke(app, ["notification", "list", "2", "--all"])
    assert note.id in result.output

    result = runner.invoke(app, ["notification", "read", "missing"])
    assert result.exit_code == 1
    assert "Notification not found" in result.output


def test_invariant_violation_exits_with_generic_error(monkeypatch):
    _setup_repo()

    async def broken_tick(self, now=None):
        raise InvariantViolation("review requires a completed upload for wf-secret")

    monkeypatch.setattr(DocumentReviewService, "tick", broken_tick)

    result = CliRunner().invoke(app, ["scheduler", "tick"])
    assert (
        result.exit_code == 2
    ), f"Expected exit code 2 for an invariant violation, got {result.exit_code}. Output: {result.output}"
    assert "System error: the request could not be processed" in result.output
    assert "wf-secret" not in result.output
    assert "Activated" not in result.output
