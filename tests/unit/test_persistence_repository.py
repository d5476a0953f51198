import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from docreview.persistence import (
    Notification,
    NotificationType,
    SQLiteWorkflowRepository,
    Stage,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTask,
)

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def _instance(**overrides) -> WorkflowInstance:
    data = dict(
        name="Q1 Report",
        started_by="1",
        uploader="2",
        preparator="3",
        reviewer="4",
        scheduled_start=NOW,
        instructions="Process carefully",
    )
    data.update(overrides)
    return WorkflowInstance(**data)


def _task(instance_id: str, **overrides) -> WorkflowTask:
    data = dict(
        workflow_instance_id=instance_id,
        task_name=Stage.UPLOAD,
        assignee="2",
        created_at=NOW,
    )
    data.update(overrides)
    return WorkflowTask(**data)


@pytest.mark.asyncio
async def test_instance_round_trip_and_status_filter(repo):
    scheduled = await repo.create_instance(_instance())
    active = await repo.create_instance(
        _instance(name="Budget", status=WorkflowStatus.ACTIVE, actual_start=NOW)
    )

    loaded = await repo.get_instance(scheduled.id)
    assert loaded == scheduled
    assert loaded.scheduled_start.tzinfo is not None
    assert await repo.get_instance("missing") is None

    assert [wf.id for wf in await repo.list_instances()] == [scheduled.id, active.id]
    assert [wf.id for wf in await repo.list_instances(WorkflowStatus.ACTIVE)] == [active.id]


@pytest.mark.asyncio
async def test_activate_instance_only_from_scheduled(repo):
    wf = await repo.create_instance(_instance())

    assert await repo.activate_instance(wf.id, NOW) is True
    assert await repo.activate_instance(wf.id, NOW + timedelta(minutes=1)) is False
    assert await repo.activate_instance("missing", NOW) is False

    loaded = await repo.get_instance(wf.id)
    assert loaded.status == WorkflowStatus.ACTIVE
    assert loaded.actual_start == NOW


@pytest.mark.asyncio
async def test_list_due_instances(repo):
    due = await repo.create_instance(_instance(scheduled_start=NOW - timedelta(hours=1)))
    exact = await repo.create_instance(_instance(scheduled_start=NOW))
    await repo.create_instance(_instance(scheduled_start=NOW + timedelta(seconds=1)))
    await repo.create_instance(
        _instance(scheduled_start=NOW - timedelta(days=1), status=WorkflowStatus.ACTIVE)
    )

    found = await repo.list_due_instances(NOW)
    assert sorted(wf.id for wf in found) == sorted([due.id, exact.id])


@pytest.mark.asyncio
async def test_update_instance(repo):
    wf = await repo.create_instance(_instance(status=WorkflowStatus.ACTIVE))
    wf.status = WorkflowStatus.COMPLETED
    wf.end_time = NOW
    await repo.update_instance(wf)

    loaded = await repo.get_instance(wf.id)
    assert loaded.status == WorkflowStatus.COMPLETED
    assert loaded.end_time == NOW


@pytest.mark.asyncio
async def test_update_pending_task_is_compare_and_set(repo):
    wf = await repo.create_instance(_instance())
    task = await repo.create_task(_task(wf.id))

    task.status = TaskStatus.COMPLETED
    task.original_file_path = "f1.xlsx"
    task.completed_at = NOW
    assert await repo.update_pending_task(task) is True

    task.original_file_path = "other.xlsx"
    assert await repo.update_pending_task(task) is False

    loaded = await repo.get_task(task.id)
    assert loaded.status == TaskStatus.COMPLETED
    assert loaded.original_file_path == "f1.xlsx"
    assert loaded.completed_at == NOW


@pytest.mark.asyncio
async def test_list_tasks_filters_and_keeps_creation_order(repo):
    wf = await repo.create_instance(_instance())
    other = await repo.create_instance(_instance(name="Other"))
    start = await repo.create_task(
        _task(wf.id, task_name=Stage.START, assignee="1", status=TaskStatus.COMPLETED)
    )
    upload = await repo.create_task(_task(wf.id))
    await repo.create_task(_task(other.id))

    history = await repo.list_tasks(workflow_instance_id=wf.id)
    assert [t.id for t in history] == [start.id, upload.id]

    pending_for_uploader = await repo.list_tasks(assignee="2", status=TaskStatus.PENDING)
    assert len(pending_for_uploader) == 2

    starts = await repo.list_tasks(workflow_instance_id=wf.id, task_name=Stage.START)
    assert [t.id for t in starts] == [start.id]


@pytest.mark.asyncio
async def test_notifications_unread_and_mark_read(repo):
    first = await repo.create_notification(
        Notification(user_id="3", message="New preparation task assigned for: Q1", created_at=NOW)
    )
    second = await repo.create_notification(
        Notification(user_id="3", message="rejected", type=NotificationType.ERROR, created_at=NOW)
    )
    await repo.create_notification(Notification(user_id="4", message="other", created_at=NOW))

    assert [n.id for n in await repo.list_notifications("3")] == [first.id, second.id]

    assert await repo.mark_notification_read(first.id) is True
    assert await repo.mark_notification_read("missing") is False

    unread = await repo.list_notifications("3")
    assert [n.id for n in unread] == [second.id]
    assert unread[0].type == NotificationType.ERROR

    everything = await repo.list_notifications("3", unread_only=False)
    assert [n.read for n in everything] == [True, False]


@pytest.mark.asyncio
async def test_atomic_rolls_back_on_error(repo):
    kept = await repo.create_instance(_instance(name="kept"))

    with pytest.raises(RuntimeError):
        async with repo.atomic():
            wf = await repo.create_instance(_instance(name="lost"))
            await repo.create_task(_task(wf.id))
            await repo.activate_instance(kept.id, NOW)
            raise RuntimeError("boom")

    assert [wf.name for wf in await repo.list_instances()] == ["kept"]
    assert await repo.list_tasks() == []
    assert (await repo.get_instance(kept.id)).status == WorkflowStatus.SCHEDULED


@pytest.mark.asyncio
async def test_nested_atomic_joins_outer_unit(repo):
    with pytest.raises(RuntimeError):
        async with repo.atomic():
            async with repo.atomic():
                await repo.create_instance(_instance())
            raise RuntimeError("outer failure")

    assert await repo.list_instances() == []


@pytest.mark.asyncio
async def test_returned_models_are_detached(repo):
    wf = await repo.create_instance(_instance())
    loaded = await repo.get_instance(wf.id)
    loaded.status = WorkflowStatus.COMPLETED

    assert (await repo.get_instance(wf.id)).status == WorkflowStatus.SCHEDULED


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "wf.db"
    repo = SQLiteWorkflowRepository(path)
    wf = await repo.create_instance(_instance())
    task = await repo.create_task(_task(wf.id, end_date=NOW + timedelta(days=1)))

    reopened = SQLiteWorkflowRepository(path)
    assert await reopened.get_instance(wf.id) == wf
    loaded = await reopened.get_task(task.id)
    assert loaded.end_date == NOW + timedelta(days=1)
    assert loaded.task_name == Stage.UPLOAD


@pytest.mark.asyncio
async def test_sqlite_failed_commit_leaves_connection_usable(tmp_path, monkeypatch):
    repo = SQLiteWorkflowRepository(tmp_path / "wf.db")
    execute = repo._execute
    failed = []

    def locked_on_first_commit(query, *params):
        if query == "COMMIT" and not failed:
            failed.append(query)
            raise sqlite3.OperationalError("database is locked")
        return execute(query, *params)

    monkeypatch.setattr(repo, "_execute", locked_on_first_commit)

    with pytest.raises(sqlite3.OperationalError, match="database is locked"):
        await repo.create_instance(_instance(name="lost"))

    assert not repo._conn.in_transaction
    kept = await repo.create_instance(_instance(name="kept"))
    assert [wf.id for wf in await repo.list_instances()] == [kept.id]
