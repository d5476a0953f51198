"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import sqlite3
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from ..utils.clock import parse_timestamp
from .models import (
    Notification,
    Stage,
    TaskStatus,
    WorkflowInstance,
    WorkflowStatus,
    WorkflowTask,
)
from .repository import WorkflowRepository

_INSTANCE_COLUMNS = (
    "id, name, started_by, uploader, preparator, reviewer, status, frequency, "
    "instructions, scheduled_start, actual_start, end_time"
)
_TASK_COLUMNS = (
    "id, workflow_instance_id, task_name, assignee, status, instructions, "
    "original_file_path, prepared_file_path, reviewer_message, user_comments, "
    "created_at, completed_at, start_date, end_date"
)
_NOTIFICATION_COLUMNS = "id, user_id, message, type, read, created_at"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite.

    The connection runs in autocommit mode; ``atomic()`` wraps its body in
    ``BEGIN IMMEDIATE``/``COMMIT`` so concurrent writers on the same file
    serialize instead of interleaving.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._in_unit: ContextVar[bool] = ContextVar(
            f"sqlite_unit_{id(self)}", default=False
        )
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                started_by TEXT NOT NULL,
                uploader TEXT NOT NULL,
                preparator TEXT NOT NULL,
                reviewer TEXT NOT NULL,
                status TEXT NOT NULL,
                frequency TEXT NOT NULL,
                instructions TEXT,
                scheduled_start TEXT NOT NULL,
                actual_start TEXT,
                end_time TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_tasks (
                id TEXT PRIMARY KEY,
                workflow_instance_id TEXT NOT NULL,
                task_name TEXT NOT NULL,
                assignee TEXT NOT NULL,
                status TEXT NOT NULL,
                instructions TEXT,
                original_file_path TEXT,
                prepared_file_path TEXT,
                reviewer_message TEXT,
                user_comments TEXT,
                created_at TEXT NOT NULL,
                completed_at TEXT,
                start_date TEXT,
                end_date TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                message TEXT NOT NULL,
                type TEXT NOT NULL,
                read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_instance ON workflow_tasks (workflow_instance_id)"
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON workflow_tasks (assignee)"
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        if self._in_unit.get():
            yield
            return
        async with self._lock:
            await asyncio.to_thread(self._execute, "BEGIN IMMEDIATE")
            token = self._in_unit.set(True)
            try:
                yield
            except BaseException:
                await asyncio.to_thread(self._execute, "ROLLBACK")
                raise
            else:
                try:
                    await asyncio.to_thread(self._execute, "COMMIT")
                except BaseException:
                    # A failed COMMIT leaves the transaction open on the connection
                    if self._conn.in_transaction:
                        await asyncio.to_thread(self._execute, "ROLLBACK")
                    raise
            finally:
                self._in_unit.reset(token)

    @staticmethod
    def _row_to_instance(row: sqlite3.Row) -> WorkflowInstance:
        return WorkflowInstance(
            id=row["id"],
            name=row["name"],
            started_by=row["started_by"],
            uploader=row["uploader"],
            preparator=row["preparator"],
            reviewer=row["reviewer"],
            status=row["status"],
            frequency=row["frequency"],
            instructions=row["instructions"],
            scheduled_start=parse_timestamp(row["scheduled_start"]),
            actual_start=parse_timestamp(row["actual_start"]),
            end_time=parse_timestamp(row["end_time"]),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> WorkflowTask:
        return WorkflowTask(
            id=row["id"],
            workflow_instance_id=row["workflow_instance_id"],
            task_name=row["task_name"],
            assignee=row["assignee"],
            status=row["status"],
            instructions=row["instructions"],
            original_file_path=row["original_file_path"],
            prepared_file_path=row["prepared_file_path"],
            reviewer_message=row["reviewer_message"],
            user_comments=row["user_comments"],
            created_at=parse_timestamp(row["created_at"]),
            completed_at=parse_timestamp(row["completed_at"]),
            start_date=parse_timestamp(row["start_date"]),
            end_date=parse_timestamp(row["end_date"]),
        )

    @staticmethod
    def _row_to_notification(row: sqlite3.Row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            message=row["message"],
            type=row["type"],
            read=bool(row["read"]),
            created_at=parse_timestamp(row["created_at"]),
        )

    # ------------------------------------------------------------------
    # Repository API: instances
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        async with self.atomic():
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO workflow_instances ({_INSTANCE_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                instance.id,
                instance.name,
                instance.started_by,
                instance.uploader,
                instance.preparator,
                instance.reviewer,
                instance.status.value,
                instance.frequency.value,
                instance.instructions,
                _ts(instance.scheduled_start),
                _ts(instance.actual_start),
                _ts(instance.end_time),
            )
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        async with self.atomic():
            row = await asyncio.to_thread(
                self._fetchone,
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = ?",
                instance_id,
            )
        return self._row_to_instance(row) if row else None

    async def update_instance(self, instance: WorkflowInstance) -> None:
        async with self.atomic():
            await asyncio.to_thread(
                self._execute,
                """
                UPDATE workflow_instances
                SET name = ?, status = ?, frequency = ?, instructions = ?,
                    scheduled_start = ?, actual_start = ?, end_time = ?
                WHERE id = ?
                """,
                instance.name,
                instance.status.value,
                instance.frequency.value,
                instance.instructions,
                _ts(instance.scheduled_start),
                _ts(instance.actual_start),
                _ts(instance.end_time),
                instance.id,
            )

    async def activate_instance(self, instance_id: str, now: datetime) -> bool:
        async with self.atomic():
            updated = await asyncio.to_thread(
                self._execute,
                "UPDATE workflow_instances SET status = ?, actual_start = ? "
                "WHERE id = ? AND status = ?",
                WorkflowStatus.ACTIVE.value,
                _ts(now),
                instance_id,
                WorkflowStatus.SCHEDULED.value,
            )
        return updated == 1

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        query = f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances"
        params: list[Any] = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(WorkflowStatus(status).value)
        async with self.atomic():
            rows = await asyncio.to_thread(
                self._fetchall, query + " ORDER BY rowid", *params
            )
        return [self._row_to_instance(r) for r in rows]

    async def list_due_instances(self, now: datetime) -> list[WorkflowInstance]:
        # ISO strings with and without microseconds do not sort reliably, so
        # the time comparison happens on parsed values.
        scheduled = await self.list_instances(WorkflowStatus.SCHEDULED)
        return [wf for wf in scheduled if wf.scheduled_start <= now]

    # ------------------------------------------------------------------
    # Repository API: tasks
    async def create_task(self, task: WorkflowTask) -> WorkflowTask:
        async with self.atomic():
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO workflow_tasks ({_TASK_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                task.id,
                task.workflow_instance_id,
                task.task_name.value,
                task.assignee,
                task.status.value,
                task.instructions,
                task.original_file_path,
                task.prepared_file_path,
                task.reviewer_message,
                task.user_comments,
                _ts(task.created_at),
                _ts(task.completed_at),
                _ts(task.start_date),
                _ts(task.end_date),
            )
        return task

    async def get_task(self, task_id: str) -> WorkflowTask | None:
        async with self.atomic():
            row = await asyncio.to_thread(
                self._fetchone,
                f"SELECT {_TASK_COLUMNS} FROM workflow_tasks WHERE id = ?",
                task_id,
            )
        return self._row_to_task(row) if row else None

    async def update_pending_task(self, task: WorkflowTask) -> bool:
        async with self.atomic():
            updated = await asyncio.to_thread(
                self._execute,
                """
                UPDATE workflow_tasks
                SET status = ?, original_file_path = ?, prepared_file_path = ?,
                    reviewer_message = ?, user_comments = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                task.status.value,
                task.original_file_path,
                task.prepared_file_path,
                task.reviewer_message,
                task.user_comments,
                _ts(task.completed_at),
                task.id,
                TaskStatus.PENDING.value,
            )
        return updated == 1

    async def list_tasks(
        self,
        workflow_instance_id: Optional[str] = None,
        assignee: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        task_name: Optional[Stage] = None,
    ) -> list[WorkflowTask]:
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_instance_id is not None:
            clauses.append("workflow_instance_id = ?")
            params.append(workflow_instance_id)
        if assignee is not None:
            clauses.append("assignee = ?")
            params.append(assignee)
        if status is not None:
            clauses.append("status = ?")
            params.append(TaskStatus(status).value)
        if task_name is not None:
            clauses.append("task_name = ?")
            params.append(Stage(task_name).value)
        query = f"SELECT {_TASK_COLUMNS} FROM workflow_tasks"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        async with self.atomic():
            rows = await asyncio.to_thread(
                self._fetchall, query + " ORDER BY rowid", *params
            )
        return [self._row_to_task(r) for r in rows]

    # ------------------------------------------------------------------
    # Repository API: notifications
    async def create_notification(self, notification: Notification) -> Notification:
        async with self.atomic():
            await asyncio.to_thread(
                self._execute,
                f"INSERT INTO notifications ({_NOTIFICATION_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                notification.id,
                notification.user_id,
                notification.message,
                notification.type.value,
                int(notification.read),
                _ts(notification.created_at),
            )
        return notification

    async def list_notifications(
        self, user_id: str, unread_only: bool = True
    ) -> list[Notification]:
        query = f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND read = 0"
        async with self.atomic():
            rows = await asyncio.to_thread(
                self._fetchall, query + " ORDER BY rowid", user_id
            )
        return [self._row_to_notification(r) for r in rows]

    async def mark_notification_read(self, notification_id: str) -> bool:
        async with self.atomic():
            updated = await asyncio.to_thread(
                self._execute,
                "UPDATE notifications SET read = 1 WHERE id = ?",
                notification_id,
            )
        return updated == 1
