"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import asyncpg

from ..utils.clock import ensure_utc
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


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL.

    Outside ``atomic()`` every call opens its own connection. Inside it, calls
    share one connection and one transaction.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False
        self._unit_conn: ContextVar[Optional[asyncpg.Connection]] = ContextVar(
            f"postgres_unit_{id(self)}", default=None
        )

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_instances (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                started_by TEXT NOT NULL,
                uploader TEXT NOT NULL,
                preparator TEXT NOT NULL,
                reviewer TEXT NOT NULL,
                status TEXT NOT NULL,
                frequency TEXT NOT NULL,
                instructions TEXT,
                scheduled_start TIMESTAMPTZ NOT NULL,
                actual_start TIMESTAMPTZ,
                end_time TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_tasks (
                seq BIGSERIAL,
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
                created_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                start_date TIMESTAMPTZ,
                end_date TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS notifications (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                message TEXT NOT NULL,
                type TEXT NOT NULL,
                read BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[asyncpg.Connection]:
        conn = self._unit_conn.get()
        if conn is not None:
            yield conn
            return
        conn = await self._connect()
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        if self._unit_conn.get() is not None:
            yield
            return
        conn = await self._connect()
        token = self._unit_conn.set(conn)
        try:
            async with conn.transaction():
                yield
        finally:
            self._unit_conn.reset(token)
            await conn.close()

    @staticmethod
    def _row_to_instance(r: asyncpg.Record) -> WorkflowInstance:
        return WorkflowInstance(
            id=r["id"],
            name=r["name"],
            started_by=r["started_by"],
            uploader=r["uploader"],
            preparator=r["preparator"],
            reviewer=r["reviewer"],
            status=r["status"],
            frequency=r["frequency"],
            instructions=r["instructions"],
            scheduled_start=r["scheduled_start"],
            actual_start=r["actual_start"],
            end_time=r["end_time"],
        )

    @staticmethod
    def _row_to_task(r: asyncpg.Record) -> WorkflowTask:
        return WorkflowTask(
            id=r["id"],
            workflow_instance_id=r["workflow_instance_id"],
            task_name=r["task_name"],
            assignee=r["assignee"],
            status=r["status"],
            instructions=r["instructions"],
            original_file_path=r["original_file_path"],
            prepared_file_path=r["prepared_file_path"],
            reviewer_message=r["reviewer_message"],
            user_comments=r["user_comments"],
            created_at=r["created_at"],
            completed_at=r["completed_at"],
            start_date=r["start_date"],
            end_date=r["end_date"],
        )

    @staticmethod
    def _row_to_notification(r: asyncpg.Record) -> Notification:
        return Notification(
            id=r["id"],
            user_id=r["user_id"],
            message=r["message"],
            type=r["type"],
            read=r["read"],
            created_at=r["created_at"],
        )

    # ------------------------------------------------------------------
    async def create_instance(self, instance: WorkflowInstance) -> WorkflowInstance:
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT INTO workflow_instances ({_INSTANCE_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)",
                instance.id,
                instance.name,
                instance.started_by,
                instance.uploader,
                instance.preparator,
                instance.reviewer,
                instance.status.value,
                instance.frequency.value,
                instance.instructions,
                instance.scheduled_start,
                instance.actual_start,
                instance.end_time,
            )
        return instance

    async def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances WHERE id = $1",
                instance_id,
            )
        return self._row_to_instance(row) if row else None

    async def update_instance(self, instance: WorkflowInstance) -> None:
        async with self._connection() as conn:
            await conn.execute(
                """
                UPDATE workflow_instances
                SET name = $1, status = $2, frequency = $3, instructions = $4,
                    scheduled_start = $5, actual_start = $6, end_time = $7
                WHERE id = $8
                """,
                instance.name,
                instance.status.value,
                instance.frequency.value,
                instance.instructions,
                instance.scheduled_start,
                instance.actual_start,
                instance.end_time,
                instance.id,
            )

    async def activate_instance(self, instance_id: str, now: datetime) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                "UPDATE workflow_instances SET status = $1, actual_start = $2 "
                "WHERE id = $3 AND status = $4",
                WorkflowStatus.ACTIVE.value,
                ensure_utc(now),
                instance_id,
                WorkflowStatus.SCHEDULED.value,
            )
        return result == "UPDATE 1"

    async def list_instances(
        self, status: Optional[WorkflowStatus] = None
    ) -> list[WorkflowInstance]:
        async with self._connection() as conn:
            if status is None:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances ORDER BY seq"
                )
            else:
                rows = await conn.fetch(
                    f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances "
                    "WHERE status = $1 ORDER BY seq",
                    WorkflowStatus(status).value,
                )
        return [self._row_to_instance(r) for r in rows]

    async def list_due_instances(self, now: datetime) -> list[WorkflowInstance]:
        async with self._connection() as conn:
            rows = await conn.fetch(
                f"SELECT {_INSTANCE_COLUMNS} FROM workflow_instances "
                "WHERE status = $1 AND scheduled_start <= $2 ORDER BY seq",
                WorkflowStatus.SCHEDULED.value,
                ensure_utc(now),
            )
        return [self._row_to_instance(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_task(self, task: WorkflowTask) -> WorkflowTask:
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT INTO workflow_tasks ({_TASK_COLUMNS}) VALUES "
                "($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)",
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
                task.created_at,
                task.completed_at,
                task.start_date,
                task.end_date,
            )
        return task

    async def get_task(self, task_id: str) -> WorkflowTask | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(
                f"SELECT {_TASK_COLUMNS} FROM workflow_tasks WHERE id = $1", task_id
            )
        return self._row_to_task(row) if row else None

    async def update_pending_task(self, task: WorkflowTask) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                """
                UPDATE workflow_tasks
                SET status = $1, original_file_path = $2, prepared_file_path = $3,
                    reviewer_message = $4, user_comments = $5, completed_at = $6
                WHERE id = $7 AND status = $8
                """,
                task.status.value,
                task.original_file_path,
                task.prepared_file_path,
                task.reviewer_message,
                task.user_comments,
                task.completed_at,
                task.id,
                TaskStatus.PENDING.value,
            )
        return result == "UPDATE 1"

    async def list_tasks(
        self,
        workflow_instance_id: Optional[str] = None,
        assignee: Optional[str] = None,
        status: Optional[TaskStatus] = None,
        task_name: Optional[Stage] = None,
    ) -> list[WorkflowTask]:
        filters = {
            "workflow_instance_id": workflow_instance_id,
            "assignee": assignee,
            "status": TaskStatus(status).value if status is not None else None,
            "task_name": Stage(task_name).value if task_name is not None else None,
        }
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in filters.items():
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        query = f"SELECT {_TASK_COLUMNS} FROM workflow_tasks"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        async with self._connection() as conn:
            rows = await conn.fetch(query + " ORDER BY seq", *params)
        return [self._row_to_task(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_notification(self, notification: Notification) -> Notification:
        async with self._connection() as conn:
            await conn.execute(
                f"INSERT INTO notifications ({_NOTIFICATION_COLUMNS}) "
                "VALUES ($1, $2, $3, $4, $5, $6)",
                notification.id,
                notification.user_id,
                notification.message,
                notification.type.value,
                notification.read,
                notification.created_at,
            )
        return notification

    async def list_notifications(
        self, user_id: str, unread_only: bool = True
    ) -> list[Notification]:
        query = f"SELECT {_NOTIFICATION_COLUMNS} FROM notifications WHERE user_id = $1"
        if unread_only:
            query += " AND NOT read"
        async with self._connection() as conn:
            rows = await conn.fetch(query + " ORDER BY seq", user_id)
        return [self._row_to_notification(r) for r in rows]

    async def mark_notification_read(self, notification_id: str) -> bool:
        async with self._connection() as conn:
            result = await conn.execute(
                "UPDATE notifications SET read = TRUE WHERE id = $1", notification_id
            )
        return result == "UPDATE 1"
