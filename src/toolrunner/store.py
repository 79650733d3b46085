from __future__ import annotations

import json
import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .models import Job, JobStatus, ToolName, ToolResult, result_from_dict
from .utils import new_job_id, utc_now_iso

CANCELLED_MESSAGE = "Job cancelled by user"


class StoreError(RuntimeError):
    pass


class MalformedJobError(StoreError):
    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id


def _enum_check(values: list[str]) -> str:
    return ", ".join(f"'{value}'" for value in values)


def _row_to_job(row: sqlite3.Row) -> Job:
    try:
        return _decode_row(row)
    except (ValueError, TypeError) as exc:
        raise MalformedJobError(row["id"], f"Malformed job record {row['id']}: {exc}") from exc


def _decode_row(row: sqlite3.Row) -> Job:
    tool_name = ToolName(row["tool_name"])
    params = json.loads(row["params_json"]) if row["params_json"] else {}
    if not isinstance(params, dict):
        raise ValueError("params_json must be a JSON object")
    result_raw = row["result_json"]
    return Job(
        id=row["id"],
        user_id=row["user_id"],
        tool_name=tool_name,
        target_input=row["target_input"],
        target_id=row["target_id"],
        status=JobStatus(row["status"]),
        priority=int(row["priority"]),
        params=params,
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        duration_ms=row["duration_ms"],
        exit_code=row["exit_code"],
        result=result_from_dict(tool_name, json.loads(result_raw)) if result_raw else None,
        result_count=row["result_count"],
        raw_output=row["raw_output"],
        error_output=row["error_output"],
        runner_node=row["runner_node"],
        container_id=row["container_id"],
    )


@contextmanager
def _store_errors(action: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise StoreError(f"{action} failed: {exc}") from exc


class Store:
    def __init__(self, db_path: Path | str) -> None:
        self.db_path = db_path
        with _store_errors("open store"):
            self.conn = sqlite3.connect(str(db_path))
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        self.conn.close()

    def init_schema(self) -> None:
        tools = _enum_check([tool.value for tool in ToolName])
        statuses = _enum_check([status.value for status in JobStatus])
        with _store_errors("init schema"):
            self.conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS tool_jobs (
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    tool_name TEXT NOT NULL CHECK (tool_name IN ({tools})),
                    target_input TEXT NOT NULL,
                    target_id TEXT,
                    status TEXT NOT NULL CHECK (status IN ({statuses})),
                    priority INTEGER NOT NULL DEFAULT 5,
                    params_json TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    duration_ms INTEGER,
                    exit_code INTEGER,
                    result_json TEXT,
                    result_count INTEGER,
                    raw_output TEXT,
                    error_output TEXT,
                    runner_node TEXT,
                    container_id TEXT
                );

                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    runner_node TEXT,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT,
                    type TEXT NOT NULL,
                    title TEXT NOT NULL,
                    message TEXT NOT NULL,
                    link_url TEXT,
                    icon TEXT,
                    metadata_json TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_tool_jobs_claim
                    ON tool_jobs(status, priority, created_at);
                CREATE INDEX IF NOT EXISTS idx_tool_jobs_user_created
                    ON tool_jobs(user_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_job_events_job_timestamp
                    ON job_events(job_id, timestamp);
                """
            )
            self.conn.commit()

    def add_event(
        self,
        job_id: str,
        event_type: str,
        details: dict[str, Any] | None = None,
        runner_node: str | None = None,
    ) -> None:
        with _store_errors("add event"):
            self.conn.execute(
                """
                INSERT INTO job_events(job_id, event_type, runner_node, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (job_id, event_type, runner_node, utc_now_iso(), json.dumps(details or {}, sort_keys=True)),
            )
            self.conn.commit()

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        with _store_errors("list events"):
            rows = self.conn.execute(
                "SELECT * FROM job_events WHERE job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        return [
            {
                "event_type": row["event_type"],
                "runner_node": row["runner_node"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]

    def insert_job(
        self,
        tool_name: ToolName,
        target_input: str,
        *,
        user_id: str | None = None,
        target_id: str | None = None,
        params: dict[str, Any] | None = None,
        priority: int = 5,
        job_id: str | None = None,
        created_at: str | None = None,
    ) -> Job:
        job_id = job_id or new_job_id()
        with _store_errors("insert job"):
            self.conn.execute(
                """
                INSERT INTO tool_jobs(
                    id, user_id, tool_name, target_input, target_id, status, priority,
                    params_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    user_id,
                    tool_name.value,
                    target_input,
                    target_id,
                    JobStatus.QUEUED.value,
                    priority,
                    json.dumps(params) if params else None,
                    created_at or utc_now_iso(),
                ),
            )
            self.conn.commit()
        job = self.get_job(job_id)
        if job is None:
            raise StoreError(f"insert job failed: {job_id} not found after insert")
        return job

    def get_job(self, job_id: str) -> Job | None:
        with _store_errors("get job"):
            row = self.conn.execute("SELECT * FROM tool_jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def claim_next_queued(self) -> Job | None:
        """Return the most urgent QUEUED job without changing it.

        Lowest priority value first, then earliest ``created_at``. The caller
        performs the RUNNING transition; nothing here stops two readers from
        seeing the same job.
        """
        with _store_errors("claim next queued job"):
            row = self.conn.execute(
                """
                SELECT * FROM tool_jobs
                WHERE status = ?
                ORDER BY priority ASC, created_at ASC, rowid ASC
                LIMIT 1
                """,
                (JobStatus.QUEUED.value,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_job(row)

    def update_job(
        self,
        job_id: str,
        *,
        expected_status: JobStatus | None = None,
        status: JobStatus | None = None,
        started_at: str | None = None,
        runner_node: str | None = None,
        completed_at: str | None = None,
        duration_ms: int | None = None,
        exit_code: int | None = None,
        result: ToolResult | None = None,
        raw_output: str | None = None,
        error_output: str | None = None,
        container_id: str | None = None,
    ) -> bool:
        """Apply the given fields. Returns False when no row matched.

        With ``expected_status`` the update only applies while the job is
        still in that status.
        """
        updates: list[str] = []
        values: list[object] = []
        if status is not None:
            updates.append("status = ?")
            values.append(status.value)
        if started_at is not None:
            updates.append("started_at = ?")
            values.append(started_at)
        if runner_node is not None:
            updates.append("runner_node = ?")
            values.append(runner_node)
        if completed_at is not None:
            updates.append("completed_at = ?")
            values.append(completed_at)
        if duration_ms is not None:
            updates.append("duration_ms = ?")
            values.append(duration_ms)
        if exit_code is not None:
            updates.append("exit_code = ?")
            values.append(exit_code)
        if result is not None:
            updates.append("result_json = ?")
            values.append(json.dumps(result.to_dict(), sort_keys=True))
            updates.append("result_count = ?")
            values.append(result.count)
        if raw_output is not None:
            updates.append("raw_output = ?")
            values.append(raw_output)
        if error_output is not None:
            updates.append("error_output = ?")
            values.append(error_output)
        if container_id is not None:
            updates.append("container_id = ?")
            values.append(container_id)
        if not updates:
            return False
        query = f"UPDATE tool_jobs SET {', '.join(updates)} WHERE id = ?"
        values.append(job_id)
        if expected_status is not None:
            query += " AND status = ?"
            values.append(expected_status.value)
        with _store_errors("update job"):
            cursor = self.conn.execute(query, values)
            self.conn.commit()
        return cursor.rowcount > 0

    def cancel_job(self, job_id: str) -> bool:
        with _store_errors("cancel job"):
            cursor = self.conn.execute(
                """
                UPDATE tool_jobs
                SET status = ?, completed_at = ?, error_output = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    JobStatus.CANCELLED.value,
                    utc_now_iso(),
                    CANCELLED_MESSAGE,
                    job_id,
                    JobStatus.QUEUED.value,
                    JobStatus.RUNNING.value,
                ),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def list_jobs(self, user_id: str | None = None, limit: int = 20) -> list[Job]:
        with _store_errors("list jobs"):
            if user_id is None:
                rows = self.conn.execute(
                    "SELECT * FROM tool_jobs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = self.conn.execute(
                    """
                    SELECT * FROM tool_jobs WHERE user_id = ?
                    ORDER BY created_at DESC, rowid DESC LIMIT ?
                    """,
                    (user_id, limit),
                ).fetchall()
        return [_row_to_job(row) for row in rows]

    def summary_counts(self) -> dict[str, int]:
        with _store_errors("summary counts"):
            rows = self.conn.execute(
                "SELECT status, COUNT(*) AS count FROM tool_jobs GROUP BY status"
            ).fetchall()
        output = {status.value: 0 for status in JobStatus}
        for row in rows:
            output[str(row["status"])] = int(row["count"])
        return output

    def insert_notification(
        self,
        user_id: str | None,
        *,
        type: str,
        title: str,
        message: str,
        link_url: str | None = None,
        icon: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        with _store_errors("insert notification"):
            self.conn.execute(
                """
                INSERT INTO notifications(user_id, type, title, message, link_url, icon, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    type,
                    title,
                    message,
                    link_url,
                    icon,
                    json.dumps(metadata or {}, sort_keys=True),
                    utc_now_iso(),
                ),
            )
            self.conn.commit()

    def list_notifications(self, user_id: str | None = None) -> list[dict[str, Any]]:
        with _store_errors("list notifications"):
            if user_id is None:
                rows = self.conn.execute("SELECT * FROM notifications ORDER BY id").fetchall()
            else:
                rows = self.conn.execute(
                    "SELECT * FROM notifications WHERE user_id = ? ORDER BY id",
                    (user_id,),
                ).fetchall()
        return [
            {
                "user_id": row["user_id"],
                "type": row["type"],
                "title": row["title"],
                "message": row["message"],
                "link_url": row["link_url"],
                "icon": row["icon"],
                "metadata": json.loads(row["metadata_json"]),
                "read": bool(row["read"]),
                "created_at": row["created_at"],
            }
            for row in rows
        ]
