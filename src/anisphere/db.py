"""
Task store module.
Provides SQLite persistence for download/transcode tasks and enforces the
task state machine through guarded UPDATE statements.
"""

import os
import sqlite3
import threading
from collections.abc import Callable
from contextlib import contextmanager, suppress
from enum import StrEnum
from typing import Any, TypeVar

import msgspec
from asyncer import asyncify

from . import config, logger
from .result import Result

T = TypeVar("T")


class TaskStatus(StrEnum):
    """Task lifecycle states."""

    PENDING = "pending"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    TRANSCODING = "transcoding"
    TRANSCODED = "transcoded"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskStoreError(Exception):
    """Raised when a task store operation fails."""

    pass


class TaskNotFoundError(TaskStoreError):
    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class InvalidTransitionError(TaskStoreError):
    """Raised when a transition is requested from a status that does not allow it."""

    def __init__(self, task_id: int, status: str, action: str):
        super().__init__(f"Cannot {action} task {task_id} in status '{status}'")
        self.task_id = task_id
        self.status = status


class Task(msgspec.Struct):
    """A persisted download/transcode task."""

    id: int
    status: TaskStatus
    source_url: str | None = None
    torrent_hash: str | None = None
    file_index: int | None = None
    filename: str | None = None
    file_path: str | None = None
    file_size: int | None = None
    needs_transcode: bool = True
    download_progress: int = 0
    transcode_progress: int = 0
    transcode_output_path: str | None = None
    error_message: str | None = None
    failed_at_status: TaskStatus | None = None
    created_at: str | None = None
    updated_at: str | None = None


class NewTask(msgspec.Struct):
    """Fields accepted when creating a task."""

    source_url: str | None = None
    torrent_hash: str | None = None
    file_index: int | None = None
    filename: str | None = None
    file_path: str | None = None
    file_size: int | None = None
    needs_transcode: bool = True
    status: TaskStatus = TaskStatus.PENDING
    download_progress: int = 0


_INSERT_COLUMNS = (
    "source_url",
    "torrent_hash",
    "file_index",
    "filename",
    "file_path",
    "file_size",
    "needs_transcode",
    "status",
    "download_progress",
)


class TaskDatabase:
    """Task database management class.

    Synchronous ``_``-prefixed methods do the SQL work; the public coroutine
    methods run them in a worker thread and wrap the outcome in a ``Result``.
    """

    def __init__(self, db_path: str | None = None):
        """Initialize database connection.

        Args:
            db_path: Database file path, if None uses config directory.
        """
        if db_path is None:
            db_path = os.path.join(config.get_config_dir(), "anisphere.db")

        self.db_path = db_path
        self._local = threading.local()

        db_dir = os.path.dirname(db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._init_database()

    @property
    def connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "connection"):
            self._local.connection = sqlite3.connect(self.db_path, timeout=30)
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    @contextmanager
    def transaction(self):
        """Database transaction context manager.

        Yields:
            sqlite3.Connection: Database connection within transaction.
        """
        conn = self.connection
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    def _init_database(self):
        """Initialize database table structure."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_url TEXT,
                    torrent_hash TEXT,
                    file_index INTEGER,
                    filename TEXT,
                    file_path TEXT,
                    file_size INTEGER,
                    needs_transcode BOOLEAN NOT NULL DEFAULT TRUE,
                    status TEXT NOT NULL DEFAULT 'pending',
                    download_progress INTEGER NOT NULL DEFAULT 0,
                    transcode_progress INTEGER NOT NULL DEFAULT 0,
                    transcode_output_path TEXT,
                    error_message TEXT,
                    failed_at_status TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_torrent_hash ON tasks(torrent_hash)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_source_url ON tasks(source_url)")

    @staticmethod
    def _to_task(row: sqlite3.Row) -> Task:
        return msgspec.convert(dict(row), type=Task, strict=False)

    async def _run(self, func: Callable[..., T], *args: Any) -> Result[T]:
        try:
            return Result.success(await asyncify(func)(*args))
        except TaskStoreError as e:
            return Result.failure(e)
        except (sqlite3.Error, msgspec.ValidationError) as e:
            logger.error(f"Task store error in {func.__name__}: {e}")
            return Result.failure(TaskStoreError(str(e)))

    def _get(self, conn: sqlite3.Connection, task_id: int) -> Task:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if row is None:
            raise TaskNotFoundError(task_id)
        return self._to_task(row)

    def _guarded_update(
        self,
        task_id: int,
        action: str,
        assignments: str,
        params: tuple,
        allowed: tuple[TaskStatus, ...],
    ) -> Task:
        """Apply an UPDATE only when the task is in one of ``allowed`` statuses."""
        placeholders = ", ".join("?" for _ in allowed)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE tasks SET {assignments}, updated_at = CURRENT_TIMESTAMP "
                f"WHERE id = ? AND status IN ({placeholders})",
                (*params, task_id, *allowed),
            )
            task = self._get(conn, task_id)
            if cursor.rowcount == 0:
                raise InvalidTransitionError(task_id, task.status, action)
            return task

    # region Queries

    def _find_by_id(self, task_id: int) -> Task | None:
        row = self.connection.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return self._to_task(row) if row else None

    def _find_by_torrent_hash(self, torrent_hash: str) -> list[Task]:
        rows = self.connection.execute(
            "SELECT * FROM tasks WHERE torrent_hash = ? ORDER BY id", (torrent_hash.lower(),)
        ).fetchall()
        return [self._to_task(row) for row in rows]

    def _find_by_status(self, status: TaskStatus) -> list[Task]:
        rows = self.connection.execute("SELECT * FROM tasks WHERE status = ? ORDER BY id", (status,)).fetchall()
        return [self._to_task(row) for row in rows]

    def _find_by_source_url(self, source_url: str) -> list[Task]:
        rows = self.connection.execute(
            "SELECT * FROM tasks WHERE source_url = ? ORDER BY id", (source_url,)
        ).fetchall()
        return [self._to_task(row) for row in rows]

    async def find_by_id(self, task_id: int) -> Result[Task | None]:
        return await self._run(self._find_by_id, task_id)

    async def find_by_torrent_hash(self, torrent_hash: str) -> Result[list[Task]]:
        return await self._run(self._find_by_torrent_hash, torrent_hash)

    async def find_by_status(self, status: TaskStatus) -> Result[list[Task]]:
        return await self._run(self._find_by_status, status)

    async def find_by_source_url(self, source_url: str) -> Result[list[Task]]:
        return await self._run(self._find_by_source_url, source_url)

    # endregion

    # region Creation

    def _create_many(self, entries: list[NewTask]) -> list[Task]:
        placeholders = ", ".join("?" for _ in _INSERT_COLUMNS)
        created_ids = []
        with self.transaction() as conn:
            for entry in entries:
                cursor = conn.execute(
                    f"INSERT INTO tasks ({', '.join(_INSERT_COLUMNS)}) VALUES ({placeholders})",
                    (
                        entry.source_url,
                        entry.torrent_hash.lower() if entry.torrent_hash else None,
                        entry.file_index,
                        entry.filename,
                        entry.file_path,
                        entry.file_size,
                        entry.needs_transcode,
                        entry.status,
                        entry.download_progress,
                    ),
                )
                created_ids.append(cursor.lastrowid)
            return [self._get(conn, task_id) for task_id in created_ids]

    async def create(self, entry: NewTask) -> Result[Task]:
        result = await self._run(self._create_many, [entry])
        if not result.ok:
            return Result.failure(result.error)
        return Result.success(result.value[0])

    async def create_many(self, entries: list[NewTask]) -> Result[list[Task]]:
        """Insert all entries in one transaction; either every row is created or none."""
        return await self._run(self._create_many, entries)

    # endregion

    # region Download phase

    def _start_download(self, task_id: int, torrent_hash: str) -> Task:
        return self._guarded_update(
            task_id,
            "start download for",
            "status = ?, torrent_hash = ?, download_progress = 0",
            (TaskStatus.DOWNLOADING, torrent_hash.lower()),
            (TaskStatus.PENDING,),
        )

    def _update_download_progress(self, task_id: int, progress: int) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE tasks SET download_progress = ?, updated_at = CURRENT_TIMESTAMP "
                "WHERE id = ? AND status = ? AND download_progress != ?",
                (progress, task_id, TaskStatus.DOWNLOADING, progress),
            )
            return cursor.rowcount > 0

    def _mark_downloaded(self, task_id: int, file_path: str, file_size: int, needs_transcode: bool) -> Task:
        return self._guarded_update(
            task_id,
            "mark downloaded",
            "status = ?, file_path = ?, filename = COALESCE(filename, ?), file_size = ?, "
            "needs_transcode = ?, download_progress = 100",
            (TaskStatus.DOWNLOADED, file_path, os.path.basename(file_path), file_size, needs_transcode),
            (TaskStatus.DOWNLOADING,),
        )

    async def start_download(self, task_id: int, torrent_hash: str) -> Result[Task]:
        return await self._run(self._start_download, task_id, torrent_hash)

    async def update_download_progress(self, task_id: int, progress: int) -> Result[bool]:
        """Store download progress; returns whether the stored value changed."""
        return await self._run(self._update_download_progress, task_id, progress)

    async def mark_downloaded(
        self, task_id: int, file_path: str, file_size: int, needs_transcode: bool = True
    ) -> Result[Task]:
        return await self._run(self._mark_downloaded, task_id, file_path, file_size, needs_transcode)

    # endregion

    # region Transcode phase

    def _mark_transcoding(self, task_id: int) -> Task:
        return self._guarded_update(
            task_id,
            "start transcoding",
            "status = ?, transcode_progress = 0, transcode_output_path = NULL, error_message = NULL",
            (TaskStatus.TRANSCODING,),
            (TaskStatus.PENDING, TaskStatus.DOWNLOADED, TaskStatus.TRANSCODING),
        )

    def _update_transcode_progress(self, task_id: int, progress: int) -> bool:
        progress = max(0, min(int(progress), 100))
        with self.transaction() as conn:
            # Progress never moves backwards while transcoding
            cursor = conn.execute(
                "UPDATE tasks SET transcode_progress = ?, updated_at = CURRENT_TIMESTAMP "
                "WHERE id = ? AND status = ? AND transcode_progress < ?",
                (progress, task_id, TaskStatus.TRANSCODING, progress),
            )
            return cursor.rowcount > 0

    def _mark_transcoded(self, task_id: int, output_path: str) -> Task:
        if not output_path:
            raise TaskStoreError(f"Cannot mark task {task_id} transcoded without an output path")
        return self._guarded_update(
            task_id,
            "mark transcoded",
            "status = ?, transcode_progress = 100, transcode_output_path = ?",
            (TaskStatus.TRANSCODED, output_path),
            (TaskStatus.TRANSCODING,),
        )

    def _mark_failed(self, task_id: int, message: str, failed_at_status: TaskStatus | None) -> Task:
        return self._guarded_update(
            task_id,
            "mark failed",
            "status = ?, error_message = ?, failed_at_status = ?, transcode_output_path = NULL",
            (TaskStatus.FAILED, message, failed_at_status),
            tuple(status for status in TaskStatus if status is not TaskStatus.COMPLETED),
        )

    def _mark_completed(self, task_id: int) -> Task:
        return self._guarded_update(
            task_id, "complete", "status = ?", (TaskStatus.COMPLETED,), (TaskStatus.TRANSCODED,)
        )

    def _reset_by_id(self, task_id: int) -> Task:
        return self._guarded_update(
            task_id,
            "reset",
            "status = ?, error_message = NULL, failed_at_status = NULL, "
            "transcode_progress = 0, transcode_output_path = NULL",
            (TaskStatus.TRANSCODING,),
            (TaskStatus.FAILED,),
        )

    async def mark_transcoding(self, task_id: int) -> Result[Task]:
        return await self._run(self._mark_transcoding, task_id)

    async def update_transcode_progress(self, task_id: int, progress: int) -> Result[bool]:
        """Raise stored transcode progress; lower or equal values are ignored."""
        return await self._run(self._update_transcode_progress, task_id, progress)

    async def mark_transcoded(self, task_id: int, output_path: str) -> Result[Task]:
        return await self._run(self._mark_transcoded, task_id, output_path)

    async def mark_failed(
        self, task_id: int, message: str, failed_at_status: TaskStatus | None = None
    ) -> Result[Task]:
        return await self._run(self._mark_failed, task_id, message, failed_at_status)

    async def mark_completed(self, task_id: int) -> Result[Task]:
        return await self._run(self._mark_completed, task_id)

    async def reset_by_id(self, task_id: int) -> Result[Task]:
        """Return a failed task to ``transcoding`` with error and output fields cleared."""
        return await self._run(self._reset_by_id, task_id)

    # endregion

    def close(self):
        """Close database connection."""
        if hasattr(self._local, "connection"):
            with suppress(sqlite3.Error):
                self._local.connection.close()
            delattr(self._local, "connection")
