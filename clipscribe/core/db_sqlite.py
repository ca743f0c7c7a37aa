"""
SQLite database layer for ClipScribe's subtitle task queue.
Thread-safe via check_same_thread=False + explicit locking.
"""

import sqlite3
import threading
import uuid
import logging
from datetime import datetime, timezone
from pathlib import Path

from clipscribe.core.constants import DB_PATH, TaskStatus, TaskType, TERMINAL_STATUSES
from clipscribe.core.models_sqlite import BatchSubtitleTask

logger = logging.getLogger(__name__)

_SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS subtitle_tasks (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    source_file_path TEXT NOT NULL,
    source_file_name TEXT NOT NULL,
    provider TEXT NOT NULL,
    task_type TEXT NOT NULL DEFAULT 'WHOLE_FILE',
    clip_name TEXT,
    clip_start_ms INTEGER,
    clip_end_ms INTEGER,
    status TEXT NOT NULL DEFAULT 'PENDING',
    progress REAL DEFAULT 0,
    output_path TEXT,
    error_code TEXT,
    error_message TEXT,
    created_at TEXT,
    updated_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_subtitle_tasks_status ON subtitle_tasks(status);
"""

_COLUMNS = (
    'id', 'source_file_path', 'source_file_name', 'provider', 'task_type',
    'clip_name', 'clip_start_ms', 'clip_end_ms', 'status', 'progress',
    'output_path', 'error_code', 'error_message', 'created_at', 'updated_at',
    'completed_at',
)


class Database:
    """SQLite database wrapper for the subtitle task queue."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = Path(db_path or DB_PATH)
        self._lock = threading.RLock()
        self._ensure_dirs()
        self.conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
        )
        self.conn.row_factory = sqlite3.Row
        if str(self.db_path) != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self._migrate()

    def _ensure_dirs(self):
        if str(self.db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _migrate(self):
        with self._lock:
            cur = self.conn.cursor()
            cur.executescript(_CREATE_TABLES)
            cur.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (_SCHEMA_VERSION,),
            )
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn:
                self.conn.close()
                self.conn = None

    # ── Helpers ───────────────────────────────────────────────────────

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> BatchSubtitleTask:
        data = dict(row)
        data.pop('seq', None)
        return BatchSubtitleTask(**data)

    # ── Task CRUD ─────────────────────────────────────────────────────

    def create_task(self, source_file_path: str, provider: str,
                    clip_name: str | None = None,
                    clip_start_ms: int | None = None,
                    clip_end_ms: int | None = None) -> BatchSubtitleTask:
        now = self._now()
        is_clip = clip_start_ms is not None and clip_end_ms is not None
        task = BatchSubtitleTask(
            id=str(uuid.uuid4()),
            source_file_path=source_file_path,
            source_file_name=Path(source_file_path).name,
            provider=provider,
            task_type=TaskType.CLIP_RANGE if is_clip else TaskType.WHOLE_FILE,
            clip_name=clip_name if is_clip else None,
            clip_start_ms=clip_start_ms if is_clip else None,
            clip_end_ms=clip_end_ms if is_clip else None,
            created_at=now,
            updated_at=now,
        )
        values = [getattr(task, c) for c in _COLUMNS]
        with self._lock:
            self.conn.execute(
                f"INSERT INTO subtitle_tasks ({', '.join(_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _COLUMNS)})",
                values,
            )
            self.conn.commit()
        return task

    def get_task(self, task_id: str) -> BatchSubtitleTask | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM subtitle_tasks WHERE id = ?", (task_id,)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def get_all_tasks(self) -> list[BatchSubtitleTask]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM subtitle_tasks ORDER BY seq ASC"
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def get_tasks_by_status(self, *statuses: str) -> list[BatchSubtitleTask]:
        placeholders = ', '.join('?' for _ in statuses)
        with self._lock:
            rows = self.conn.execute(
                f"SELECT * FROM subtitle_tasks WHERE status IN ({placeholders}) ORDER BY seq ASC",
                statuses,
            ).fetchall()
        return [self._row_to_task(r) for r in rows]

    def get_pending_tasks(self) -> list[BatchSubtitleTask]:
        return self.get_tasks_by_status(TaskStatus.PENDING)

    def update_task(self, task_id: str, **kwargs):
        kwargs['updated_at'] = self._now()
        sets = ', '.join(f"{k} = ?" for k in kwargs)
        vals = list(kwargs.values()) + [task_id]
        with self._lock:
            self.conn.execute(
                f"UPDATE subtitle_tasks SET {sets} WHERE id = ?", vals
            )
            self.conn.commit()

    def update_task_status(self, task_id: str, status: str, progress: float | None = None, **extra):
        fields = {'status': status}
        if progress is not None:
            fields['progress'] = progress
        if status in TERMINAL_STATUSES:
            fields['completed_at'] = self._now()
        fields.update(extra)
        self.update_task(task_id, **fields)

    def update_progress(self, task_id: str, progress: float) -> bool:
        """Raise progress of a PROCESSING task; never lowers it.  True if changed."""
        with self._lock:
            cur = self.conn.execute(
                "UPDATE subtitle_tasks SET progress = ?, updated_at = ? "
                "WHERE id = ? AND status = ? AND progress < ?",
                (progress, self._now(), task_id, TaskStatus.PROCESSING, progress),
            )
            self.conn.commit()
            return cur.rowcount > 0

    def mark_interrupted(self, message: str) -> int:
        """PROCESSING rows left by a crash become CANCELLED.  Returns the count."""
        now = self._now()
        with self._lock:
            cur = self.conn.execute(
                "UPDATE subtitle_tasks SET status = ?, error_message = ?, "
                "updated_at = ?, completed_at = ? WHERE status = ?",
                (TaskStatus.CANCELLED, message, now, now, TaskStatus.PROCESSING),
            )
            self.conn.commit()
            return cur.rowcount

    def delete_task(self, task_id: str):
        with self._lock:
            self.conn.execute("DELETE FROM subtitle_tasks WHERE id = ?", (task_id,))
            self.conn.commit()

    def delete_tasks_by_status(self, *statuses: str) -> int:
        placeholders = ', '.join('?' for _ in statuses)
        with self._lock:
            cur = self.conn.execute(
                f"DELETE FROM subtitle_tasks WHERE status IN ({placeholders})", statuses
            )
            self.conn.commit()
            return cur.rowcount

    def delete_all_tasks(self) -> int:
        with self._lock:
            cur = self.conn.execute("DELETE FROM subtitle_tasks")
            self.conn.commit()
            return cur.rowcount
