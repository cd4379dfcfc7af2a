"""
Durable task queue backed by the report SQLite database.

Tasks carry only a report id. A single background worker thread polls the
``tasks`` table at a fixed interval and runs the handler in place, so at
most one handler executes at any time. A task is deleted once its handler
returns or raises; failed tasks are never re-enqueued.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Event, Lock, Thread
from typing import Callable, Optional
from uuid import uuid4

from .database import connect, serialize_datetime
from .errors import QueueError

logger = logging.getLogger(__name__)

TaskHandler = Callable[[str], None]


class QueueState(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    STOPPED = "stopped"


class TaskQueue:
    """
    Persisted queue with an explicit lifecycle.

    The queue is created NOT_STARTED; ``enqueue`` only accepts work once
    ``start`` has been called. The object is passed by handle to whoever
    needs to schedule work instead of living in a module-level global.

    Attributes:
        db_path: SQLite file holding the ``tasks`` table
        poll_interval: Seconds between two polls of the store
    """

    TASK_NAME = "process-report"

    def __init__(
        self,
        db_path: Path,
        handler: TaskHandler,
        *,
        poll_interval: float = 5.0,
        concurrency: int = 1,
    ) -> None:
        if concurrency != 1:
            raise ValueError("TaskQueue only supports a concurrency of 1")

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.poll_interval = poll_interval
        self._handler = handler
        self._state = QueueState.NOT_STARTED
        self._state_lock = Lock()
        self._handler_lock = Lock()
        self._stop_event = Event()
        self._thread: Optional[Thread] = None
        self._init_db()

    @property
    def state(self) -> QueueState:
        return self._state

    def _init_db(self) -> None:
        with connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    run_at TEXT NOT NULL,
                    locked_at TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_tasks_run_at
                ON tasks(run_at)
            """)

    def enqueue(self, job_id: str) -> str:
        """
        Persist a task for ``job_id`` that is due immediately.

        Returns:
            The task id

        Raises:
            QueueError: If the queue has not been started (or was stopped)
        """
        if self._state is not QueueState.RUNNING:
            raise QueueError(f"Task queue not initialized (state: {self._state.value})")

        task_id = uuid4().hex
        now = serialize_datetime(datetime.utcnow())
        with connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO tasks (id, name, job_id, created_at, run_at) VALUES (?, ?, ?, ?, ?)",
                (task_id, self.TASK_NAME, job_id, now, now),
            )
        logger.info(f"Enqueued {self.TASK_NAME} task {task_id} for report {job_id}")
        return task_id

    def start(self) -> None:
        """Start the polling worker thread. Calling it on a running queue is a no-op."""
        with self._state_lock:
            if self._state is QueueState.RUNNING:
                return

            released = self._release_stale_locks()
            if released:
                logger.warning(f"Released {released} task(s) locked by a previous worker")

            self._stop_event.clear()
            self._thread = Thread(target=self._run_loop, name="task-queue-worker", daemon=True)
            self._state = QueueState.RUNNING
            self._thread.start()
        logger.info(f"Task queue started (poll interval {self.poll_interval}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling and wait for the in-flight handler, if any, to return."""
        with self._state_lock:
            if self._state is not QueueState.RUNNING:
                return
            self._state = QueueState.STOPPED
            self._stop_event.set()
            thread = self._thread
            self._thread = None

        if thread is not None:
            thread.join(timeout)
        logger.info("Task queue stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception:  # noqa: BLE001
                logger.exception("Task queue poll failed")
            self._stop_event.wait(self.poll_interval)

    def run_pending(self) -> int:
        """
        Run every task that is currently due, one after another.

        Returns:
            Number of tasks whose handler was invoked
        """
        ran = 0
        with self._handler_lock:
            while not self._stop_event.is_set():
                claimed = self._claim_next()
                if claimed is None:
                    break
                task_id, job_id = claimed
                self._dispatch(task_id, job_id)
                ran += 1
        return ran

    def _dispatch(self, task_id: str, job_id: str) -> None:
        logger.info(f"Dispatching task {task_id} for report {job_id}")
        try:
            self._handler(job_id)
        except Exception:  # noqa: BLE001
            logger.exception(f"Handler for task {task_id} (report {job_id}) raised")
        finally:
            self._acknowledge(task_id)

    def _claim_next(self) -> Optional[tuple[str, str]]:
        now = serialize_datetime(datetime.utcnow())
        with connect(self.db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT id, job_id FROM tasks
                WHERE locked_at IS NULL AND run_at <= ?
                ORDER BY run_at, rowid
                LIMIT 1
                """,
                (now,),
            ).fetchone()
            if row is None:
                return None
            conn.execute("UPDATE tasks SET locked_at = ? WHERE id = ?", (now, row["id"]))
            return row["id"], row["job_id"]

    def _acknowledge(self, task_id: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))

    def _release_stale_locks(self) -> int:
        with connect(self.db_path) as conn:
            cursor = conn.execute("UPDATE tasks SET locked_at = NULL WHERE locked_at IS NOT NULL")
            return cursor.rowcount

    def pending_count(self) -> int:
        with connect(self.db_path) as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM tasks").fetchone()
            return int(row["n"])
