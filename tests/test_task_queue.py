"""
Tests for the SQLite-backed task queue.
"""

import threading
import time
from datetime import datetime

import pytest

from medreport_backend.database import connect, serialize_datetime
from medreport_backend.errors import QueueError
from medreport_backend.task_queue import QueueState, TaskQueue


@pytest.fixture
def make_queue(db_path):
    queues = []

    def factory(handler):
        queue = TaskQueue(db_path, handler, poll_interval=0.05)
        queues.append(queue)
        return queue

    yield factory

    for queue in queues:
        queue.stop(timeout=5)


class TestLifecycle:
    """Explicit NOT_STARTED / RUNNING / STOPPED states."""

    def test_enqueue_before_start_raises(self, make_queue):
        queue = make_queue(lambda job_id: None)

        assert queue.state is QueueState.NOT_STARTED
        with pytest.raises(QueueError, match="not initialized"):
            queue.enqueue("job-1")
        assert queue.pending_count() == 0

    def test_enqueue_after_stop_raises(self, make_queue):
        queue = make_queue(lambda job_id: None)
        queue.start()
        queue.stop(timeout=5)

        assert queue.state is QueueState.STOPPED
        with pytest.raises(QueueError):
            queue.enqueue("job-1")

    def test_start_is_idempotent(self, make_queue):
        queue = make_queue(lambda job_id: None)
        queue.start()
        queue.start()
        assert queue.state is QueueState.RUNNING

    def test_only_concurrency_one_supported(self, db_path):
        with pytest.raises(ValueError):
            TaskQueue(db_path, lambda job_id: None, concurrency=2)


class TestDispatch:
    """Handler invocation, ordering and acknowledgement."""

    def test_handler_receives_job_id(self, make_queue, wait_for):
        seen = []
        queue = make_queue(seen.append)
        queue.start()

        queue.enqueue("job-1")

        assert wait_for(lambda: seen == ["job-1"])
        assert wait_for(lambda: queue.pending_count() == 0)

    def test_failed_task_is_acknowledged_not_retried(self, make_queue, wait_for):
        calls = []

        def handler(job_id):
            calls.append(job_id)
            raise RuntimeError("handler crashed")

        queue = make_queue(handler)
        queue.start()
        queue.enqueue("job-1")

        assert wait_for(lambda: queue.pending_count() == 0)
        time.sleep(0.2)
        assert calls == ["job-1"]

    def test_handlers_never_overlap(self, make_queue, wait_for):
        lock = threading.Lock()
        active = []
        peak = []
        order = []

        def handler(job_id):
            with lock:
                active.append(job_id)
                peak.append(len(active))
            time.sleep(0.05)
            with lock:
                active.remove(job_id)
                order.append(job_id)

        queue = make_queue(handler)
        queue.start()
        for job_id in ("job-1", "job-2", "job-3"):
            queue.enqueue(job_id)

        assert wait_for(lambda: len(order) == 3)
        assert max(peak) == 1
        assert order == ["job-1", "job-2", "job-3"]

    def test_stale_locks_released_on_start(self, make_queue, db_path, wait_for):
        seen = []
        queue = make_queue(seen.append)
        now = serialize_datetime(datetime.utcnow())
        with connect(db_path) as conn:
            conn.execute(
                "INSERT INTO tasks (id, name, job_id, created_at, run_at, locked_at) VALUES (?, ?, ?, ?, ?, ?)",
                ("task-stale", TaskQueue.TASK_NAME, "job-stale", now, now, now),
            )

        queue.start()

        assert wait_for(lambda: seen == ["job-stale"])

    def test_tasks_survive_restart(self, db_path, make_queue, wait_for):
        gate = threading.Event()
        seen = []

        def blocking(job_id):
            seen.append(job_id)
            gate.wait(5)

        first = make_queue(blocking)
        first.start()
        first.enqueue("job-1")
        first.enqueue("job-2")
        assert wait_for(lambda: seen == ["job-1"])

        # stop while job-1 is still running so job-2 is never claimed
        stopper = threading.Thread(target=first.stop, kwargs={"timeout": 5})
        stopper.start()
        assert wait_for(lambda: first.state is QueueState.STOPPED)
        gate.set()
        stopper.join(5)
        assert first.pending_count() == 1

        resumed = []
        second = make_queue(resumed.append)
        second.start()

        assert wait_for(lambda: resumed == ["job-2"])
