import threading
import time

import pytest

from core.worker_pool import Priority, TaskState, WorkerPool


@pytest.fixture()
def pool():
    wp = WorkerPool(num_workers=1)
    yield wp
    wp.shutdown(timeout=2.0)


def test_submit_runs_task_and_reports_result(pool):
    handle = pool.submit("t1", lambda a, b: a + b, 2, 3)
    assert handle.wait(2.0)
    assert handle.state == TaskState.COMPLETED
    assert handle.result == 5


def test_failure_goes_to_handle(pool):
    def boom():
        raise ValueError("nope")

    handle = pool.submit("t1", boom)
    assert handle.wait(2.0)
    assert handle.state == TaskState.FAILED
    assert isinstance(handle.error, ValueError)


def test_duplicate_task_id_returns_same_handle(pool):
    gate = threading.Event()
    first = pool.submit("same", gate.wait, 2.0)
    second = pool.submit("same", gate.wait, 2.0)
    assert first is second
    gate.set()
    assert first.wait(2.0)


def test_higher_priority_runs_first(pool):
    gate = threading.Event()
    order = []
    pool.submit("blocker", gate.wait, 2.0)
    time.sleep(0.05)  # let the single worker pick up the blocker
    low = pool.submit("low", order.append, "low", priority=Priority.BACKGROUND)
    high = pool.submit("high", order.append, "high", priority=Priority.FULL_SCAN)
    gate.set()

    assert low.wait(2.0) and high.wait(2.0)
    assert order == ["high", "low"]


def test_done_callback_fires_even_when_added_late(pool):
    handle = pool.submit("t", lambda: "ok")
    handle.wait(2.0)
    seen = []
    handle.add_done_callback(lambda h: seen.append(h.result))
    assert seen == ["ok"]


def test_shutdown_fails_queued_tasks_and_rejects_new_ones():
    wp = WorkerPool(num_workers=1)
    gate = threading.Event()
    wp.submit("blocker", gate.wait, 0.3)
    time.sleep(0.05)
    queued = wp.submit("queued", lambda: None)

    wp.shutdown(timeout=2.0)

    assert queued.state == TaskState.FAILED
    with pytest.raises(RuntimeError):
        wp.submit("late", lambda: None)
