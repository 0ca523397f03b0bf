"""Tests for the reference-counted connection pool."""
import threading
import time

import pytest

from core.connection_pool import ConnectionPool
from core.errors import PoolExhaustedError, ValidationError
from core.metadata_database import MetadataDatabase


class FakeHandle:
    def __init__(self, key):
        self.key = key
        self.closed = False
        self.checkpoints = 0

    def checkpoint(self):
        self.checkpoints += 1

    def close(self):
        self.closed = True


class Factory:
    def __init__(self, delay=0.0):
        self.opened = []
        self.delay = delay
        self._lock = threading.Lock()

    def __call__(self, key):
        if self.delay:
            time.sleep(self.delay)
        handle = FakeHandle(key)
        with self._lock:
            self.opened.append(handle)
        return handle


def test_handle_shared_across_holders():
    factory = Factory()
    pool = ConnectionPool(factory)

    first = pool.acquire("lib")
    second = pool.acquire("lib")

    assert first is second
    assert len(factory.opened) == 1
    assert pool.status()["lib"]["refcount"] == 2


def test_concurrent_acquire_opens_once():
    factory = Factory(delay=0.05)
    pool = ConnectionPool(factory)
    handles = []

    def worker():
        handles.append(pool.acquire("lib"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(factory.opened) == 1
    assert all(h is handles[0] for h in handles)
    assert pool.status()["lib"]["refcount"] == 8


def test_idle_handle_closes_after_timeout(poll_until):
    factory = Factory()
    pool = ConnectionPool(factory, idle_timeout=0.05)

    with pool.connection("lib") as handle:
        pass

    assert poll_until(lambda: not pool.is_open("lib"), timeout=2.0)
    assert handle.closed
    assert handle.checkpoints == 1


def test_reacquire_cancels_idle_close():
    factory = Factory()
    pool = ConnectionPool(factory, idle_timeout=0.1)

    pool.acquire("lib")
    pool.release("lib")
    handle = pool.acquire("lib")
    time.sleep(0.25)

    assert pool.is_open("lib")
    assert not handle.closed
    assert len(factory.opened) == 1


def test_stale_timer_does_not_close_reacquired_handle():
    factory = Factory()
    pool = ConnectionPool(factory, idle_timeout=60.0)
    pool.acquire("lib")
    pool.release("lib")
    stale_generation = pool._entries["lib"].generation

    pool.acquire("lib")
    pool._idle_expired("lib", stale_generation)

    assert pool.is_open("lib")


def test_ceiling_evicts_least_recently_released_idle_handle():
    factory = Factory()
    pool = ConnectionPool(factory, max_open=1)

    x = pool.acquire("X")
    pool.release("X")
    y = pool.acquire("Y")

    assert x.closed
    assert not pool.is_open("X")
    assert pool.is_open("Y")
    assert y.key == "Y"


def test_eviction_picks_oldest_release():
    factory = Factory()
    pool = ConnectionPool(factory, max_open=2)
    a = pool.acquire("A")
    b = pool.acquire("B")
    pool.release("A")
    time.sleep(0.01)
    pool.release("B")

    pool.acquire("C")

    assert a.closed and not b.closed


def test_fail_policy_raises_when_all_held():
    pool = ConnectionPool(Factory(), max_open=1, exhaustion_policy="fail")
    pool.acquire("X")
    with pytest.raises(PoolExhaustedError):
        pool.acquire("Y")


def test_block_policy_times_out():
    pool = ConnectionPool(Factory(), max_open=1, acquire_timeout=0.1)
    pool.acquire("X")
    start = time.monotonic()
    with pytest.raises(PoolExhaustedError):
        pool.acquire("Y")
    assert time.monotonic() - start >= 0.09


def test_block_policy_waits_for_release():
    pool = ConnectionPool(Factory(), max_open=1, acquire_timeout=5.0)
    pool.acquire("X")
    acquired = threading.Event()

    def waiter():
        pool.acquire("Y")
        acquired.set()

    t = threading.Thread(target=waiter)
    t.start()
    time.sleep(0.05)
    assert not acquired.is_set()

    pool.release("X")
    t.join(timeout=2.0)

    assert acquired.is_set()
    assert pool.is_open("Y") and not pool.is_open("X")


def test_unmatched_release_is_ignored():
    pool = ConnectionPool(Factory())
    pool.release("never-acquired")
    assert len(pool) == 0


def test_close_refuses_held_handle():
    pool = ConnectionPool(Factory())
    pool.acquire("lib")
    assert pool.close("lib") is False
    pool.release("lib")
    assert pool.close("lib") is True


def test_close_all_forces_held_handles():
    factory = Factory()
    pool = ConnectionPool(factory)
    pool.acquire("A")
    pool.acquire("B")
    pool.release("B")

    assert pool.close_all() == 2
    assert all(h.closed for h in factory.opened)
    assert len(pool) == 0


def test_release_after_close_all_does_not_touch_reopened_handle():
    pool = ConnectionPool(Factory(), idle_timeout=0.05)
    old = pool.acquire("X")
    pool.close_all()
    new = pool.acquire("X")

    pool.release("X", old)
    time.sleep(0.2)

    assert not new.closed
    assert pool.status()["X"]["refcount"] == 1


def test_connection_context_survives_forced_close():
    pool = ConnectionPool(Factory(), idle_timeout=0.05)
    with pool.connection("X"):
        pool.close_all()
        reopened = pool.acquire("X")
    time.sleep(0.2)

    assert not reopened.closed
    assert pool.is_open("X")


def test_clear_closes_only_idle_handles():
    pool = ConnectionPool(Factory())
    pool.acquire("held")
    pool.acquire("idle")
    pool.release("idle")

    assert pool.clear() == 1
    assert pool.is_open("held")
    assert not pool.is_open("idle")


def test_close_error_is_contained():
    class BrokenHandle(FakeHandle):
        def close(self):
            raise RuntimeError("boom")

    pool = ConnectionPool(BrokenHandle)
    pool.acquire("lib")
    pool.release("lib")
    assert pool.close("lib") is True
    assert not pool.is_open("lib")


@pytest.mark.parametrize("kwargs", [{"max_open": 0}, {"exhaustion_policy": "panic"}])
def test_invalid_configuration(kwargs):
    with pytest.raises(ValidationError):
        ConnectionPool(Factory(), **kwargs)


def test_pool_with_real_database(tmp_library):
    pool = ConnectionPool(MetadataDatabase, idle_timeout=None)
    with pool.connection(tmp_library) as db:
        assert db.count_images() == 0
    assert pool.close(tmp_library)
    assert db.closed
