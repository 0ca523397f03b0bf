import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Optional

from core.errors import PoolExhaustedError, ValidationError

logger = logging.getLogger(__name__)

EXHAUSTION_POLICIES = ("block", "fail")


class _PoolEntry:
    __slots__ = ("handle", "refcount", "opened_at", "last_released", "timer", "generation")

    def __init__(self, handle: Any):
        self.handle = handle
        self.refcount = 0
        self.opened_at = time.monotonic()
        self.last_released = self.opened_at
        self.timer: Optional[threading.Timer] = None
        # Bumped on every acquire/release so a stale idle timer can tell it lost.
        self.generation = 0


class ConnectionPool:
    """
    Reference-counted pool of per-library database handles.

    A handle is opened on first ``acquire``, shared by every concurrent holder,
    and closed ``idle_timeout`` seconds after its last ``release`` unless it
    is acquired again first.  At most ``max_open`` handles are open at once;
    when the ceiling is hit the least-recently-released idle handle is closed
    to make room.  With no idle handle to evict, ``exhaustion_policy`` decides:
    ``"block"`` waits for a release (bounded by ``acquire_timeout``), ``"fail"``
    raises PoolExhaustedError immediately.

    Every state change, including opening and closing handles, happens under
    the single pool condition.
    """

    def __init__(self, db_factory: Callable[[str], Any], idle_timeout: float = 60.0,
                 max_open: int = 4, exhaustion_policy: str = "block",
                 acquire_timeout: Optional[float] = None):
        if max_open < 1:
            raise ValidationError("max_open must be at least 1", field="max_open")
        if exhaustion_policy not in EXHAUSTION_POLICIES:
            raise ValidationError(f"Unknown exhaustion policy: {exhaustion_policy}",
                                  field="exhaustion_policy")
        self._db_factory = db_factory
        self.idle_timeout = idle_timeout
        self.max_open = max_open
        self.exhaustion_policy = exhaustion_policy
        self.acquire_timeout = acquire_timeout
        self._entries: Dict[str, _PoolEntry] = {}
        self._cond = threading.Condition()

    def acquire(self, key: str) -> Any:
        deadline = None if self.acquire_timeout is None else time.monotonic() + self.acquire_timeout
        with self._cond:
            while True:
                entry = self._entries.get(key)
                if entry is not None:
                    entry.refcount += 1
                    entry.generation += 1
                    self._cancel_timer(entry)
                    return entry.handle

                if len(self._entries) < self.max_open:
                    break

                victim = self._least_recently_released_idle()
                if victim is not None:
                    logger.info(f"Pool ceiling ({self.max_open}) reached, evicting idle handle {victim}")
                    self._close_entry(victim)
                    break

                if self.exhaustion_policy == "fail":
                    raise PoolExhaustedError(
                        f"All {self.max_open} handles are in use; cannot open {key}")
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise PoolExhaustedError(
                        f"Timed out after {self.acquire_timeout}s waiting for a handle for {key}")
                logger.debug(f"Pool exhausted, waiting for a free slot for {key}")
                self._cond.wait(remaining)

            handle = self._db_factory(key)
            entry = _PoolEntry(handle)
            entry.refcount = 1
            self._entries[key] = entry
            logger.info(f"Opened pooled handle for {key} ({len(self._entries)}/{self.max_open})")
            return handle

    def release(self, key: str, handle: Any = None) -> None:
        """
        Drop one hold on *key*.  Pass the *handle* returned by ``acquire`` so a
        hold taken before a forced ``close_all`` cannot be charged against a
        handle reopened afterwards.
        """
        with self._cond:
            entry = self._entries.get(key)
            if entry is None or entry.refcount <= 0:
                logger.warning(f"release() without matching acquire for {key}")
                return
            if handle is not None and entry.handle is not handle:
                logger.warning(f"Ignoring release of a closed handle for {key}")
                return
            entry.refcount -= 1
            entry.last_released = time.monotonic()
            entry.generation += 1
            if entry.refcount == 0:
                self._schedule_idle_close(key, entry)
                self._cond.notify_all()

    @contextmanager
    def connection(self, key: str):
        handle = self.acquire(key)
        try:
            yield handle
        finally:
            self.release(key, handle)

    def _schedule_idle_close(self, key: str, entry: _PoolEntry) -> None:
        self._cancel_timer(entry)
        if self.idle_timeout is None:
            return
        timer = threading.Timer(self.idle_timeout, self._idle_expired, args=(key, entry.generation))
        timer.daemon = True
        entry.timer = timer
        timer.start()

    @staticmethod
    def _cancel_timer(entry: _PoolEntry) -> None:
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

    def _idle_expired(self, key: str, generation: int) -> None:
        with self._cond:
            entry = self._entries.get(key)
            if entry is None or entry.generation != generation or entry.refcount != 0:
                return
            logger.info(f"Closing idle handle for {key} after {self.idle_timeout}s")
            self._close_entry(key)

    def _least_recently_released_idle(self) -> Optional[str]:
        idle = [(entry.last_released, key) for key, entry in self._entries.items() if entry.refcount == 0]
        return min(idle)[1] if idle else None

    def _close_entry(self, key: str) -> None:
        # Caller holds self._cond.
        entry = self._entries.pop(key)
        self._cancel_timer(entry)
        try:
            checkpoint = getattr(entry.handle, "checkpoint", None)
            if checkpoint is not None:
                checkpoint()
            entry.handle.close()
        except Exception as e:  # why: one bad handle must not keep the others open
            logger.error(f"Error closing pooled handle for {key}: {e}", exc_info=True)
        self._cond.notify_all()

    def close(self, key: str) -> bool:
        """Close *key* if nobody holds it.  Returns False if it is still held."""
        with self._cond:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.refcount > 0:
                logger.warning(f"Not closing {key}: {entry.refcount} holder(s) outstanding")
                return False
            self._close_entry(key)
            return True

    def close_all(self) -> int:
        """Force-close every handle regardless of holders.  Emergency use only."""
        with self._cond:
            keys = list(self._entries)
            for key in keys:
                entry = self._entries[key]
                if entry.refcount > 0:
                    logger.warning(f"Force-closing {key} with {entry.refcount} holder(s)")
                self._close_entry(key)
        if keys:
            logger.info(f"Closed all {len(keys)} pooled handles")
        return len(keys)

    def clear(self) -> int:
        """Close idle handles only."""
        with self._cond:
            idle = [key for key, entry in self._entries.items() if entry.refcount == 0]
            for key in idle:
                self._close_entry(key)
        return len(idle)

    def is_open(self, key: str) -> bool:
        with self._cond:
            return key in self._entries

    def status(self) -> Dict[str, Dict[str, Any]]:
        now = time.monotonic()
        with self._cond:
            return {
                key: {
                    "refcount": entry.refcount,
                    "open_for": now - entry.opened_at,
                    "idle_for": now - entry.last_released if entry.refcount == 0 else 0.0,
                    "idle_close_pending": entry.timer is not None,
                }
                for key, entry in self._entries.items()
            }

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)
