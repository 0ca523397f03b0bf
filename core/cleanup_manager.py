import gc
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.errors import ValidationError
from core.event_system import CleanupEventData, EventSystem, EventType
from core.memory_monitor import MemorySnapshot, take_snapshot

logger = logging.getLogger(__name__)


@dataclass
class CleanupReport:
    kind: str
    before: MemorySnapshot
    after: MemorySnapshot
    caches_cleared: List[str] = field(default_factory=list)
    connections_closed: int = 0
    objects_collected: int = 0
    duration: float = 0.0

    @property
    def reclaimed_mb(self) -> float:
        return self.before.rss_mb - self.after.rss_mb

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "before": self.before.to_dict(),
            "after": self.after.to_dict(),
            "reclaimed_mb": round(self.reclaimed_mb, 1),
            "caches_cleared": list(self.caches_cleared),
            "connections_closed": self.connections_closed,
            "objects_collected": self.objects_collected,
            "duration": round(self.duration, 3),
        }


class CleanupManager:
    """
    Owns the named caches and runs the two cleanup cycles.

    Routine: clear every registered cache, then ``routine_gc_passes`` collector
    passes.  Emergency: close every pooled connection first, then clear caches
    and run ``emergency_gc_passes``.  The emergency cycle breaks in-flight
    work and is only triggered by a memory-pressure signal.
    """

    def __init__(self, pool=None, interval: float = 60.0, routine_gc_passes: int = 1,
                 emergency_gc_passes: int = 3, event_system: Optional[EventSystem] = None,
                 sampler: Callable[[], MemorySnapshot] = take_snapshot):
        self.pool = pool
        self.interval = interval
        self.routine_gc_passes = routine_gc_passes
        self.emergency_gc_passes = emergency_gc_passes
        self.event_system = event_system
        self._sampler = sampler
        self._caches: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.cycles_run = 0

    def register_cache(self, name: str, cache: Any) -> None:
        if not callable(getattr(cache, "clear", None)):
            raise ValidationError(f"Cache '{name}' has no clear() method", field="cache")
        with self._lock:
            if name in self._caches:
                logger.warning(f"Replacing registered cache '{name}'")
            self._caches[name] = cache
        logger.debug(f"Registered cache '{name}'")

    def unregister_cache(self, name: str) -> bool:
        with self._lock:
            return self._caches.pop(name, None) is not None

    def registered_caches(self) -> List[str]:
        with self._lock:
            return list(self._caches)

    def _clear_caches(self) -> List[str]:
        with self._lock:
            caches = list(self._caches.items())
        cleared = []
        for name, cache in caches:
            try:
                cache.clear()
                cleared.append(name)
            except Exception as e:  # why: one failing cache must not stop the others from being cleared
                logger.error(f"Clearing cache '{name}' failed: {e}", exc_info=True)
        return cleared

    def _collect(self, passes: int) -> int:
        return sum(gc.collect() for _ in range(passes))

    def run_routine(self) -> CleanupReport:
        with self._cycle_lock:
            start = time.monotonic()
            before = self._sampler()
            cleared = self._clear_caches()
            collected = self._collect(self.routine_gc_passes)
            report = CleanupReport("routine", before, self._sampler(), cleared,
                                   objects_collected=collected, duration=time.monotonic() - start)
            self.cycles_run += 1
        logger.debug(f"Routine cleanup: {len(cleared)} caches, {report.reclaimed_mb:.1f}MB reclaimed")
        self._publish(report)
        return report

    def run_emergency(self) -> CleanupReport:
        with self._cycle_lock:
            start = time.monotonic()
            before = self._sampler()
            closed = self.pool.close_all() if self.pool is not None else 0
            cleared = self._clear_caches()
            collected = self._collect(self.emergency_gc_passes)
            report = CleanupReport("emergency", before, self._sampler(), cleared, closed,
                                   objects_collected=collected, duration=time.monotonic() - start)
            self.cycles_run += 1
        logger.warning(f"Emergency cleanup: closed {closed} connections, cleared {len(cleared)} caches, "
                       f"RSS {before.rss_mb:.0f}MB -> {report.after.rss_mb:.0f}MB")
        self._publish(report)
        return report

    def _publish(self, report: CleanupReport) -> None:
        if self.event_system is None:
            return
        self.event_system.publish(CleanupEventData(
            event_type=EventType.CLEANUP_COMPLETED,
            source="cleanup_manager",
            timestamp=time.time(),
            kind=report.kind,
            report=report.to_dict(),
        ))

    def _loop(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.run_routine()
            except Exception as e:  # why: the routine thread must survive a failed cycle
                logger.error(f"Routine cleanup failed: {e}", exc_info=True)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            logger.debug("Routine cleanup already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="CleanupManager", daemon=True)
        self._thread.start()
        logger.info(f"Routine cleanup started (interval={self.interval}s)")

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
