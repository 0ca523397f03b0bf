"""
Process memory sampling and the memory-pressure signal.

MemoryMonitor samples RSS on an interval and asks the cleanup manager for an
emergency cycle only when the danger threshold is actually crossed.

Usage:
    monitor = MemoryMonitor(cleanup_manager, warning_mb=1024, danger_mb=1536)
    monitor.start()
"""
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import psutil

from core.event_system import EventSystem, EventType, MemoryPressureEventData

logger = logging.getLogger(__name__)

_MB = 1024 * 1024


@dataclass
class MemorySnapshot:
    """Point-in-time memory state."""
    timestamp: float
    rss_bytes: int
    vms_bytes: int
    system_available_bytes: int
    system_total_bytes: int

    @property
    def rss_mb(self) -> float:
        return self.rss_bytes / _MB

    @property
    def system_available_mb(self) -> float:
        return self.system_available_bytes / _MB

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "rss_mb": round(self.rss_mb, 1),
            "vms_mb": round(self.vms_bytes / _MB, 1),
            "system_available_mb": round(self.system_available_mb, 1),
            "system_total_mb": round(self.system_total_bytes / _MB, 1),
        }


def take_snapshot() -> MemorySnapshot:
    """Capture current memory state."""
    info = psutil.Process(os.getpid()).memory_info()
    vm = psutil.virtual_memory()
    return MemorySnapshot(
        timestamp=time.time(),
        rss_bytes=info.rss,
        vms_bytes=info.vms,
        system_available_bytes=vm.available,
        system_total_bytes=vm.total,
    )


class MemoryMonitor:
    """Raises the memory-pressure signal for the CleanupManager.

    Above ``warning_mb`` it only logs.  Above ``danger_mb`` it runs
    ``cleanup_manager.run_emergency()``, at most once per ``cooldown`` seconds.
    """

    def __init__(self, cleanup_manager, warning_mb: float = 1024, danger_mb: float = 1536,
                 check_interval: float = 30.0, cooldown: float = 60.0,
                 event_system: Optional[EventSystem] = None, sampler=take_snapshot):
        if danger_mb < warning_mb:
            raise ValueError("danger_mb must not be below warning_mb")
        self.cleanup_manager = cleanup_manager
        self.warning_mb = warning_mb
        self.danger_mb = danger_mb
        self.check_interval = check_interval
        self.cooldown = cooldown
        self.event_system = event_system
        self._sampler = sampler
        self._last_emergency: Optional[float] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.emergency_count = 0

    def check(self) -> str:
        """Sample once and react.  Returns the pressure level: ok, warning or danger."""
        snapshot = self._sampler()
        rss_mb = snapshot.rss_mb
        if rss_mb >= self.danger_mb:
            level = "danger"
            now = time.monotonic()
            if self._last_emergency is not None and now - self._last_emergency < self.cooldown:
                logger.warning(f"RSS {rss_mb:.0f}MB above danger threshold; emergency cleanup cooling down")
            else:
                logger.warning(f"RSS {rss_mb:.0f}MB above danger threshold {self.danger_mb}MB, running emergency cleanup")
                self._last_emergency = now
                self.emergency_count += 1
                self.cleanup_manager.run_emergency()
        elif rss_mb >= self.warning_mb:
            level = "warning"
            logger.info(f"RSS {rss_mb:.0f}MB above warning threshold {self.warning_mb}MB")
        else:
            return "ok"

        if self.event_system is not None:
            self.event_system.publish(MemoryPressureEventData(
                event_type=EventType.MEMORY_PRESSURE,
                source="memory_monitor",
                timestamp=time.time(),
                level=level,
                rss_mb=rss_mb,
            ))
        return level

    def _loop(self):
        while not self._stop_event.wait(self.check_interval):
            try:
                self.check()
            except Exception as e:  # why: monitor thread must survive a failed sample or cleanup
                logger.error(f"Memory check failed: {e}", exc_info=True)

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="MemoryMonitor", daemon=True)
        self._thread.start()
        logger.info(f"Memory monitor started (warning={self.warning_mb}MB, danger={self.danger_mb}MB)")

    def stop(self, timeout: float = 5.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
