from typing import Any, Dict, List, Callable, Optional
from dataclasses import dataclass, field
from collections import deque
from enum import Enum
import logging
import threading


class EventType(Enum):
    # Scan lifecycle
    SCAN_STARTED = "scan_started"
    SCAN_PROGRESS = "scan_progress"
    SCAN_COMPLETED = "scan_completed"
    SCAN_FAILED = "scan_failed"

    # Watcher deltas, one per filesystem event
    WATCHER_ADD = "watcher_add"
    WATCHER_CHANGE = "watcher_change"
    WATCHER_UNLINK = "watcher_unlink"
    WATCHER_ADD_DIR = "watcher_add_dir"
    WATCHER_UNLINK_DIR = "watcher_unlink_dir"
    WATCHER_ERROR = "watcher_error"
    WATCHER_READY = "watcher_ready"
    WATCHER_EXITED = "watcher_exited"

    # Resource management
    CLEANUP_COMPLETED = "cleanup_completed"
    MEMORY_PRESSURE = "memory_pressure"


@dataclass
class EventData:
    event_type: EventType
    source: str  # Source component name
    timestamp: float


@dataclass
class ScanEventData(EventData):
    library_id: str
    session: Dict[str, Any] = field(default_factory=dict)  # snapshot, see ScanSession.to_dict


@dataclass
class WatcherEventData(EventData):
    library_id: str
    path: Optional[str] = None
    message: str = ""


@dataclass
class CleanupEventData(EventData):
    kind: str  # "routine" or "emergency"
    report: Dict[str, Any] = field(default_factory=dict)


@dataclass
class MemoryPressureEventData(EventData):
    level: str  # "warning" or "danger"
    rss_mb: float


# High-frequency events that are not appended to history to avoid evicting
# genuinely useful events and to reduce lock hold time.
_EPHEMERAL_EVENT_TYPES: frozenset = frozenset({EventType.SCAN_PROGRESS})


class EventSystem:
    """Synchronous publish/subscribe bus.  Callbacks run on the publisher's thread."""

    def __init__(self, history_size: int = 500):
        self._subscribers: Dict[EventType, List[Callable]] = {}
        self._event_history: deque = deque(maxlen=history_size)
        self._lock = threading.Lock()

    def subscribe(self, event_type: EventType, callback: Callable[[EventData], None]):
        with self._lock:
            if event_type not in self._subscribers:
                self._subscribers[event_type] = []
            self._subscribers[event_type].append(callback)
        logging.debug(f"Subscribed to {event_type.value}: {getattr(callback, '__name__', callback)}")

    def unsubscribe(self, event_type: EventType, callback: Callable[[EventData], None]):
        with self._lock:
            if event_type in self._subscribers:
                try:
                    self._subscribers[event_type].remove(callback)
                    logging.debug(f"Unsubscribed from {event_type.value}: {getattr(callback, '__name__', callback)}")
                except ValueError:
                    logging.warning(f"Callback not found for {event_type.value}")

    def publish(self, event_data: EventData):
        with self._lock:
            event_type = event_data.event_type
            if event_type not in _EPHEMERAL_EVENT_TYPES:
                self._event_history.append(event_data)
            # Snapshot the subscriber list so callbacks can safely call subscribe/unsubscribe.
            callbacks = list(self._subscribers.get(event_type, []))

        for callback in callbacks:
            try:
                callback(event_data)
            except Exception as e:
                # why: isolate handler crashes so one broken subscriber can't block others
                logging.error(f"Error in event callback for {event_type.value}: {e}", exc_info=True)

        logging.debug("Published event: %s from %s", event_type.value, event_data.source)

    def get_event_history(self, event_type: Optional[EventType] = None) -> List[EventData]:
        with self._lock:
            history = list(self._event_history)
        if event_type:
            return [e for e in history if e.event_type == event_type]
        return history

    def clear_history(self):
        with self._lock:
            self._event_history.clear()
