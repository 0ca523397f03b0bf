"""Per-library accumulation of watcher events with adaptive debounce.

Watcher messages for a library are folded into one pending state, keyed by
path, so repeated events for a path collapse:

    add + change    -> add
    add + unlink    -> (nothing)
    change + unlink -> unlink
    unlink + add    -> change
    addDir + unlinkDir -> (nothing)

The pending state is flushed once the library has been quiet for a delay
that grows with the number of pending changes.
"""
import logging
import threading
from typing import Callable, Dict, Optional, Tuple

from core.records import ChangeSet
from filewatcher.watcher import ADD, ADD_DIR, CHANGE, UNLINK, UNLINK_DIR

logger = logging.getLogger(__name__)

# (max pending changes, delay in seconds)
DEBOUNCE_STEPS: Tuple[Tuple[int, float], ...] = ((1, 0.8), (5, 1.0), (20, 1.5), (100, 2.0))
MAX_DEBOUNCE = 3.0

FlushCallback = Callable[[str, ChangeSet], bool]


def debounce_for(change_count: int) -> float:
    for limit, delay in DEBOUNCE_STEPS:
        if change_count <= limit:
            return delay
    return MAX_DEBOUNCE


def _fold_file(previous: Optional[str], incoming: str) -> Optional[str]:
    if previous is None:
        return incoming
    if incoming == UNLINK:
        return None if previous == ADD else UNLINK
    if incoming == ADD:
        return CHANGE if previous in (UNLINK, CHANGE) else ADD
    # incoming == CHANGE
    return ADD if previous == ADD else CHANGE


def _fold_dir(previous: Optional[str], incoming: str) -> Optional[str]:
    if previous == ADD_DIR and incoming == UNLINK_DIR:
        return None
    return incoming


class ChangeBuffer:
    """
    Collects watcher messages per library and hands them to ``flush`` as a
    ChangeSet.  ``flush`` returns False when the library is busy; the batch is
    then put back in front of anything that arrived since and retried after
    ``retry_delay`` seconds.
    """

    def __init__(self, flush: FlushCallback, retry_delay: float = 1.0, debounce_scale: float = 1.0):
        self._flush = flush
        self.retry_delay = retry_delay
        self.debounce_scale = debounce_scale
        self._files: Dict[str, Dict[str, str]] = {}
        self._dirs: Dict[str, Dict[str, str]] = {}
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._closed = False

    def add(self, library_id: str, message: Dict[str, str]) -> None:
        event_type = message.get("type")
        path = message.get("path")
        if not path or event_type not in (ADD, CHANGE, UNLINK, ADD_DIR, UNLINK_DIR):
            return
        with self._lock:
            if self._closed:
                return
            self._fold(library_id, event_type, path)
            self._schedule(library_id, debounce_for(self._count(library_id)) * self.debounce_scale)

    def _fold(self, library_id: str, event_type: str, path: str) -> None:
        if event_type in (ADD_DIR, UNLINK_DIR):
            dirs = self._dirs.setdefault(library_id, {})
            folded = _fold_dir(dirs.get(path), event_type)
            target = dirs
        else:
            files = self._files.setdefault(library_id, {})
            folded = _fold_file(files.get(path), event_type)
            target = files
        if folded is None:
            target.pop(path, None)
        else:
            target[path] = folded

    def _count(self, library_id: str) -> int:
        return len(self._files.get(library_id, {})) + len(self._dirs.get(library_id, {}))

    def _schedule(self, library_id: str, delay: float) -> None:
        timer = self._timers.pop(library_id, None)
        if timer is not None:
            timer.cancel()
        if self._count(library_id) == 0:
            return
        timer = threading.Timer(delay, self._on_timer, args=(library_id,))
        timer.daemon = True
        self._timers[library_id] = timer
        timer.start()

    def _on_timer(self, library_id: str) -> None:
        try:
            self.flush_now(library_id)
        except Exception as e:  # why: timer thread boundary; a failed flush drops the batch but not later ones
            logger.error(f"Flushing changes for {library_id} failed: {e}", exc_info=True)

    @staticmethod
    def _to_change_set(files: Dict[str, str], dirs: Dict[str, str]) -> ChangeSet:
        changes = ChangeSet()
        buckets = {ADD: changes.files_added, CHANGE: changes.files_changed, UNLINK: changes.files_removed}
        for path, op in files.items():
            buckets[op].append(path)
        for path, op in dirs.items():
            (changes.dirs_added if op == ADD_DIR else changes.dirs_removed).append(path)
        return changes

    def _take(self, library_id: str) -> ChangeSet:
        return self._to_change_set(self._files.pop(library_id, {}), self._dirs.pop(library_id, {}))

    def pending(self, library_id: str) -> ChangeSet:
        with self._lock:
            return self._to_change_set(dict(self._files.get(library_id, {})),
                                       dict(self._dirs.get(library_id, {})))

    def flush_now(self, library_id: str) -> bool:
        """Hand pending changes to the flush callback.  Returns False if re-queued."""
        with self._lock:
            timer = self._timers.pop(library_id, None)
            if timer is not None:
                timer.cancel()
            changes = self._take(library_id)
        if changes.is_empty():
            return True

        logger.debug(f"Flushing {len(changes)} changes for {library_id}")
        if self._flush(library_id, changes):
            return True

        logger.info(f"Library {library_id} busy, re-queueing {len(changes)} changes")
        with self._lock:
            if self._closed:
                return False
            newer_files = self._files.pop(library_id, {})
            newer_dirs = self._dirs.pop(library_id, {})
            for path in changes.dirs_added:
                self._fold(library_id, ADD_DIR, path)
            for path in changes.dirs_removed:
                self._fold(library_id, UNLINK_DIR, path)
            for op, paths in ((ADD, changes.files_added), (CHANGE, changes.files_changed),
                              (UNLINK, changes.files_removed)):
                for path in paths:
                    self._fold(library_id, op, path)
            for path, op in newer_dirs.items():
                self._fold(library_id, op, path)
            for path, op in newer_files.items():
                self._fold(library_id, op, path)
            self._schedule(library_id, self.retry_delay)
        return False

    def cancel_all(self) -> None:
        with self._lock:
            self._closed = True
            for timer in self._timers.values():
                timer.cancel()
            self._timers.clear()
            self._files.clear()
            self._dirs.clear()
