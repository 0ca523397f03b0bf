import itertools
import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core import path_hasher
from core.connection_pool import ConnectionPool
from core.errors import ValidationError
from core.event_system import EventSystem, EventType, ScanEventData
from core.library_scanner import LibraryScanner
from core.records import ChangeSet
from core.worker_pool import Priority, TaskHandle, WorkerPool

logger = logging.getLogger(__name__)

SCAN_STATE_FILE = "scan-state.json"
SCAN_STATE_EXPIRY = 24 * 60 * 60  # seconds


class ScanState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (ScanState.COMPLETED, ScanState.FAILED)

def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class ScanSession:
    library_id: str
    session_id: int = 0
    kind: str = "full"  # "full", "sync" or "delta"
    state: ScanState = ScanState.IDLE
    processed: int = 0
    total: int = 0
    failures: int = 0
    failure_samples: List[Dict[str, str]] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[int] = None
    finished_at: Optional[int] = None
    results: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "library_id": self.library_id,
            "session_id": self.session_id,
            "kind": self.kind,
            "state": self.state.value,
            "processed": self.processed,
            "total": self.total,
            "failures": self.failures,
            "failure_samples": list(self.failure_samples),
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "results": dict(self.results),
        }


class ScanCoordinator:
    """
    Per-library scan state machine: ``idle -> scanning -> {completed, failed}``.

    At most one session per library is ``scanning``.  A scan request that
    arrives while one is in flight attaches to it instead of starting a second
    traversal.  Scan work runs as a task on the shared WorkerPool.
    """

    def __init__(self, libraries: Dict[str, str], pool: ConnectionPool, scanner: LibraryScanner,
                 worker_pool: WorkerPool, event_system: Optional[EventSystem] = None,
                 progress_interval: float = 1.0, state_expiry: float = SCAN_STATE_EXPIRY):
        self.libraries = dict(libraries)
        self.pool = pool
        self.scanner = scanner
        self.worker_pool = worker_pool
        self.event_system = event_system
        self.progress_interval = progress_interval
        self.state_expiry = state_expiry
        self._lock = threading.Lock()
        self._sessions: Dict[str, ScanSession] = {}
        self._handles: Dict[str, TaskHandle] = {}
        self._last_persist: Dict[str, float] = {}

        for library_id, root in self.libraries.items():
            restored = self._load_state(library_id, root)
            if restored is not None:
                self._sessions[library_id] = restored
        # Ids keep increasing across restarts.
        last_id = max((s.session_id for s in self._sessions.values()), default=0)
        self._session_ids = itertools.count(last_id + 1)

    # ------------------------------------------------------------------
    #  Public API
    # ------------------------------------------------------------------

    def add_library(self, library_id: str, root: str) -> None:
        with self._lock:
            self.libraries[library_id] = root

    def root_for(self, library_id: str) -> str:
        root = self.libraries.get(library_id)
        if root is None:
            raise ValidationError(f"Unknown library: {library_id}", field="library_id")
        return root

    def full_scan(self, library_id: str, wait: bool = False) -> Dict[str, Any]:
        return self._start(library_id, "full", None, wait)

    def incremental_sync(self, library_id: str, wait: bool = False,
                         changes: Optional[ChangeSet] = None) -> Dict[str, Any]:
        """
        Reconcile a library with the filesystem.  With ``changes`` only those
        deltas are applied; without, disk and index are diffed.

        If a session is already in flight its status is returned and
        ``changes`` are not applied; use ``submit_changes`` to learn that.
        """
        return self._start(library_id, "sync" if changes is None else "delta", changes, wait)

    def submit_changes(self, library_id: str, changes: ChangeSet) -> bool:
        """Start a delta session unless the library is busy.  Returns False if busy."""
        self.root_for(library_id)
        with self._lock:
            if self._is_scanning(library_id):
                return False
        snapshot = self._start(library_id, "delta", changes, wait=False)
        return snapshot.get("kind") == "delta" and not snapshot.get("coalesced", False)

    def is_scanning(self, library_id: str) -> bool:
        with self._lock:
            return self._is_scanning(library_id)

    def get_scan_status(self, library_id: str) -> Dict[str, Any]:
        self.root_for(library_id)
        with self._lock:
            session = self._sessions.get(library_id) or ScanSession(library_id=library_id)
            return session.to_dict()

    def get_all_active_states(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                library_id: session.to_dict()
                for library_id, session in self._sessions.items()
                if session.state == ScanState.SCANNING
            }

    def reset(self, library_id: str) -> bool:
        """Return a terminal session to ``idle``.  A running session is left alone."""
        self.root_for(library_id)
        with self._lock:
            session = self._sessions.get(library_id)
            if session is None or session.state not in TERMINAL_STATES:
                return False
            session.state = ScanState.IDLE
        self._persist(library_id, force=True)
        return True

    def wait(self, library_id: str, timeout: Optional[float] = None) -> bool:
        with self._lock:
            handle = self._handles.get(library_id)
        if handle is None:
            return True
        return handle.wait(timeout)

    # ------------------------------------------------------------------
    #  Session lifecycle
    # ------------------------------------------------------------------

    def _is_scanning(self, library_id: str) -> bool:
        session = self._sessions.get(library_id)
        return session is not None and session.state == ScanState.SCANNING

    def _start(self, library_id: str, kind: str, changes: Optional[ChangeSet], wait: bool) -> Dict[str, Any]:
        root = self.root_for(library_id)
        coalesced = False
        with self._lock:
            if self._is_scanning(library_id):
                session = self._sessions[library_id]
                handle = self._handles[library_id]
                coalesced = True
                logger.info(f"{kind} request for {library_id} attached to running session {session.session_id}")
            else:
                previous = self._sessions.get(library_id)
                session = ScanSession(library_id=library_id, session_id=next(self._session_ids), kind=kind,
                                      state=ScanState.SCANNING, started_at=_now_ms())
                self._sessions[library_id] = session
                priority = Priority.FULL_SCAN if kind == "full" else Priority.SYNC
                try:
                    handle = self.worker_pool.submit(f"scan::{library_id}::{session.session_id}", self._run,
                                                     library_id, root, session, changes, priority=priority)
                except RuntimeError:
                    logger.error(f"Could not queue {kind} session for {library_id}; worker pool unavailable")
                    if previous is None:
                        self._sessions.pop(library_id, None)
                    else:
                        self._sessions[library_id] = previous
                    raise
                self._handles[library_id] = handle

        if not coalesced:
            handle.add_done_callback(lambda h: self._on_task_done(library_id, session, h))
            self._persist(library_id, force=True)
            self._publish(EventType.SCAN_STARTED, library_id, session)

        if wait:
            handle.wait()
        with self._lock:
            snapshot = session.to_dict()
        snapshot["coalesced"] = coalesced
        return snapshot

    def _on_task_done(self, library_id: str, session: ScanSession, handle: TaskHandle) -> None:
        # _run records its own outcome; this only catches tasks that never ran to the end.
        with self._lock:
            if session.state != ScanState.SCANNING:
                return
            session.state = ScanState.FAILED
            session.error = f"{type(handle.error).__name__}: {handle.error}" if handle.error else "aborted"
            session.finished_at = _now_ms()
        logger.warning(f"{session.kind} session {session.session_id} for {library_id} "
                       f"ended without running: {session.error}")
        self._persist(library_id, force=True)
        self._publish(EventType.SCAN_FAILED, library_id, session)

    def _run(self, library_id: str, root: str, session: ScanSession, changes: Optional[ChangeSet]):
        logger.info(f"Starting {session.kind} session {session.session_id} for {library_id} ({root})")

        def on_progress(processed: int, total: int, current: Optional[str]):
            with self._lock:
                session.processed, session.total = processed, total
            self._persist(library_id)
            self._publish(EventType.SCAN_PROGRESS, library_id, session)

        try:
            with self.pool.connection(root) as db:
                if session.kind == "full":
                    outcome = self.scanner.full_scan(root, db, on_progress)
                elif changes is None:
                    outcome = self.scanner.sync(root, db, on_progress)
                else:
                    outcome = self.scanner.apply_changes(root, db, changes, on_progress)
        except Exception as e:  # why: worker boundary; the failure is recorded on the session, not lost
            logger.error(f"{session.kind} session {session.session_id} for {library_id} failed: {e}", exc_info=True)
            with self._lock:
                session.state = ScanState.FAILED
                session.error = f"{type(e).__name__}: {e}"
                session.finished_at = _now_ms()
            self._persist(library_id, force=True)
            self._publish(EventType.SCAN_FAILED, library_id, session)
            return session.to_dict()

        with self._lock:
            session.processed = outcome.processed
            session.total = outcome.total
            session.failures = outcome.failures
            session.failure_samples = list(outcome.failure_samples)
            session.results = outcome.to_dict()
            session.state = ScanState.COMPLETED
            session.finished_at = _now_ms()
        if outcome.failures:
            logger.warning(f"Session {session.session_id} for {library_id} completed with "
                           f"{outcome.failures} failure(s), e.g. {outcome.failure_samples[:3]}")
        self._persist(library_id, force=True)
        self._publish(EventType.SCAN_COMPLETED, library_id, session)
        return session.to_dict()

    def _publish(self, event_type: EventType, library_id: str, session: ScanSession) -> None:
        if self.event_system is None:
            return
        with self._lock:
            snapshot = session.to_dict()
        self.event_system.publish(ScanEventData(
            event_type=event_type,
            source="scan_coordinator",
            timestamp=time.time(),
            library_id=library_id,
            session=snapshot,
        ))

    # ------------------------------------------------------------------
    #  Persistence (.flypic/scan-state.json)
    # ------------------------------------------------------------------

    def _state_path(self, root: str) -> str:
        return os.path.join(path_hasher.metadata_dir(root), SCAN_STATE_FILE)

    def _persist(self, library_id: str, force: bool = False) -> None:
        now = time.monotonic()
        with self._lock:
            if not force and now - self._last_persist.get(library_id, 0.0) < self.progress_interval:
                return
            self._last_persist[library_id] = now
            session = self._sessions.get(library_id)
            if session is None:
                return
            payload = session.to_dict()
        payload["updated_at"] = _now_ms()
        root = self.libraries[library_id]
        state_path = self._state_path(root)
        tmp_path = f"{state_path}.tmp"
        try:
            os.makedirs(os.path.dirname(state_path), exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
            os.replace(tmp_path, state_path)
        except OSError as e:
            logger.warning(f"Could not persist scan state for {library_id}: {e}")

    def _load_state(self, library_id: str, root: str) -> Optional[ScanSession]:
        state_path = self._state_path(root)
        try:
            with open(state_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable scan state {state_path}: {e}")
            return None

        updated_at = data.get("updated_at") or 0
        if time.time() * 1000 - updated_at > self.state_expiry * 1000:
            logger.info(f"Discarding expired scan state for {library_id}")
            return None

        try:
            state = ScanState(data.get("state", "idle"))
        except ValueError:
            return None
        session = ScanSession(
            library_id=library_id,
            session_id=data.get("session_id", 0),
            kind=data.get("kind", "full"),
            state=state,
            processed=data.get("processed", 0),
            total=data.get("total", 0),
            failures=data.get("failures", 0),
            failure_samples=data.get("failure_samples", []),
            error=data.get("error"),
            started_at=data.get("started_at"),
            finished_at=data.get("finished_at"),
            results=data.get("results", {}),
        )
        if state == ScanState.SCANNING:
            # No process owns it any more.
            logger.warning(f"Previous {session.kind} session for {library_id} was interrupted")
            session.state = ScanState.FAILED
            session.error = "interrupted"
            session.finished_at = updated_at
        return session
