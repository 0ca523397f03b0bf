import logging
import multiprocessing
import os
import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.errors import WatcherError
from filewatcher.watcher import CLOSE, CLOSED, READY, run_watch_process

logger = logging.getLogger(__name__)

EventCallback = Callable[[str, Dict[str, Any]], None]
ExitCallback = Callable[[str, Optional[int]], None]


@dataclass
class _WatchHandle:
    library_id: str
    root: str
    process: Any
    outbox: Any
    inbox: Any
    started_at: float = field(default_factory=time.time)
    reader: Optional[threading.Thread] = None
    ready: threading.Event = field(default_factory=threading.Event)
    stopping: threading.Event = field(default_factory=threading.Event)
    events: int = 0

    def status(self) -> Dict[str, Any]:
        return {
            "library_id": self.library_id,
            "root": self.root,
            "pid": self.process.pid,
            "alive": self.process.is_alive(),
            "ready": self.ready.is_set(),
            "started_at": self.started_at,
            "events": self.events,
        }


class WatcherSupervisor:
    """
    Starts and stops one watch process per library.

    Each process has its own mailbox pair: ``inbox`` carries control messages
    to the child, ``outbox`` carries events back.  A reader thread per library
    drains ``outbox`` into ``on_event(library_id, message)``.  A child that
    exits without being asked to is reported through ``on_exit``.
    """

    def __init__(self, on_event: EventCallback, on_exit: Optional[ExitCallback] = None,
                 start_method: str = "spawn", close_timeout: float = 1.0):
        self.on_event = on_event
        self.on_exit = on_exit
        self.close_timeout = close_timeout
        self._ctx = multiprocessing.get_context(start_method)
        self._watchers: Dict[str, _WatchHandle] = {}
        self._lock = threading.Lock()

    def start(self, library_id: str, root: str) -> Dict[str, Any]:
        """Start watching *root*.  Returns the existing status if already watched.

        Raises WatcherError if *root* is not a directory or the process cannot start.
        """
        if not os.path.isdir(root):
            raise WatcherError(f"Cannot watch {root}: not a directory")
        with self._lock:
            handle = self._watchers.get(library_id)
            if handle is not None and handle.process.is_alive():
                logger.debug(f"Watcher for {library_id} already running")
                return handle.status()
            if handle is not None:
                # Dead but not yet reaped; replacing it is the restart.
                handle.stopping.set()
                self._dispose(handle)

            outbox = self._ctx.Queue()
            inbox = self._ctx.Queue()
            process = self._ctx.Process(
                target=run_watch_process,
                args=(library_id, root, outbox, inbox),
                name=f"watcher-{library_id}",
                daemon=True,
            )
            try:
                process.start()
            except OSError as e:
                outbox.close()
                inbox.close()
                raise WatcherError(f"Cannot start watcher for {library_id}: {e}") from e
            handle = _WatchHandle(library_id=library_id, root=root, process=process,
                                  outbox=outbox, inbox=inbox)
            handle.reader = threading.Thread(target=self._read_mailbox, args=(handle,),
                                             name=f"WatcherReader-{library_id}", daemon=True)
            self._watchers[library_id] = handle
            handle.reader.start()
            logger.info(f"Started watcher for {library_id} (pid {process.pid}) on {root}")
            return handle.status()

    def wait_ready(self, library_id: str, timeout: Optional[float] = None) -> bool:
        with self._lock:
            handle = self._watchers.get(library_id)
        return handle is not None and handle.ready.wait(timeout)

    def _read_mailbox(self, handle: _WatchHandle) -> None:
        library_id = handle.library_id
        while True:
            try:
                message = handle.outbox.get(timeout=0.2)
            except queue.Empty:
                if handle.process.is_alive():
                    continue
                break
            except (EOFError, OSError, ValueError):
                # Queue closed under us by a replacing start().
                break

            message_type = message.get("type")
            if message_type == CLOSED:
                break
            if message_type == READY:
                handle.ready.set()
            handle.events += 1
            try:
                self.on_event(library_id, message)
            except Exception as e:  # why: a failing consumer must not stop the mailbox from draining
                logger.error(f"Watcher event handler failed for {library_id}: {e}", exc_info=True)

        if handle.stopping.is_set():
            return

        handle.process.join(timeout=self.close_timeout)
        exitcode = handle.process.exitcode
        logger.warning(f"Watcher for {library_id} exited unexpectedly (exit code {exitcode})")
        with self._lock:
            if self._watchers.get(library_id) is handle:
                del self._watchers[library_id]
        self._dispose(handle)
        if self.on_exit is not None:
            try:
                self.on_exit(library_id, exitcode)
            except Exception as e:  # why: restart policy lives in the caller; its failure is only logged
                logger.error(f"Watcher exit handler failed for {library_id}: {e}", exc_info=True)

    def stop(self, library_id: str) -> bool:
        """Tear down the watcher for *library_id*.  No-op for unwatched libraries."""
        with self._lock:
            handle = self._watchers.pop(library_id, None)
        if handle is None:
            return False

        handle.stopping.set()
        try:
            handle.inbox.put({"type": CLOSE})
        except (OSError, ValueError) as e:
            logger.debug(f"Could not send close to watcher {library_id}: {e}")
        handle.process.join(timeout=self.close_timeout)
        if handle.process.is_alive():
            logger.warning(f"Watcher for {library_id} did not close in {self.close_timeout}s, terminating")
            handle.process.terminate()
            handle.process.join(timeout=self.close_timeout)
        if handle.reader is not None and handle.reader is not threading.current_thread():
            handle.reader.join(timeout=self.close_timeout + 1.0)
        self._dispose(handle)
        logger.info(f"Stopped watcher for {library_id}")
        return True

    @staticmethod
    def _dispose(handle: _WatchHandle) -> None:
        for q in (handle.inbox, handle.outbox):
            q.close()
            q.cancel_join_thread()

    def stop_all(self) -> int:
        with self._lock:
            library_ids = list(self._watchers)
        for library_id in library_ids:
            self.stop(library_id)
        return len(library_ids)

    def status(self, library_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            handle = self._watchers.get(library_id)
        return handle.status() if handle is not None else None

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            handles = list(self._watchers.values())
        return [handle.status() for handle in handles]
