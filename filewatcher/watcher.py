"""Watch-process side of the file watcher.

``run_watch_process`` is the target of one child process per library.  It
runs a native watchdog Observer over the library root and posts every
relevant filesystem event to ``outbox`` as a plain dict.  The only inbound
message is ``{"type": "close"}``.  Nothing but these queues is shared with
the parent.
"""
import logging
import os
import queue
import sys
from typing import Callable, Dict, Optional

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from core import path_hasher

# Outbound message types
ADD = "add"
CHANGE = "change"
UNLINK = "unlink"
ADD_DIR = "addDir"
UNLINK_DIR = "unlinkDir"
ERROR = "error"
READY = "ready"
CLOSED = "closed"

CLOSE = "close"

_INBOX_POLL_INTERVAL = 0.5


def is_ignored(rel_path: str) -> bool:
    """True for the metadata directory and any path with a dot component."""
    return any(part.startswith(".") or part == path_hasher.METADATA_DIR
               for part in rel_path.split("/") if part)


class LibraryEventHandler(FileSystemEventHandler):
    """
    Translates watchdog events into watcher messages with library-relative paths.

    Writes in progress are not settled: each modification is forwarded as its
    own ``change`` message.
    """

    def __init__(self, root: str, emit: Callable[[Dict[str, str]], None]):
        super().__init__()
        self.root = os.path.abspath(root)
        self._emit = emit

    def _relative(self, path) -> Optional[str]:
        path = os.fsdecode(path)
        try:
            rel = os.path.relpath(path, self.root).replace(os.sep, "/")
        except ValueError:
            return None
        if rel in (".", "") or rel.startswith("../") or rel == "..":
            return None
        if is_ignored(rel):
            return None
        return rel

    def _post(self, event_type: str, path) -> None:
        rel = self._relative(path)
        if rel is not None:
            self._emit({"type": event_type, "path": rel})

    def dispatch(self, event):
        kind = event.event_type
        if kind == "created":
            self._post(ADD_DIR if event.is_directory else ADD, event.src_path)
        elif kind == "modified":
            # Directory mtime bumps duplicate the child events.
            if not event.is_directory:
                self._post(CHANGE, event.src_path)
        elif kind == "deleted":
            self._post(UNLINK_DIR if event.is_directory else UNLINK, event.src_path)
        elif kind == "moved":
            self._post(UNLINK_DIR if event.is_directory else UNLINK, event.src_path)
            self._post(ADD_DIR if event.is_directory else ADD, event.dest_path)


def run_watch_process(library_id: str, root: str, outbox, inbox) -> None:
    """Child-process entry point.  Exits 0 after a close request, 1 on failure."""
    logging.basicConfig(level=logging.INFO,
                        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s")
    log = logging.getLogger(f"{__name__}.{library_id}")

    def emit(message: Dict[str, str]) -> None:
        message["library_id"] = library_id
        outbox.put(message)

    observer = Observer()
    try:
        observer.schedule(LibraryEventHandler(root, emit), path=root, recursive=True)
        observer.start()
    except OSError as e:
        log.error(f"Cannot watch {root}: {e}")
        emit({"type": ERROR, "message": f"cannot watch {root}: {e}"})
        sys.exit(1)

    log.info(f"Watching {root}")
    emit({"type": READY})

    exit_code = 0
    while True:
        try:
            message = inbox.get(timeout=_INBOX_POLL_INTERVAL)
        except queue.Empty:
            if not observer.is_alive():
                emit({"type": ERROR, "message": "observer thread died"})
                exit_code = 1
                break
            continue
        if message.get("type") == CLOSE:
            log.info(f"Closing watcher for {root}")
            break

    observer.stop()
    observer.join(timeout=1.0)
    if exit_code == 0:
        emit({"type": CLOSED})
    sys.exit(exit_code)
