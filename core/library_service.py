import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Union

from core import path_hasher
from core.cleanup_manager import CleanupManager
from core.connection_pool import ConnectionPool
from core.directory_scanner import DirectoryScanner
from core.event_system import EventSystem, EventType, WatcherEventData
from core.library_scanner import LibraryScanner
from core.lru_cache import LRUCache
from core.memory_monitor import MemoryMonitor
from core.metadata_database import MetadataDatabase
from core.records import ChangeSet, ImageRecord, Pagination, SearchFilters, SearchResult
from core.scan_coordinator import ScanCoordinator
from core.thumbnail_generator import ThumbnailGenerator
from core.worker_pool import WorkerPool
from filewatcher import watcher
from filewatcher.change_buffer import ChangeBuffer
from filewatcher.supervisor import WatcherSupervisor

logger = logging.getLogger(__name__)

_WATCHER_EVENT_TYPES = {
    watcher.ADD: EventType.WATCHER_ADD,
    watcher.CHANGE: EventType.WATCHER_CHANGE,
    watcher.UNLINK: EventType.WATCHER_UNLINK,
    watcher.ADD_DIR: EventType.WATCHER_ADD_DIR,
    watcher.UNLINK_DIR: EventType.WATCHER_UNLINK_DIR,
    watcher.ERROR: EventType.WATCHER_ERROR,
    watcher.READY: EventType.WATCHER_READY,
}


class LibraryService:
    """
    The one object the outside world talks to.

    Builds every collaborator from configuration unless it is passed in, and
    hands them to each other explicitly.  Nothing here is a module-level
    singleton: two services in one process share no state.
    """

    def __init__(self, config_manager, event_system: Optional[EventSystem] = None,
                 pool: Optional[ConnectionPool] = None, generator: Optional[ThumbnailGenerator] = None,
                 scanner: Optional[LibraryScanner] = None, worker_pool: Optional[WorkerPool] = None,
                 supervisor: Optional[WatcherSupervisor] = None,
                 cleanup_manager: Optional[CleanupManager] = None):
        cfg = config_manager
        self.config_manager = cfg
        self.libraries: Dict[str, Dict[str, Any]] = {lib["id"]: lib for lib in cfg.get_libraries()}
        self.event_system = event_system or EventSystem()

        pragmas = cfg.get("database.pragmas")
        self.pool = pool or ConnectionPool(
            lambda root: MetadataDatabase(root, pragmas),
            idle_timeout=cfg.get("pool.idle_timeout", 60.0),
            max_open=cfg.get("pool.max_open", 4),
            exhaustion_policy=cfg.get("pool.exhaustion_policy", "block"),
            acquire_timeout=cfg.get("pool.acquire_timeout"),
        )
        self.generator = generator or ThumbnailGenerator(
            target_height=cfg.get("thumbnail.height", 480),
            quality=cfg.get("thumbnail.quality", 92),
            effort=cfg.get("thumbnail.effort", 4),
            cache_format=cfg.get("thumbnail.format", "webp"),
            decode_concurrency=cfg.get("thumbnail.decode_concurrency", 1),
            blocks_max=cfg.get("thumbnail.pillow_blocks_max", 16),
        )
        self.scanner = scanner or LibraryScanner(
            self.generator,
            DirectoryScanner(cfg.get("scan.ignore_patterns")),
            concurrency=cfg.get("scan.concurrency", 2),
            write_batch_size=cfg.get("scan.write_batch_size", 100),
            progress_every=cfg.get("scan.progress_every", 10),
            progress_interval=cfg.get("scan.progress_interval", 1.0),
            max_delete_ratio=cfg.get("scan.max_delete_ratio", 0.5),
        )
        self.worker_pool = worker_pool or WorkerPool(cfg.get("workers.num_workers", 2))
        self.coordinator = ScanCoordinator(
            {library_id: lib["path"] for library_id, lib in self.libraries.items()},
            self.pool, self.scanner, self.worker_pool, self.event_system,
            progress_interval=cfg.get("scan.progress_interval", 1.0),
        )

        self.search_cache = LRUCache(cfg.get("search.cache_size", 128))
        self.cleanup_manager = cleanup_manager or CleanupManager(
            pool=self.pool,
            interval=cfg.get("cleanup.interval", 60.0),
            routine_gc_passes=cfg.get("cleanup.routine_gc_passes", 1),
            emergency_gc_passes=cfg.get("cleanup.emergency_gc_passes", 3),
            event_system=self.event_system,
        )
        self.cleanup_manager.register_cache("search_results", self.search_cache)
        self.cleanup_manager.register_cache("thumbnail_decoder", self.generator)
        self.cleanup_manager.register_cache("idle_connections", self.pool)

        self.memory_monitor = MemoryMonitor(
            self.cleanup_manager,
            warning_mb=cfg.get("memory.warning_mb", 1024),
            danger_mb=cfg.get("memory.danger_mb", 1536),
            check_interval=cfg.get("memory.check_interval", 30.0),
            cooldown=cfg.get("memory.cooldown", 60.0),
            event_system=self.event_system,
        )

        self.change_buffer = ChangeBuffer(self._flush_changes)
        self.supervisor = supervisor or WatcherSupervisor(
            self._on_watcher_event, self._on_watcher_exit,
            close_timeout=cfg.get("watcher.close_timeout", 1.0),
        )
        self.max_restarts = cfg.get("watcher.max_restarts", 3)
        self._restarts: Dict[str, int] = {}
        self._restarts_lock = threading.Lock()

        self.event_system.subscribe(EventType.SCAN_COMPLETED, self._on_scan_finished)
        self.event_system.subscribe(EventType.SCAN_FAILED, self._on_scan_finished)

    # ------------------------------------------------------------------
    #  Libraries
    # ------------------------------------------------------------------

    def _root(self, library_id: str) -> str:
        return self.coordinator.root_for(library_id)

    def list_libraries(self) -> List[Dict[str, Any]]:
        return list(self.libraries.values())

    # ------------------------------------------------------------------
    #  Scans
    # ------------------------------------------------------------------

    def full_scan(self, library_id: str, wait: bool = False) -> Dict[str, Any]:
        return self.coordinator.full_scan(library_id, wait=wait)

    def incremental_sync(self, library_id: str, wait: bool = False) -> Dict[str, Any]:
        return self.coordinator.incremental_sync(library_id, wait=wait)

    def get_scan_status(self, library_id: str) -> Dict[str, Any]:
        return self.coordinator.get_scan_status(library_id)

    def get_all_active_states(self) -> Dict[str, Dict[str, Any]]:
        return self.coordinator.get_all_active_states()

    def reset_scan(self, library_id: str) -> bool:
        return self.coordinator.reset(library_id)

    def _on_scan_finished(self, event) -> None:
        # Failed scans may still have committed batches.
        self.invalidate_search(event.library_id)

    # ------------------------------------------------------------------
    #  Queries and writes
    # ------------------------------------------------------------------

    def invalidate_search(self, library_id: str) -> int:
        return self.search_cache.invalidate(lambda key: key[0] == library_id)

    def search(self, library_id: str, filters: Union[SearchFilters, Dict[str, Any], None] = None,
               pagination: Optional[Pagination] = None) -> SearchResult:
        root = self._root(library_id)
        if not isinstance(filters, SearchFilters):
            filters = SearchFilters.from_dict(filters)
        filters.validate()
        key = (library_id, filters, pagination)
        cached = self.search_cache.get(key)
        if cached is not None:
            return cached
        with self.pool.connection(root) as db:
            result = db.search(filters, pagination)
        self.search_cache.put(key, result)
        return result

    def insert_batch(self, library_id: str, records: Iterable[Union[ImageRecord, Dict[str, Any]]]) -> int:
        root = self._root(library_id)
        prepared = []
        for record in records:
            if not isinstance(record, ImageRecord):
                row = dict(record)
                rel_path = path_hasher.normalize_relative_path(row.get("path"))
                row["path"] = rel_path
                row.setdefault("filename", rel_path.rsplit("/", 1)[-1])
                row.setdefault("folder", path_hasher.folder_of(rel_path))
                record = ImageRecord.from_row(row)
            else:
                record.path = path_hasher.normalize_relative_path(record.path)
            prepared.append(record)
        with self.pool.connection(root) as db:
            for folder in {r.folder for r in prepared if r.folder}:
                db.ensure_folder_chain(folder)
            written = db.upsert_batch(prepared)
        self.invalidate_search(library_id)
        return written

    def get_folder_tree(self, library_id: str) -> List[Dict[str, Any]]:
        with self.pool.connection(self._root(library_id)) as db:
            return db.get_folder_tree()

    def get_image(self, library_id: str, path: str) -> Optional[ImageRecord]:
        with self.pool.connection(self._root(library_id)) as db:
            return db.get_image(path_hasher.normalize_relative_path(path))

    def find_orphan_artifacts(self, library_id: str) -> List[str]:
        root = self._root(library_id)
        with self.pool.connection(root) as db:
            indexed = db.get_all_paths()
        return path_hasher.find_orphan_artifacts(root, indexed, self.generator.cache_format)

    # ------------------------------------------------------------------
    #  Watchers
    # ------------------------------------------------------------------

    def start_watch(self, library_id: str) -> Dict[str, Any]:
        root = self._root(library_id)
        with self._restarts_lock:
            self._restarts[library_id] = 0
        return self.supervisor.start(library_id, root)

    def stop_watch(self, library_id: str) -> bool:
        return self.supervisor.stop(library_id)

    def watch_status(self, library_id: str) -> Optional[Dict[str, Any]]:
        return self.supervisor.status(library_id)

    def list_watches(self) -> List[Dict[str, Any]]:
        return self.supervisor.list()

    def _on_watcher_event(self, library_id: str, message: Dict[str, Any]) -> None:
        event_type = _WATCHER_EVENT_TYPES.get(message.get("type"))
        if event_type is None:
            return
        if event_type == EventType.WATCHER_ERROR:
            logger.warning(f"Watcher for {library_id} reported: {message.get('message')}")
        self.event_system.publish(WatcherEventData(
            event_type=event_type,
            source="watcher",
            timestamp=time.time(),
            library_id=library_id,
            path=message.get("path"),
            message=message.get("message", ""),
        ))
        self.change_buffer.add(library_id, message)

    def _flush_changes(self, library_id: str, changes: ChangeSet) -> bool:
        return self.coordinator.submit_changes(library_id, changes)

    def _on_watcher_exit(self, library_id: str, exitcode: Optional[int]) -> None:
        self.event_system.publish(WatcherEventData(
            event_type=EventType.WATCHER_EXITED,
            source="watcher",
            timestamp=time.time(),
            library_id=library_id,
            message=f"exit code {exitcode}",
        ))
        with self._restarts_lock:
            attempts = self._restarts.get(library_id, 0)
            if attempts >= self.max_restarts:
                logger.error(f"Watcher for {library_id} died {attempts + 1} times; giving up")
                return
            self._restarts[library_id] = attempts + 1
        logger.info(f"Restarting watcher for {library_id} (attempt {attempts + 1}/{self.max_restarts})")
        self.supervisor.start(library_id, self._root(library_id))

    # ------------------------------------------------------------------
    #  Lifecycle
    # ------------------------------------------------------------------

    def start_background_services(self) -> None:
        self.worker_pool.start()
        self.cleanup_manager.start()
        self.memory_monitor.start()
        if self.config_manager.get("watcher.auto_start", False):
            for library_id in self.libraries:
                try:
                    self.start_watch(library_id)
                except Exception as e:  # why: one unwatchable library must not block the others
                    logger.error(f"Could not start watcher for {library_id}: {e}", exc_info=True)

    def shutdown(self) -> None:
        logger.info("LibraryService: shutting down")
        self.change_buffer.cancel_all()
        self.supervisor.stop_all()
        self.memory_monitor.stop()
        self.cleanup_manager.stop()
        self.worker_pool.shutdown()
        self.pool.close_all()
        logger.info("LibraryService: shutdown complete")
