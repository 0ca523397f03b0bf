"""Indexing passes over one library: full scan, offline sync and watcher deltas.

All three share one pipeline.  Per-file work (stat, content hash, thumbnail)
runs on a bounded thread pool with a bounded in-flight window.  Rows are
written back on the calling thread in ``write_batch_size`` transactions, so the
database only ever sees one writer per scan.
"""
import logging
import os
import posixpath
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from core import path_hasher
from core.directory_scanner import DirectoryScanner, ReconcileContext
from core.errors import DecodeError, LibraryIOError
from core.metadata_database import MetadataDatabase
from core.records import ChangeSet, ImageRecord, SearchFilters
from core.thumbnail_generator import ThumbnailGenerator, can_generate_thumbnail, file_type_for, hash_file

logger = logging.getLogger(__name__)

MAX_FAILURE_SAMPLES = 10
# The delete guard only trips above this many deletions.
DELETE_GUARD_MIN_FILES = 10

ProgressCallback = Callable[[int, int, Optional[str]], None]


@dataclass
class ScanOutcome:
    kind: str
    total: int = 0
    processed: int = 0
    indexed: int = 0
    skipped: int = 0
    failures: int = 0
    failure_samples: List[Dict[str, str]] = field(default_factory=list)
    added: int = 0
    modified: int = 0
    deleted: int = 0
    folders_added: int = 0
    folders_removed: int = 0
    delete_guard_tripped: bool = False
    elapsed: float = 0.0

    def record_failure(self, path: str, reason: str) -> None:
        self.failures += 1
        if len(self.failure_samples) < MAX_FAILURE_SAMPLES:
            self.failure_samples.append({"path": path, "reason": reason})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "total": self.total,
            "processed": self.processed,
            "indexed": self.indexed,
            "skipped": self.skipped,
            "failures": self.failures,
            "failure_samples": list(self.failure_samples),
            "added": self.added,
            "modified": self.modified,
            "deleted": self.deleted,
            "folders_added": self.folders_added,
            "folders_removed": self.folders_removed,
            "delete_guard_tripped": self.delete_guard_tripped,
            "elapsed": round(self.elapsed, 3),
        }


@dataclass
class _FileResult:
    path: str
    status: str  # "indexed", "touched", "skipped" or "error"
    record: Optional[ImageRecord] = None
    failure: Optional[str] = None
    modified_at: Optional[int] = None


def folder_chain(folder: str) -> List[str]:
    """*folder* followed by each of its ancestors, excluding the library root."""
    chain = []
    current = (folder or "").strip("/")
    while current:
        chain.append(current)
        current = posixpath.dirname(current)
    return chain


class _ProgressThrottle:
    def __init__(self, callback: Optional[ProgressCallback], total: int,
                 every: int, interval: float):
        self.callback = callback
        self.total = total
        self.every = max(1, every)
        self.interval = interval
        self._last_emit = time.monotonic()

    def update(self, processed: int, current: Optional[str]) -> None:
        if self.callback is None:
            return
        now = time.monotonic()
        if (processed % self.every == 0 or processed == self.total
                or now - self._last_emit >= self.interval):
            self._last_emit = now
            try:
                self.callback(processed, self.total, current)
            except Exception as e:  # why: observer failures must not abort the scan
                logger.error(f"Progress callback failed: {e}", exc_info=True)


class LibraryScanner:
    def __init__(self, generator: ThumbnailGenerator, directory_scanner: Optional[DirectoryScanner] = None,
                 concurrency: int = 2, write_batch_size: int = 100, progress_every: int = 10,
                 progress_interval: float = 1.0, max_delete_ratio: float = 0.5):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.generator = generator
        self.directory_scanner = directory_scanner or DirectoryScanner()
        self.concurrency = concurrency
        self.write_batch_size = max(1, write_batch_size)
        self.progress_every = progress_every
        self.progress_interval = progress_interval
        self.max_delete_ratio = max_delete_ratio

    # ------------------------------------------------------------------
    #  Per-file work
    # ------------------------------------------------------------------

    def _process_file(self, library_root: str, rel_path: str,
                      existing: Optional[Dict[str, Any]]) -> _FileResult:
        source_abs = os.path.join(library_root, *rel_path.split("/"))
        try:
            metadata = self.generator.read_metadata(source_abs)
            file_hash = hash_file(source_abs)
        except LibraryIOError as e:
            logger.warning(f"Skipping unreadable file {rel_path}: {e.reason}")
            return _FileResult(rel_path, "error", failure=f"io: {e.reason}")

        if existing and existing.get("file_hash") == file_hash and (
                not can_generate_thumbnail(rel_path) or self._artifact_present(library_root, existing)):
            if existing.get("modified_at") != metadata["modified_at"]:
                # Same bytes, new mtime: only the stored mtime moves.
                return _FileResult(rel_path, "touched", modified_at=metadata["modified_at"])
            return _FileResult(rel_path, "skipped")

        thumbnail_path, thumbnail_size, failure = None, None, None
        if can_generate_thumbnail(rel_path):
            try:
                result = self.generator.generate(
                    source_abs, library_root, rel_path,
                    recorded_modified_at=existing.get("modified_at") if existing else None,
                )
                thumbnail_path, thumbnail_size = result.artifact_relative_path, result.artifact_size
            except DecodeError as e:
                # Row is still recorded, without an artifact.
                failure = f"decode: {e.reason}"
            except LibraryIOError as e:
                logger.warning(f"Skipping unreadable file {rel_path}: {e.reason}")
                return _FileResult(rel_path, "error", failure=f"io: {e.reason}")

        record = ImageRecord(
            path=rel_path,
            filename=posixpath.basename(rel_path),
            folder=path_hasher.folder_of(rel_path),
            size=metadata["size"],
            width=metadata["width"],
            height=metadata["height"],
            format=metadata["format"],
            file_type=file_type_for(rel_path),
            created_at=metadata["created_at"],
            modified_at=metadata["modified_at"],
            file_hash=file_hash,
            thumbnail_path=thumbnail_path,
            thumbnail_size=thumbnail_size,
        )
        return _FileResult(rel_path, "indexed", record=record, failure=failure)

    @staticmethod
    def _artifact_present(library_root: str, existing: Dict[str, Any]) -> bool:
        stored = existing.get("thumbnail_path")
        if not stored:
            return False
        # Locate the artifact from the filename alone; older rows may carry other prefixes.
        rel = path_hasher.cache_relative_path_from_filename(stored)
        return os.path.exists(os.path.join(library_root, *rel.split("/")))

    def _process_paths(self, library_root: str, db: MetadataDatabase, paths: List[str],
                       index_state: Dict[str, Dict[str, Any]], outcome: ScanOutcome,
                       progress: Optional[ProgressCallback] = None) -> None:
        throttle = _ProgressThrottle(progress, outcome.total, self.progress_every, self.progress_interval)
        write_buffer: List[ImageRecord] = []
        touched: Dict[str, int] = {}
        window = self.concurrency * 2

        def handle(result: _FileResult):
            outcome.processed += 1
            if result.status == "skipped":
                outcome.skipped += 1
            elif result.status == "touched":
                outcome.skipped += 1
                touched[result.path] = result.modified_at
            elif result.status == "indexed":
                write_buffer.append(result.record)
                if len(write_buffer) >= self.write_batch_size:
                    outcome.indexed += db.upsert_batch(write_buffer)
                    write_buffer.clear()
            if result.failure:
                outcome.record_failure(result.path, result.failure)
            throttle.update(outcome.processed, result.path)

        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="scan") as executor:
            in_flight = set()
            for rel_path in paths:
                if len(in_flight) >= window:
                    done, in_flight = wait(in_flight, return_when=FIRST_COMPLETED)
                    for future in done:
                        handle(future.result())
                in_flight.add(executor.submit(self._process_file, library_root, rel_path,
                                              index_state.get(rel_path)))
            for future in in_flight:
                handle(future.result())

        if write_buffer:
            outcome.indexed += db.upsert_batch(write_buffer)
        if touched:
            db.update_modified_at(touched)

    def _remove_artifacts(self, library_root: str, paths: Iterable[str]) -> None:
        for rel_path in paths:
            artifact = path_hasher.cache_absolute_path(library_root, rel_path, self.generator.cache_format)
            try:
                os.remove(artifact)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Could not remove artifact for {rel_path}: {e}")

    def _guard_deletes(self, to_delete: List[str], indexed_count: int, outcome: ScanOutcome) -> List[str]:
        if not to_delete or indexed_count == 0:
            return to_delete
        ratio = len(to_delete) / indexed_count
        if ratio > self.max_delete_ratio and len(to_delete) > DELETE_GUARD_MIN_FILES:
            logger.warning(f"Refusing to delete {len(to_delete)}/{indexed_count} rows ({ratio:.0%}); "
                           f"the library root may be unmounted or moved")
            outcome.delete_guard_tripped = True
            return []
        return to_delete

    def _reconcile_folders(self, library_root: str, db: MetadataDatabase, outcome: ScanOutcome) -> None:
        on_disk = self.directory_scanner.scan_folders(library_root)
        known = {f.path for f in db.get_all_folders()}
        current = {f.path for f in on_disk}
        new = [f for f in on_disk if f.path not in known]
        outcome.folders_added += db.upsert_folders(new)
        for gone in sorted(known - current):
            outcome.folders_removed += db.delete_folder(gone)

    # ------------------------------------------------------------------
    #  Passes
    # ------------------------------------------------------------------

    def full_scan(self, library_root: str, db: MetadataDatabase,
                  progress: Optional[ProgressCallback] = None) -> ScanOutcome:
        """Walk every file, regenerate missing or stale artifacts and recount every folder."""
        start = time.monotonic()
        outcome = ScanOutcome(kind="full")
        if not os.path.isdir(library_root):
            raise LibraryIOError(library_root, "library root is not a directory")

        self._reconcile_folders(library_root, db, outcome)

        index_state = db.get_index_state()
        ctx = ReconcileContext(db_file_set=set(index_state))
        files = [p for batch in self.directory_scanner.scan_incremental_reconcile(library_root, ctx)
                 for p in batch]
        outcome.total = len(files)
        logger.info(f"Full scan of {library_root}: {len(files)} files")

        self._process_paths(library_root, db, files, index_state, outcome, progress)

        ghosts = self._guard_deletes(ctx.ghost_files, len(index_state), outcome)
        if ghosts:
            outcome.deleted = db.delete_by_paths(ghosts)
            self._remove_artifacts(library_root, ghosts)

        db.update_all_folder_counts()
        outcome.elapsed = time.monotonic() - start
        logger.info(f"Full scan of {library_root} finished in {outcome.elapsed:.1f}s: "
                    f"{outcome.indexed} indexed, {outcome.skipped} skipped, {outcome.failures} failed")
        return outcome

    def sync(self, library_root: str, db: MetadataDatabase,
             progress: Optional[ProgressCallback] = None) -> ScanOutcome:
        """Offline quick-sync: diff disk against the index and touch only the difference."""
        start = time.monotonic()
        outcome = ScanOutcome(kind="sync")
        if not os.path.isdir(library_root):
            raise LibraryIOError(library_root, "library root is not a directory")

        index_state = db.get_index_state()
        current = set(self.directory_scanner.scan_all(library_root))

        to_add = sorted(current - set(index_state))
        to_modify = []
        for rel_path in sorted(current & set(index_state)):
            try:
                mtime = int(os.stat(os.path.join(library_root, *rel_path.split("/"))).st_mtime * 1000)
            except OSError:
                continue
            if mtime != index_state[rel_path]["modified_at"]:
                to_modify.append(rel_path)
        to_delete = self._guard_deletes(sorted(set(index_state) - current), len(index_state), outcome)

        logger.info(f"Sync {library_root}: {len(to_add)} new, {len(to_modify)} modified, {len(to_delete)} deleted")
        outcome.total = len(to_add) + len(to_modify)
        outcome.added, outcome.modified = len(to_add), len(to_modify)

        for rel_path in to_add:
            db.ensure_folder_chain(path_hasher.folder_of(rel_path))
        self._process_paths(library_root, db, to_add + to_modify, index_state, outcome, progress)

        if to_delete:
            outcome.deleted = db.delete_by_paths(to_delete)
            self._remove_artifacts(library_root, to_delete)

        if to_add or to_modify or to_delete:
            self._reconcile_folders(library_root, db, outcome)
            affected: Set[str] = set()
            for rel_path in to_add + to_delete:
                affected.update(folder_chain(path_hasher.folder_of(rel_path)))
            for folder in sorted(affected):
                db.recompute_folder_count(folder)

        outcome.elapsed = time.monotonic() - start
        return outcome

    def apply_changes(self, library_root: str, db: MetadataDatabase, changes: ChangeSet,
                      progress: Optional[ProgressCallback] = None) -> ScanOutcome:
        """Apply watcher deltas without walking the library."""
        start = time.monotonic()
        outcome = ScanOutcome(kind="delta")
        affected: Set[str] = set()

        for directory in changes.dirs_added:
            rel_dir = path_hasher.normalize_relative_path(directory)
            outcome.folders_added += len(db.ensure_folder_chain(rel_dir))
            affected.update(folder_chain(rel_dir))

        to_process: List[str] = []
        for rel_path in list(changes.files_added) + list(changes.files_changed):
            rel_path = path_hasher.normalize_relative_path(rel_path)
            if rel_path in to_process:
                continue
            full_path = os.path.join(library_root, *rel_path.split("/"))
            if not self.directory_scanner.is_supported_file(full_path):
                continue
            if not os.path.isfile(full_path):
                logger.warning(f"File not found, skipping: {full_path}")
                continue
            folder = path_hasher.folder_of(rel_path)
            db.ensure_folder_chain(folder)
            affected.update(folder_chain(folder))
            to_process.append(rel_path)

        if to_process:
            index_state = {}
            for rel_path in to_process:
                existing = db.get_image(rel_path)
                if existing is not None:
                    index_state[rel_path] = {"modified_at": existing.modified_at,
                                             "thumbnail_path": existing.thumbnail_path,
                                             "file_hash": existing.file_hash}
            outcome.added = sum(1 for p in to_process if p not in index_state)
            outcome.modified = len(to_process) - outcome.added
            outcome.total = len(to_process)
            self._process_paths(library_root, db, to_process, index_state, outcome, progress)

        removed = [path_hasher.normalize_relative_path(p) for p in changes.files_removed]
        for rel_path in removed:
            outcome.deleted += db.delete_by_path(rel_path)
            affected.update(folder_chain(path_hasher.folder_of(rel_path)))
        self._remove_artifacts(library_root, removed)

        for directory in changes.dirs_removed:
            rel_dir = path_hasher.normalize_relative_path(directory)
            doomed = [r.path for r in db.search(SearchFilters(folder=rel_dir)).items]
            outcome.deleted += db.delete_by_folder_prefix(rel_dir)
            outcome.folders_removed += db.delete_folders_by_prefix(rel_dir)
            self._remove_artifacts(library_root, doomed)
            affected.update(folder_chain(posixpath.dirname(rel_dir)))

        for folder in sorted(affected):
            db.recompute_folder_count(folder)

        outcome.elapsed = time.monotonic() - start
        logger.info(f"Applied {len(changes)} changes to {library_root}: +{outcome.added} "
                    f"~{outcome.modified} -{outcome.deleted} in {outcome.elapsed:.2f}s")
        return outcome
