import os
import logging
import time
import fnmatch
from dataclasses import dataclass, field
from typing import Callable, Iterator, List, Optional, Set

from core import path_hasher
from core.records import FolderRecord
from core.thumbnail_generator import is_image_file


@dataclass
class ReconcileContext:
    """Mutable context for scan_incremental_reconcile.

    *db_file_set* is mutated during iteration: files found on disk are
    discarded.  After the generator is exhausted, *ghost_files* contains
    DB entries that no longer exist on disk.  *discovered_files* accumulates
    every file found during the walk.
    """
    db_file_set: Set[str]
    ghost_files: List[str] = field(default_factory=list)
    discovered_files: List[str] = field(default_factory=list)


def is_ignored_component(name: str) -> bool:
    """Dot entries (including the library's own metadata directory) are never indexed."""
    return name.startswith(".") or name == path_hasher.METADATA_DIR


class DirectoryScanner:
    """Walks a library root and yields library-relative paths of indexable files."""

    def __init__(self, ignore_patterns: Optional[List[str]] = None,
                 is_supported: Callable[[str], bool] = is_image_file):
        self.ignore_patterns = ignore_patterns if ignore_patterns is not None else ["._*", "Thumbs.db"]
        self._is_supported = is_supported

    def is_supported_file(self, file_path: str) -> bool:
        filename = os.path.basename(file_path)
        if is_ignored_component(filename):
            return False

        for pattern in self.ignore_patterns:
            if fnmatch.fnmatch(filename, pattern):
                logging.debug(f"Skipping file {file_path}: matches ignore pattern '{pattern}'")
                return False

        return self._is_supported(filename)

    def _walk(self, library_root: str):
        def onerror(e: OSError):
            logging.warning(f"Cannot list {getattr(e, 'filename', library_root)}: {e}")

        for root, dirs, files in os.walk(library_root, onerror=onerror):
            # Prune in place so os.walk never descends into .flypic or dot dirs.
            dirs[:] = sorted(d for d in dirs if not is_ignored_component(d))
            yield root, dirs, sorted(files)

    def scan_incremental(self, library_root: str, batch_size: int = 100) -> Iterator[List[str]]:
        """
        Generator that incrementally yields batches of library-relative file paths.
        """
        logging.info(f"Performing incremental scan for: {library_root} (batch_size={batch_size})")
        current_batch: List[str] = []
        total_yielded = 0
        scan_start = time.monotonic()

        if not os.path.isdir(library_root):
            logging.warning(f"Directory to scan does not exist: {library_root}")
            return

        for root, _, files in self._walk(library_root):
            for filename in files:
                full_path = os.path.join(root, filename)
                if not self.is_supported_file(full_path):
                    continue
                try:
                    if not os.path.isfile(full_path):
                        continue
                except OSError as e:
                    logging.debug(f"scan_incremental: OSError on '{filename}': {e}")
                    continue
                current_batch.append(path_hasher.relative_path(library_root, full_path))
                if len(current_batch) >= batch_size:
                    total_yielded += len(current_batch)
                    yield current_batch
                    current_batch = []
        if current_batch:
            total_yielded += len(current_batch)
            yield current_batch
        elapsed = time.monotonic() - scan_start
        logging.info(f"scan_incremental: finished '{library_root}' (total_yielded={total_yielded}, elapsed={elapsed:.3f}s)")

    def scan_all(self, library_root: str) -> List[str]:
        return [path for batch in self.scan_incremental(library_root) for path in batch]

    def scan_incremental_reconcile(self, library_root: str, ctx: ReconcileContext,
                                   batch_size: int = 100) -> Iterator[List[str]]:
        """Like scan_incremental but also tracks ghost files via *ctx*.

        For each discovered file, discards it from ctx.db_file_set.  After the
        walk finishes, any paths remaining in db_file_set are ghost files (in
        DB but deleted on disk).
        """
        for batch in self.scan_incremental(library_root, batch_size):
            for f in batch:
                ctx.db_file_set.discard(f)
            ctx.discovered_files.extend(batch)
            yield batch

        ctx.ghost_files = sorted(ctx.db_file_set)

    def scan_folders(self, library_root: str) -> List[FolderRecord]:
        """Every non-ignored directory under *library_root*, parents before children."""
        folders: List[FolderRecord] = []
        if not os.path.isdir(library_root):
            return folders
        for root, dirs, _ in self._walk(library_root):
            parent = "" if root == library_root else path_hasher.relative_path(library_root, root)
            for name in dirs:
                rel = f"{parent}/{name}" if parent else name
                folders.append(FolderRecord(path=rel, parent_path=parent, name=name))
        return folders
