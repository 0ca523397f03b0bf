import sqlite3
import os
import re
import logging
import posixpath
import time
from threading import Lock
from typing import Dict, Optional, List, Any, Iterable, Tuple

from core import path_hasher
from core.errors import StoreError, ValidationError
from core.records import FolderRecord, ImageRecord, Pagination, SearchFilters, SearchResult

# Tuning is injected by configuration; these are only the fallback.
DEFAULT_PRAGMAS: Dict[str, Any] = {
    "journal_mode": "WAL",
    "synchronous": "NORMAL",
    "cache_size": -4096,
    "temp_store": "MEMORY",
}

_ALLOWED_PRAGMAS = frozenset({
    "journal_mode", "synchronous", "cache_size", "temp_store", "page_size",
    "mmap_size", "busy_timeout", "foreign_keys", "wal_autocheckpoint",
})
_PRAGMA_VALUE_RE = re.compile(r"^-?[A-Za-z0-9_]+$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _rows(cursor) -> List[Dict[str, Any]]:
    columns = [desc[0] for desc in cursor.description]
    return [dict(zip(columns, row)) for row in cursor.fetchall()]


class MetadataDatabase:
    """
    Per-library metadata database: one image row per relative path, one folder
    row per relative directory.  Lives at ``<library>/.flypic/metadata.db``.

    A single handle is shared by every caller that acquires it through the
    ConnectionPool; ``_lock`` serializes them.
    """

    def __init__(self, library_root: str, pragmas: Optional[Dict[str, Any]] = None):
        self.library_root = library_root
        self.db_path = path_hasher.database_path(library_root)
        logging.info(f"Initializing MetadataDatabase with path: {self.db_path}")
        self._lock = Lock()
        self._closed = False
        self.pragmas = self._validate_pragmas(DEFAULT_PRAGMAS if pragmas is None else pragmas)

        os.makedirs(path_hasher.thumbnails_root(library_root), exist_ok=True)

        # check_same_thread=False: scan workers and request threads share the handle under _lock
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._init_database()

    @staticmethod
    def _validate_pragmas(pragmas: Dict[str, Any]) -> List[Tuple[str, str]]:
        validated = []
        for name, value in pragmas.items():
            if name not in _ALLOWED_PRAGMAS:
                raise ValidationError(f"Unsupported pragma: {name}", field="pragmas")
            text = str(value)
            if not _PRAGMA_VALUE_RE.match(text):
                raise ValidationError(f"Invalid value for pragma {name}: {value!r}", field="pragmas")
            validated.append((name, text))
        return validated

    def _init_database(self):
        with self._lock:
            try:
                cursor = self.conn.cursor()
                for name, value in self.pragmas:
                    cursor.execute(f"PRAGMA {name}={value};")

                cursor.execute('''
                    CREATE TABLE IF NOT EXISTS images (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        path TEXT UNIQUE NOT NULL,
                        filename TEXT NOT NULL,
                        folder TEXT NOT NULL,
                        size INTEGER,
                        width INTEGER,
                        height INTEGER,
                        format TEXT,
                        file_type TEXT DEFAULT 'image',
                        created_at INTEGER,
                        modified_at INTEGER,
                        file_hash TEXT,
                        thumbnail_path TEXT,
                        thumbnail_size INTEGER,
                        indexed_at INTEGER
                    )
                ''')

                # Databases created before file_type existed.
                try:
                    cursor.execute("ALTER TABLE images ADD COLUMN file_type TEXT DEFAULT 'image'")
                except sqlite3.OperationalError:
                    pass  # Column already exists

                cursor.execute('''
                    CREATE TABLE IF NOT EXISTS folders (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        path TEXT UNIQUE NOT NULL,
                        parent_path TEXT,
                        name TEXT NOT NULL,
                        image_count INTEGER DEFAULT 0,
                        last_scan INTEGER
                    )
                ''')

                cursor.execute('CREATE INDEX IF NOT EXISTS idx_filename ON images(filename)')
                cursor.execute('CREATE INDEX IF NOT EXISTS idx_folder ON images(folder)')
                cursor.execute('CREATE INDEX IF NOT EXISTS idx_created_at ON images(created_at DESC)')
                cursor.execute('CREATE INDEX IF NOT EXISTS idx_folder_created ON images(folder, created_at DESC)')
                cursor.execute('CREATE INDEX IF NOT EXISTS idx_folder_parent ON folders(parent_path)')

                self.conn.commit()
                logging.info(f"Metadata database initialized: {self.db_path}")

            except sqlite3.Error as e:
                logging.error(f"Error initializing metadata database: {e}")
                self.conn.close()
                raise StoreError(f"Cannot initialize {self.db_path}: {e}") from e

    def _check_open(self):
        if self._closed:
            raise StoreError(f"Database handle is closed: {self.db_path}")

    @property
    def closed(self) -> bool:
        return self._closed

    # ──────────────────────────────────────────────────────────────────────
    #  Images
    # ──────────────────────────────────────────────────────────────────────

    def upsert_batch(self, records: Iterable[ImageRecord]) -> int:
        """Insert-or-replace *records* keyed by path in one transaction.

        Either the whole batch becomes visible or none of it does.
        """
        now = _now_ms()
        rows = []
        for record in records:
            if record.indexed_at is None:
                record.indexed_at = now
            rows.append(record.to_row())
        if not rows:
            return 0

        placeholders = ", ".join("?" for _ in ImageRecord.COLUMNS)
        query = f"INSERT OR REPLACE INTO images ({', '.join(ImageRecord.COLUMNS)}) VALUES ({placeholders})"
        with self._lock:
            self._check_open()
            try:
                with self.conn:  # Transaction
                    self.conn.executemany(query, rows)
            except sqlite3.Error as e:
                logging.error(f"Batch upsert of {len(rows)} rows failed, rolled back: {e}")
                raise StoreError(f"Batch upsert failed: {e}") from e
        logging.debug(f"Upserted {len(rows)} image rows into {self.db_path}")
        return len(rows)

    def insert_image(self, record: ImageRecord) -> int:
        return self.upsert_batch([record])

    def update_modified_at(self, modified: Dict[str, int]) -> int:
        """Refresh ``modified_at`` for existing rows whose content did not change."""
        if not modified:
            return 0
        rows = [(mtime, path) for path, mtime in modified.items()]
        with self._lock:
            self._check_open()
            try:
                with self.conn:  # Transaction
                    cursor = self.conn.executemany('UPDATE images SET modified_at = ? WHERE path = ?', rows)
            except sqlite3.Error as e:
                logging.error(f"Updating mtimes for {len(rows)} rows failed, rolled back: {e}")
                raise StoreError(f"mtime update failed: {e}") from e
        return cursor.rowcount

    def get_image(self, path: str) -> Optional[ImageRecord]:
        with self._lock:
            self._check_open()
            cursor = self.conn.execute('SELECT * FROM images WHERE path = ?', (path,))
            rows = _rows(cursor)
        return ImageRecord.from_row(rows[0]) if rows else None

    def get_all_paths(self) -> List[str]:
        with self._lock:
            self._check_open()
            cursor = self.conn.execute('SELECT path FROM images')
            return [row[0] for row in cursor.fetchall()]

    def iter_paths(self, chunk_size: int = 1000):
        """Yield indexed paths in chunks without holding the lock between them."""
        last = ""
        while True:
            with self._lock:
                self._check_open()
                rows = self.conn.execute(
                    'SELECT path FROM images WHERE path > ? ORDER BY path LIMIT ?',
                    (last, chunk_size),
                ).fetchall()
            if not rows:
                return
            for (path,) in rows:
                yield path
            last = rows[-1][0]

    def get_index_state(self) -> Dict[str, Dict[str, Any]]:
        """Map of path -> {modified_at, thumbnail_path, file_hash} for change detection."""
        with self._lock:
            self._check_open()
            cursor = self.conn.execute('SELECT path, modified_at, thumbnail_path, file_hash FROM images')
            return {
                row[0]: {"modified_at": row[1], "thumbnail_path": row[2], "file_hash": row[3]}
                for row in cursor.fetchall()
            }

    def count_images(self) -> int:
        with self._lock:
            self._check_open()
            return self.conn.execute('SELECT COUNT(*) FROM images').fetchone()[0]

    def _build_where(self, filters: SearchFilters) -> Tuple[str, List[Any]]:
        clauses = ["1=1"]
        params: List[Any] = []

        # Keyword tokens: AND of independent substring matches
        for token in filters.keyword_tokens:
            clauses.append("filename LIKE ? ESCAPE '\\'")
            params.append(f"%{_escape_like(token)}%")

        if filters.folder:
            folder = filters.folder.strip("/")
            clauses.append("(folder = ? OR folder LIKE ? ESCAPE '\\')")
            params.extend([folder, f"{_escape_like(folder)}/%"])

        if filters.formats:
            placeholders = ", ".join("?" for _ in filters.formats)
            clauses.append(f"LOWER(format) IN ({placeholders})")
            params.extend(f.lower() for f in filters.formats)

        if filters.min_size is not None:
            clauses.append("size >= ?")
            params.append(filters.min_size)
        if filters.max_size is not None:
            clauses.append("size <= ?")
            params.append(filters.max_size)

        if filters.start_date is not None:
            clauses.append("created_at >= ?")
            params.append(filters.start_date)
        if filters.end_date is not None:
            clauses.append("created_at <= ?")
            params.append(filters.end_date)

        return " AND ".join(clauses), params

    def search(self, filters: Optional[SearchFilters] = None,
               pagination: Optional[Pagination] = None) -> SearchResult:
        """Filtered, paginated image search.

        The total and the page are read under one lock hold, so a concurrent
        batch commit cannot land between them.
        """
        filters = filters or SearchFilters()
        filters.validate()
        where, params = self._build_where(filters)
        query = f"SELECT * FROM images WHERE {where} ORDER BY created_at DESC, path"
        page_params = list(params)
        if pagination is not None:
            query += " LIMIT ? OFFSET ?"
            page_params.extend([pagination.limit, pagination.offset])

        with self._lock:
            self._check_open()
            try:
                total = self.conn.execute(f"SELECT COUNT(*) FROM images WHERE {where}", params).fetchone()[0]
                items = [ImageRecord.from_row(row) for row in _rows(self.conn.execute(query, page_params))]
            except sqlite3.Error as e:
                logging.error(f"Error searching images: {e}", exc_info=True)
                raise StoreError(f"Search failed: {e}") from e

        if pagination is None:
            return SearchResult(items=items, total=total, has_more=False)
        return SearchResult(
            items=items,
            total=total,
            has_more=pagination.offset + len(items) < total,
            offset=pagination.offset,
            limit=pagination.limit,
        )

    def delete_by_path(self, path: str) -> int:
        with self._lock:
            self._check_open()
            try:
                with self.conn:
                    cursor = self.conn.execute('DELETE FROM images WHERE path = ?', (path,))
                    return cursor.rowcount
            except sqlite3.Error as e:
                raise StoreError(f"Delete of {path} failed: {e}") from e

    def delete_by_paths(self, paths: List[str]) -> int:
        if not paths:
            return 0
        with self._lock:
            self._check_open()
            try:
                with self.conn:
                    cursor = self.conn.executemany('DELETE FROM images WHERE path = ?', [(p,) for p in paths])
                    deleted = cursor.rowcount
            except sqlite3.Error as e:
                raise StoreError(f"Delete of {len(paths)} paths failed: {e}") from e
        logging.info(f"Deleted {deleted} records from database for {len(paths)} paths.")
        return deleted

    def delete_by_folder_prefix(self, prefix: str) -> int:
        """Delete images in *prefix* and in any folder nested beneath it."""
        prefix = prefix.strip("/")
        if not prefix:
            raise ValidationError("Folder prefix must not be empty", field="prefix")
        with self._lock:
            self._check_open()
            try:
                with self.conn:
                    cursor = self.conn.execute(
                        "DELETE FROM images WHERE folder = ? OR folder LIKE ? ESCAPE '\\'",
                        (prefix, f"{_escape_like(prefix)}/%"),
                    )
                    return cursor.rowcount
            except sqlite3.Error as e:
                raise StoreError(f"Prefix delete of {prefix} failed: {e}") from e

    def total_cache_size(self) -> int:
        with self._lock:
            self._check_open()
            return self.conn.execute('SELECT COALESCE(SUM(thumbnail_size), 0) FROM images').fetchone()[0]

    # ──────────────────────────────────────────────────────────────────────
    #  Folders
    # ──────────────────────────────────────────────────────────────────────

    def upsert_folders(self, folders: Iterable[FolderRecord]) -> int:
        now = _now_ms()
        rows = []
        for folder in folders:
            if folder.last_scan is None:
                folder.last_scan = now
            rows.append(folder.to_row())
        if not rows:
            return 0
        with self._lock:
            self._check_open()
            try:
                with self.conn:
                    # Existing counts are kept; they are recomputed separately.
                    self.conn.executemany('''
                        INSERT INTO folders (path, parent_path, name, image_count, last_scan)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(path) DO UPDATE SET
                            parent_path = excluded.parent_path,
                            name = excluded.name,
                            last_scan = excluded.last_scan
                    ''', rows)
            except sqlite3.Error as e:
                raise StoreError(f"Folder upsert failed: {e}") from e
        return len(rows)

    def ensure_folder_chain(self, folder: str) -> List[str]:
        """Make sure *folder* and all of its ancestors have folder rows."""
        folder = (folder or "").strip("/")
        chain: List[FolderRecord] = []
        current = folder
        while current:
            parent = posixpath.dirname(current)
            chain.append(FolderRecord(path=current, parent_path=parent,
                                      name=posixpath.basename(current)))
            current = parent
        if not chain:
            return []
        with self._lock:
            self._check_open()
            existing = {
                row[0] for row in self.conn.execute(
                    f"SELECT path FROM folders WHERE path IN ({', '.join('?' for _ in chain)})",
                    [f.path for f in chain],
                ).fetchall()
            }
        missing = [f for f in chain if f.path not in existing]
        self.upsert_folders(missing)
        return [f.path for f in missing]

    def get_folder(self, path: str) -> Optional[FolderRecord]:
        with self._lock:
            self._check_open()
            rows = _rows(self.conn.execute('SELECT * FROM folders WHERE path = ?', (path,)))
        return FolderRecord.from_row(rows[0]) if rows else None

    def get_all_folders(self) -> List[FolderRecord]:
        with self._lock:
            self._check_open()
            rows = _rows(self.conn.execute('SELECT * FROM folders ORDER BY path'))
        return [FolderRecord.from_row(row) for row in rows]

    def delete_folder(self, path: str) -> int:
        with self._lock:
            self._check_open()
            try:
                with self.conn:
                    return self.conn.execute('DELETE FROM folders WHERE path = ?', (path,)).rowcount
            except sqlite3.Error as e:
                raise StoreError(f"Folder delete of {path} failed: {e}") from e

    def delete_folders_by_prefix(self, prefix: str) -> int:
        prefix = prefix.strip("/")
        if not prefix:
            raise ValidationError("Folder prefix must not be empty", field="prefix")
        with self._lock:
            self._check_open()
            try:
                with self.conn:
                    return self.conn.execute(
                        "DELETE FROM folders WHERE path = ? OR path LIKE ? ESCAPE '\\'",
                        (prefix, f"{_escape_like(prefix)}/%"),
                    ).rowcount
            except sqlite3.Error as e:
                raise StoreError(f"Folder prefix delete of {prefix} failed: {e}") from e

    def recompute_folder_count(self, folder: str) -> int:
        """Recount images in *folder* and everything nested under it.

        The stored counter is overwritten with the fresh COUNT; it is never
        incremented in place.
        """
        folder = (folder or "").strip("/")
        with self._lock:
            self._check_open()
            try:
                with self.conn:
                    if folder:
                        count = self.conn.execute(
                            "SELECT COUNT(*) FROM images WHERE folder = ? OR folder LIKE ? ESCAPE '\\'",
                            (folder, f"{_escape_like(folder)}/%"),
                        ).fetchone()[0]
                    else:
                        count = self.conn.execute('SELECT COUNT(*) FROM images').fetchone()[0]
                    self.conn.execute('UPDATE folders SET image_count = ? WHERE path = ?', (count, folder))
            except sqlite3.Error as e:
                raise StoreError(f"Folder recount of {folder} failed: {e}") from e
        return count

    def update_all_folder_counts(self) -> int:
        folders = self.get_all_folders()
        for folder in folders:
            self.recompute_folder_count(folder.path)
        return len(folders)

    def get_folder_tree(self) -> List[Dict[str, Any]]:
        """Nested folder tree in API shape; roots are folders without a known parent."""
        folders = self.get_all_folders()
        nodes = {f.path: dict(f.to_api(), children=[]) for f in folders}
        tree = []
        for folder in folders:
            parent = nodes.get(folder.parent_path) if folder.parent_path else None
            if parent is not None:
                parent["children"].append(nodes[folder.path])
            else:
                tree.append(nodes[folder.path])
        return tree

    # ──────────────────────────────────────────────────────────────────────
    #  Lifecycle
    # ──────────────────────────────────────────────────────────────────────

    def checkpoint(self) -> None:
        """Flush the WAL into the main database file."""
        with self._lock:
            if self._closed:
                return
            try:
                self.conn.execute('PRAGMA wal_checkpoint(TRUNCATE)')
            except sqlite3.Error as e:
                logging.warning(f"WAL checkpoint failed for {self.db_path}: {e}")

    def close(self):
        """Closes the database connection."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.conn.close()
            logging.info(f"Metadata database connection closed: {self.db_path}")
