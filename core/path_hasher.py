"""Identity addressing for the thumbnail cache.

A cache artifact is keyed by the MD5 of the library-relative path, not by the
file's bytes.  The artifact lives at::

    <library>/.flypic/thumbnails/<shard>/<fingerprint>.<format>

where ``shard`` is the first ``SHARD_LENGTH`` hex characters of the
fingerprint, so the shard can always be recovered from the filename alone.
Renaming a file changes its key; editing it in place does not, which is why
callers compare ``modified_at`` before reusing an artifact.
"""
import hashlib
import os
import posixpath
from typing import Iterable, List, Set

from core.errors import ValidationError

METADATA_DIR = ".flypic"
THUMBNAILS_DIR = "thumbnails"
DATABASE_FILE = "metadata.db"
SHARD_LENGTH = 2
DEFAULT_CACHE_FORMAT = "webp"


def normalize_relative_path(path: str) -> str:
    """Forward-slash normalize a library-relative path.

    Raises ValidationError for empty paths or paths escaping the library root.
    """
    if path is None:
        raise ValidationError("Path is required", field="path")
    normalized = str(path).replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    normalized = normalized.lstrip("/")
    normalized = posixpath.normpath(normalized) if normalized else ""
    if not normalized or normalized == ".":
        raise ValidationError(f"Empty relative path: {path!r}", field="path")
    if normalized == ".." or normalized.startswith("../"):
        raise ValidationError(f"Path escapes the library root: {path!r}", field="path")
    return normalized


def relative_path(library_root: str, absolute_path: str) -> str:
    return normalize_relative_path(os.path.relpath(absolute_path, library_root))


def folder_of(rel_path: str) -> str:
    """Relative parent folder of *rel_path*; ``""`` for files at the root."""
    parent = posixpath.dirname(rel_path)
    return "" if parent in ("", ".") else parent


def fingerprint(rel_path: str) -> str:
    return hashlib.md5(normalize_relative_path(rel_path).encode("utf-8")).hexdigest()


def shard(rel_path: str) -> str:
    return fingerprint(rel_path)[:SHARD_LENGTH]


def cache_filename(rel_path: str, cache_format: str = DEFAULT_CACHE_FORMAT) -> str:
    return f"{fingerprint(rel_path)}.{cache_format}"


def shard_for_filename(filename: str) -> str:
    """Recover the shard directory from a stored cache filename."""
    base = posixpath.basename(filename.replace("\\", "/"))
    stem = base.rsplit(".", 1)[0] if "." in base else base
    if len(stem) < SHARD_LENGTH:
        raise ValidationError(f"Not a cache artifact filename: {filename!r}", field="thumbnail_path")
    return stem[:SHARD_LENGTH]


def cache_relative_path_from_filename(filename: str) -> str:
    """Library-relative artifact path rebuilt from the filename only."""
    base = posixpath.basename(filename.replace("\\", "/"))
    return posixpath.join(METADATA_DIR, THUMBNAILS_DIR, shard_for_filename(base), base)


def cache_relative_path(rel_path: str, cache_format: str = DEFAULT_CACHE_FORMAT) -> str:
    return cache_relative_path_from_filename(cache_filename(rel_path, cache_format))


def cache_absolute_path(library_root: str, rel_path: str,
                        cache_format: str = DEFAULT_CACHE_FORMAT) -> str:
    return os.path.join(library_root, *cache_relative_path(rel_path, cache_format).split("/"))


def metadata_dir(library_root: str) -> str:
    return os.path.join(library_root, METADATA_DIR)


def thumbnails_root(library_root: str) -> str:
    return os.path.join(library_root, METADATA_DIR, THUMBNAILS_DIR)


def database_path(library_root: str) -> str:
    return os.path.join(library_root, METADATA_DIR, DATABASE_FILE)


def find_orphan_artifacts(library_root: str, indexed_paths: Iterable[str],
                          cache_format: str = DEFAULT_CACHE_FORMAT) -> List[str]:
    """List artifact files whose fingerprint matches no indexed path.

    Only reports; deleting them is left to the caller.
    """
    known: Set[str] = {fingerprint(p) for p in indexed_paths}
    orphans: List[str] = []
    root = thumbnails_root(library_root)
    if not os.path.isdir(root):
        return orphans
    suffix = f".{cache_format}"
    for shard_name in sorted(os.listdir(root)):
        shard_dir = os.path.join(root, shard_name)
        if len(shard_name) != SHARD_LENGTH or not os.path.isdir(shard_dir):
            continue
        for filename in sorted(os.listdir(shard_dir)):
            if not filename.endswith(suffix):
                continue
            if filename[:-len(suffix)] not in known:
                orphans.append(os.path.join(shard_dir, filename))
    return orphans
