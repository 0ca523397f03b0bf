import hashlib
import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from PIL import Image, ImageOps

from core import path_hasher
from core.errors import DecodeError, LibraryIOError
from core.lru_cache import is_cache_valid

logger = logging.getLogger(__name__)

# Extensions Pillow can actually decode into a thumbnail.
THUMBNAIL_FORMATS = frozenset({
    'jpg', 'jpeg', 'png', 'webp', 'gif', 'bmp', 'tiff', 'tif', 'avif', 'heif', 'heic', 'svg',
})

FILE_CATEGORIES = {
    'image': ('jpg', 'jpeg', 'png', 'webp', 'gif', 'bmp', 'tiff', 'tif', 'avif', 'heif', 'heic',
              'svg', 'ico', 'raw', 'cr2', 'nef', 'dng'),
    'video': ('mp4', 'webm', 'mov', 'avi', 'mkv', 'flv', 'm4v', 'wmv', 'mpg', 'mpeg', '3gp', 'ts',
              'vob', 'ogv'),
    'audio': ('mp3', 'wav', 'flac', 'aac', 'm4a', 'ogg', 'wma', 'ape', 'alac', 'opus', 'aiff'),
    'document': ('pdf', 'txt', 'md', 'doc', 'docx', 'xls', 'xlsx', 'ppt', 'pptx', 'rtf', 'odt',
                 'ods', 'odp', 'csv', 'pages', 'numbers', 'key'),
    'design': ('psd', 'ai', 'sketch', 'xd', 'fig', 'figma', 'indd', 'eps', 'cdr', 'dwg'),
}
ALL_FORMATS = frozenset(ext for exts in FILE_CATEGORIES.values() for ext in exts)

DEFAULT_TARGET_HEIGHT = 480
DEFAULT_QUALITY = 92
DEFAULT_EFFORT = 4
DEFAULT_MAX_IMAGE_PIXELS = 200_000_000


def _extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lower().lstrip('.')


def file_type_for(filename: str) -> str:
    ext = _extension(filename)
    for category, extensions in FILE_CATEGORIES.items():
        if ext in extensions:
            return category
    return 'other'


def is_image_file(filename: str) -> bool:
    """True for every file the library indexes, not only decodable images."""
    return _extension(filename) in ALL_FORMATS


def can_generate_thumbnail(filename: str) -> bool:
    return _extension(filename) in THUMBNAIL_FORMATS


def hash_file(file_path: str, chunk_size: int = 1024 * 1024) -> str:
    """MD5 of the full file contents, read in chunks."""
    md5 = hashlib.md5()
    try:
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(chunk_size), b""):
                md5.update(chunk)
    except OSError as e:
        raise LibraryIOError(file_path, str(e)) from e
    return md5.hexdigest()


def _stat_times_ms(st: os.stat_result):
    # st_birthtime only exists on macOS/BSD (and Windows via st_ctime)
    created = getattr(st, "st_birthtime", None) or st.st_ctime
    return int(created * 1000), int(st.st_mtime * 1000)


@dataclass
class ThumbnailResult:
    artifact_relative_path: str
    artifact_size: int
    width: Optional[int] = None
    height: Optional[int] = None
    skipped: bool = False


class ThumbnailGenerator:
    """
    Downscales source images into WebP artifacts under the library's shard
    directories.

    Decoding is the largest native-memory consumer of a scan, so at most
    ``decode_concurrency`` images are open at once and Pillow's block cache is
    capped.  ``clear()`` drops that cache and lets the generator be registered
    with the CleanupManager.
    """

    def __init__(self, target_height: int = DEFAULT_TARGET_HEIGHT, quality: int = DEFAULT_QUALITY,
                 effort: int = DEFAULT_EFFORT, cache_format: str = path_hasher.DEFAULT_CACHE_FORMAT,
                 decode_concurrency: int = 1, blocks_max: Optional[int] = 16,
                 max_image_pixels: Optional[int] = DEFAULT_MAX_IMAGE_PIXELS):
        if decode_concurrency < 1:
            raise ValueError("decode_concurrency must be at least 1")
        self.target_height = target_height
        self.quality = quality
        self.effort = effort
        self.cache_format = cache_format
        self._decode_slots = threading.BoundedSemaphore(decode_concurrency)

        if blocks_max is not None:
            Image.core.set_blocks_max(blocks_max)
        if max_image_pixels is not None:
            Image.MAX_IMAGE_PIXELS = max_image_pixels

    def read_metadata(self, source_abs: str) -> Dict[str, Any]:
        """Stat the file and read image dimensions from the header only."""
        try:
            st = os.stat(source_abs)
        except OSError as e:
            raise LibraryIOError(source_abs, str(e)) from e
        created_at, modified_at = _stat_times_ms(st)
        metadata = {
            'width': None,
            'height': None,
            'format': _extension(source_abs),
            'size': st.st_size,
            'created_at': created_at,
            'modified_at': modified_at,
        }
        if can_generate_thumbnail(source_abs):
            try:
                with Image.open(source_abs) as img:  # lazy: header only
                    metadata['width'], metadata['height'] = img.size
            except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
                logger.debug(f"Header read failed for {source_abs}: {e}")
        return metadata

    def _existing_artifact(self, artifact_abs: str, artifact_rel: str) -> Optional[ThumbnailResult]:
        try:
            size = os.path.getsize(artifact_abs)
            with Image.open(artifact_abs) as existing:
                width, height = existing.size
        except (OSError, ValueError, SyntaxError):
            return None
        return ThumbnailResult(artifact_rel, size, width, height, skipped=True)

    def generate(self, source_abs: str, library_root: str, rel_path: str,
                 target_height: Optional[int] = None, quality: Optional[int] = None,
                 effort: Optional[int] = None,
                 recorded_modified_at: Optional[int] = None) -> ThumbnailResult:
        """
        Produce (or reuse) the artifact for *rel_path*.

        The artifact is reused when it exists and the source has not been
        modified after ``recorded_modified_at``.  Raises LibraryIOError when the
        source cannot be stat-ed and DecodeError when it cannot be decoded.
        """
        target_height = target_height or self.target_height
        quality = self.quality if quality is None else quality
        effort = self.effort if effort is None else effort

        artifact_rel = path_hasher.cache_relative_path(rel_path, self.cache_format)
        artifact_abs = path_hasher.cache_absolute_path(library_root, rel_path, self.cache_format)

        try:
            st = os.stat(source_abs)
        except OSError as e:
            raise LibraryIOError(source_abs, str(e)) from e
        _, current_mtime = _stat_times_ms(st)

        if os.path.exists(artifact_abs) and is_cache_valid(recorded_modified_at, current_mtime):
            existing = self._existing_artifact(artifact_abs, artifact_rel)
            if existing is not None:
                logger.debug(f"Reusing thumbnail for {rel_path}")
                return existing

        if not can_generate_thumbnail(source_abs):
            raise DecodeError(source_abs, "unsupported format")

        start_time = time.time()
        with self._decode_slots:
            width, height = self._render(source_abs, artifact_abs, target_height, quality, effort)

        size = os.path.getsize(artifact_abs)
        logger.debug(f"Generated thumbnail {artifact_rel} ({width}x{height}, {size} B) "
                     f"in {time.time() - start_time:.3f}s")
        return ThumbnailResult(artifact_rel, size, width, height)

    def _render(self, source_abs: str, artifact_abs: str, target_height: int,
                quality: int, effort: int):
        os.makedirs(os.path.dirname(artifact_abs), exist_ok=True)
        tmp_path = f"{artifact_abs}.{os.getpid()}.{threading.get_ident()}.tmp"
        try:
            with Image.open(source_abs) as img:
                img = ImageOps.exif_transpose(img)
                if img.mode not in ('RGB', 'RGBA'):
                    has_alpha = img.mode in ('LA', 'PA') or 'transparency' in img.info
                    img = img.convert('RGBA' if has_alpha else 'RGB')

                width, height = img.size
                if height > target_height:
                    width = max(1, round(width * target_height / height))
                    height = target_height
                    img = img.resize((width, height), Image.Resampling.LANCZOS)

                img.save(tmp_path, 'WEBP', quality=quality, method=effort)
            os.replace(tmp_path, artifact_abs)
            return width, height
        except FileNotFoundError as e:
            raise LibraryIOError(source_abs, str(e)) from e
        except PermissionError as e:
            raise LibraryIOError(source_abs, str(e)) from e
        except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
            logger.error(f"Error generating thumbnail for {source_abs}: {e}")
            raise DecodeError(source_abs, str(e)) from e
        finally:
            if os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass

    def clear(self) -> None:
        """Release Pillow's internal block cache."""
        Image.core.clear_cache()
        logger.debug("Pillow block cache cleared")
