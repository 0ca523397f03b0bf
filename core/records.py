"""Row types for the metadata store and their API shapes."""
from dataclasses import dataclass, field, fields, asdict
from typing import Any, Dict, List, Optional, Tuple

from core.errors import ValidationError

DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 500

# Static storage -> API field names.  Columns not listed keep their name.
API_FIELD_NAMES: Dict[str, str] = {
    "file_type": "fileType",
    "created_at": "createdAt",
    "modified_at": "modifiedAt",
    "file_hash": "fileHash",
    "thumbnail_path": "thumbnailPath",
    "thumbnail_size": "thumbnailSize",
    "indexed_at": "indexedAt",
    "parent_path": "parentPath",
    "image_count": "imageCount",
    "last_scan": "lastScan",
}


@dataclass
class ImageRecord:
    path: str
    filename: str
    folder: str
    size: int = 0
    width: Optional[int] = None
    height: Optional[int] = None
    format: Optional[str] = None
    file_type: str = "image"
    created_at: Optional[int] = None
    modified_at: Optional[int] = None
    file_hash: Optional[str] = None
    thumbnail_path: Optional[str] = None
    thumbnail_size: Optional[int] = None
    indexed_at: Optional[int] = None

    COLUMNS = (
        "path", "filename", "folder", "size", "width", "height", "format",
        "file_type", "created_at", "modified_at", "file_hash",
        "thumbnail_path", "thumbnail_size", "indexed_at",
    )

    def to_row(self) -> Tuple:
        return tuple(getattr(self, name) for name in self.COLUMNS)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ImageRecord":
        return cls(**{name: row[name] for name in cls.COLUMNS if name in row})

    def to_api(self) -> Dict[str, Any]:
        return {API_FIELD_NAMES.get(k, k): v for k, v in asdict(self).items()}


@dataclass
class FolderRecord:
    path: str
    parent_path: str
    name: str
    image_count: int = 0
    last_scan: Optional[int] = None

    COLUMNS = ("path", "parent_path", "name", "image_count", "last_scan")

    def to_row(self) -> Tuple:
        return tuple(getattr(self, name) for name in self.COLUMNS)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "FolderRecord":
        return cls(**{name: row[name] for name in cls.COLUMNS if name in row})

    def to_api(self) -> Dict[str, Any]:
        return {API_FIELD_NAMES.get(k, k): v for k, v in asdict(self).items()}


@dataclass(frozen=True)
class SearchFilters:
    """Conjunctive search filters.

    ``keywords`` is split on whitespace; every token must appear in the
    filename.  Sizes are bytes, dates are epoch milliseconds, both inclusive.
    """
    keywords: str = ""
    folder: Optional[str] = None
    formats: Tuple[str, ...] = ()
    min_size: Optional[int] = None
    max_size: Optional[int] = None
    start_date: Optional[int] = None
    end_date: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SearchFilters":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        aliases = {"minSize": "min_size", "maxSize": "max_size",
                   "startDate": "start_date", "endDate": "end_date"}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = aliases.get(key, key)
            if name not in known:
                raise ValidationError(f"Unknown search filter: {key}", field=key)
            kwargs[name] = value
        if "formats" in kwargs:
            formats = kwargs["formats"] or ()
            if isinstance(formats, str):
                formats = (formats,)
            kwargs["formats"] = tuple(str(f).lower() for f in formats)
        filters = cls(**kwargs)
        filters.validate()
        return filters

    @property
    def keyword_tokens(self) -> List[str]:
        return (self.keywords or "").split()

    def validate(self) -> None:
        for name in ("min_size", "max_size", "start_date", "end_date"):
            value = getattr(self, name)
            if value is None:
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer", field=name)
        if self.min_size is not None and self.max_size is not None and self.min_size > self.max_size:
            raise ValidationError("min_size is greater than max_size", field="min_size")
        if self.start_date is not None and self.end_date is not None and self.start_date > self.end_date:
            raise ValidationError("start_date is after end_date", field="start_date")
        if self.folder is not None and not isinstance(self.folder, str):
            raise ValidationError("folder must be a string", field="folder")


@dataclass(frozen=True)
class Pagination:
    offset: int = 0
    limit: int = DEFAULT_PAGE_SIZE

    def __post_init__(self):
        if not isinstance(self.offset, int) or isinstance(self.offset, bool) or self.offset < 0:
            raise ValidationError("offset must be a non-negative integer", field="offset")
        if not isinstance(self.limit, int) or isinstance(self.limit, bool) or not 0 < self.limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")


@dataclass
class ChangeSet:
    """Filesystem deltas for one library, as library-relative paths."""
    files_added: List[str] = field(default_factory=list)
    files_changed: List[str] = field(default_factory=list)
    files_removed: List[str] = field(default_factory=list)
    dirs_added: List[str] = field(default_factory=list)
    dirs_removed: List[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.files_added or self.files_changed or self.files_removed
                    or self.dirs_added or self.dirs_removed)

    def __len__(self) -> int:
        return (len(self.files_added) + len(self.files_changed) + len(self.files_removed)
                + len(self.dirs_added) + len(self.dirs_removed))

    def to_api(self) -> Dict[str, List[str]]:
        return {
            "filesAdded": list(self.files_added),
            "filesChanged": list(self.files_changed),
            "filesRemoved": list(self.files_removed),
            "dirsAdded": list(self.dirs_added),
            "dirsRemoved": list(self.dirs_removed),
        }


@dataclass
class SearchResult:
    items: List[ImageRecord] = field(default_factory=list)
    total: int = 0
    has_more: bool = False
    offset: int = 0
    limit: Optional[int] = None

    def to_api(self) -> Dict[str, Any]:
        return {
            "images": [item.to_api() for item in self.items],
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
            "hasMore": self.has_more,
        }
