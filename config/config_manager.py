import copy
import os
from typing import Any, Dict, List, Optional

import yaml

from core.errors import ValidationError

DEFAULT_CONFIG = {
    "logging_level": "INFO",
    "log_dir": "~/.picindex",
    # Each entry: {"id": ..., "name": ..., "path": ...}
    "libraries": [],
    "thumbnail": {
        "height": 480,
        "quality": 92,
        "effort": 4,
        "format": "webp",
        "decode_concurrency": 1,
        "pillow_blocks_max": 16,
    },
    "scan": {
        "concurrency": 2,
        "write_batch_size": 100,
        "progress_every": 10,
        "progress_interval": 1.0,  # seconds
        "max_delete_ratio": 0.5,
        "ignore_patterns": ["._*", "Thumbs.db"],  # glob patterns
    },
    "pool": {
        "idle_timeout": 60.0,  # seconds
        "max_open": 4,
        "exhaustion_policy": "block",  # or "fail"
        "acquire_timeout": None,
    },
    "database": {
        "pragmas": {
            "journal_mode": "DELETE",
            "synchronous": "NORMAL",
            "cache_size": -4096,  # KiB, negative = size not pages
            "temp_store": "FILE",
            "page_size": 4096,
            "mmap_size": 0,
        },
    },
    "cleanup": {
        "interval": 60.0,
        "routine_gc_passes": 1,
        "emergency_gc_passes": 3,
    },
    "memory": {
        "warning_mb": 1024,
        "danger_mb": 1536,
        "check_interval": 30.0,
        "cooldown": 60.0,
    },
    "watcher": {
        "auto_start": False,
        "max_restarts": 3,
        "close_timeout": 1.0,
    },
    "search": {
        "cache_size": 128,
    },
    "workers": {
        "num_workers": 2,
    },
}


def _default_config_path() -> str:
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
    return os.path.join(xdg_config_home, "picindex", "config.yaml")


def _deep_merge(base: dict, override: dict) -> dict:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


class ConfigManager:
    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or _default_config_path()
        self.config = self.load_config()

    def load_config(self):
        try:
            with open(self.config_path, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            self.save_config(DEFAULT_CONFIG)
            return copy.deepcopy(DEFAULT_CONFIG)
        except yaml.YAMLError as exc:
            raise ValueError(f"Malformed config at {self.config_path}") from exc
        if not isinstance(user_config, dict):
            raise ValueError(f"Config at {self.config_path} must be a mapping")
        return _deep_merge(copy.deepcopy(DEFAULT_CONFIG), user_config)

    def save_config(self, config):
        os.makedirs(os.path.dirname(self.config_path), exist_ok=True)
        with open(self.config_path, "w") as f:
            yaml.dump(config, f, default_flow_style=False)

    def get(self, key, default=None):
        keys = key.split('.')
        value = self.config
        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def set(self, key, value):
        keys = key.split('.')
        node = self.config
        for k in keys[:-1]:
            node = node.setdefault(k, {})
        node[keys[-1]] = value
        self.save_config(self.config)

    @property
    def logging_level(self):
        return self.get("logging_level", "INFO")

    def get_libraries(self) -> List[Dict[str, Any]]:
        """Configured libraries with ``path`` expanded.  Raises ValidationError on bad entries."""
        libraries = []
        seen = set()
        for entry in self.get("libraries", []) or []:
            if not isinstance(entry, dict) or not entry.get("id") or not entry.get("path"):
                raise ValidationError(f"Library entry needs 'id' and 'path': {entry!r}", field="libraries")
            library_id = str(entry["id"])
            if library_id in seen:
                raise ValidationError(f"Duplicate library id: {library_id}", field="libraries")
            seen.add(library_id)
            libraries.append({
                "id": library_id,
                "name": entry.get("name") or library_id,
                "path": os.path.abspath(os.path.expanduser(entry["path"])),
            })
        return libraries
