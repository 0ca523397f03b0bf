"""
Shared pytest fixtures for picindex tests.
"""
import copy
import os
import sys
import time

# Ensure project root is on path for all tests
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest
from PIL import Image

from config.config_manager import DEFAULT_CONFIG, _deep_merge
from core.metadata_database import MetadataDatabase


class MockConfigManager:
    """ConfigManager substitute backed by a plain dict; never touches disk."""

    def __init__(self, overrides: dict = None):
        self.config = _deep_merge(copy.deepcopy(DEFAULT_CONFIG), overrides or {})

    def get(self, key: str, default=None):
        keys = key.split(".")
        val = self.config
        for k in keys:
            if isinstance(val, dict):
                val = val.get(k)
            else:
                return default
        return val if val is not None else default

    @property
    def logging_level(self):
        return self.get("logging_level", "INFO")

    def get_libraries(self):
        return [
            {"id": lib["id"], "name": lib.get("name", lib["id"]), "path": os.path.abspath(lib["path"])}
            for lib in self.get("libraries", [])
        ]


def write_image(path, size=(64, 48), color=(200, 120, 40), fmt="JPEG"):
    """Write a small solid-colour image, creating parent directories."""
    os.makedirs(os.path.dirname(str(path)), exist_ok=True)
    Image.new("RGB", size, color=color).save(str(path), fmt)
    return str(path)


def _poll_until(predicate, timeout=5.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture()
def poll_until():
    return _poll_until


@pytest.fixture()
def tmp_library(tmp_path):
    """An empty library root directory."""
    root = tmp_path / "library"
    root.mkdir()
    return str(root)


@pytest.fixture()
def db(tmp_library):
    database = MetadataDatabase(tmp_library)
    yield database
    database.close()


@pytest.fixture()
def sample_images(tmp_library):
    """Three JPEGs: two at the root, one nested in ``album/``.  Returns relative paths."""
    rel_paths = ["a.jpg", "b.jpg", "album/c.jpg"]
    for i, rel in enumerate(rel_paths):
        write_image(os.path.join(tmp_library, *rel.split("/")), size=(800, 600),
                    color=(i * 60 % 255, i * 30 % 255, 90))
    return rel_paths


@pytest.fixture()
def mock_config(tmp_library):
    return MockConfigManager({
        "libraries": [{"id": "lib", "name": "Library", "path": tmp_library}],
        "pool": {"idle_timeout": 60.0},
        "cleanup": {"interval": 3600.0},
        "memory": {"check_interval": 3600.0},
    })
