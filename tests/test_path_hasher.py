"""Tests for identity addressing of cache artifacts."""
import hashlib
import os

import pytest

from core import path_hasher
from core.errors import ValidationError


class TestNormalize:
    def test_backslashes_and_leading_dot(self):
        assert path_hasher.normalize_relative_path(".\\album\\x.jpg") == "album/x.jpg"

    def test_leading_slash_stripped(self):
        assert path_hasher.normalize_relative_path("/album/x.jpg") == "album/x.jpg"

    def test_collapses_inner_dots(self):
        assert path_hasher.normalize_relative_path("a/./b/../c.jpg") == "a/c.jpg"

    @pytest.mark.parametrize("bad", ["", ".", "./", None])
    def test_empty_rejected(self, bad):
        with pytest.raises(ValidationError):
            path_hasher.normalize_relative_path(bad)

    @pytest.mark.parametrize("bad", ["..", "../x.jpg", "a/../../x.jpg"])
    def test_escape_rejected(self, bad):
        with pytest.raises(ValidationError):
            path_hasher.normalize_relative_path(bad)


def test_folder_of():
    assert path_hasher.folder_of("x.jpg") == ""
    assert path_hasher.folder_of("A/B/y.jpg") == "A/B"


def test_fingerprint_is_md5_of_relative_path():
    expected = hashlib.md5("album/x.jpg".encode("utf-8")).hexdigest()
    assert path_hasher.fingerprint("album/x.jpg") == expected
    # Separator style does not change identity.
    assert path_hasher.fingerprint("album\\x.jpg") == expected


def test_shard_is_fingerprint_prefix():
    fp = path_hasher.fingerprint("x.jpg")
    assert path_hasher.shard("x.jpg") == fp[:path_hasher.SHARD_LENGTH]


def test_cache_relative_path_layout():
    fp = path_hasher.fingerprint("album/x.jpg")
    assert path_hasher.cache_relative_path("album/x.jpg") == f".flypic/thumbnails/{fp[:2]}/{fp}.webp"


def test_shard_recovered_from_filename_alone():
    rel = path_hasher.cache_relative_path("album/x.jpg")
    filename = rel.rsplit("/", 1)[-1]
    assert path_hasher.cache_relative_path_from_filename(filename) == rel
    # Older rows may store a different prefix; only the basename counts.
    assert path_hasher.cache_relative_path_from_filename(f"thumbs/{filename}") == rel


def test_shard_for_filename_rejects_short_names():
    with pytest.raises(ValidationError):
        path_hasher.shard_for_filename("a.webp")


def test_cache_absolute_path_is_under_library(tmp_library):
    abs_path = path_hasher.cache_absolute_path(tmp_library, "x.jpg")
    assert abs_path.startswith(path_hasher.thumbnails_root(tmp_library))


def test_renaming_changes_identity():
    assert path_hasher.fingerprint("a.jpg") != path_hasher.fingerprint("b.jpg")


def test_find_orphan_artifacts(tmp_library):
    for rel in ("keep.jpg", "gone.jpg"):
        artifact = path_hasher.cache_absolute_path(tmp_library, rel)
        os.makedirs(os.path.dirname(artifact), exist_ok=True)
        with open(artifact, "wb") as f:
            f.write(b"x")

    orphans = path_hasher.find_orphan_artifacts(tmp_library, ["keep.jpg"])

    assert orphans == [path_hasher.cache_absolute_path(tmp_library, "gone.jpg")]


def test_find_orphan_artifacts_without_cache_dir(tmp_library):
    assert path_hasher.find_orphan_artifacts(tmp_library, []) == []
