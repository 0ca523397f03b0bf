"""Tests for the per-library metadata store."""
import os
import sqlite3

import pytest

from core import path_hasher
from core.errors import StoreError, ValidationError
from core.metadata_database import MetadataDatabase
from core.records import FolderRecord, ImageRecord, Pagination, SearchFilters


def _record(path, size=100, created_at=1000, fmt="jpg", thumbnail_path=None, **kwargs):
    return ImageRecord(
        path=path,
        filename=path.rsplit("/", 1)[-1],
        folder=path_hasher.folder_of(path),
        size=size,
        format=fmt,
        created_at=created_at,
        modified_at=created_at,
        thumbnail_path=thumbnail_path,
        **kwargs,
    )


class TestSchema:
    def test_database_lives_in_metadata_dir(self, db, tmp_library):
        assert db.db_path == os.path.join(tmp_library, ".flypic", "metadata.db")
        assert os.path.isdir(os.path.join(tmp_library, ".flypic", "thumbnails"))

    def test_reopen_is_idempotent(self, tmp_library):
        MetadataDatabase(tmp_library).close()
        second = MetadataDatabase(tmp_library)
        assert second.count_images() == 0
        second.close()

    def test_unknown_pragma_rejected(self, tmp_library):
        with pytest.raises(ValidationError):
            MetadataDatabase(tmp_library, pragmas={"writable_schema": "ON"})

    def test_pragma_value_injection_rejected(self, tmp_library):
        with pytest.raises(ValidationError):
            MetadataDatabase(tmp_library, pragmas={"cache_size": "1; DROP TABLE images"})

    def test_configured_pragmas_applied(self, tmp_library):
        database = MetadataDatabase(tmp_library, pragmas={"journal_mode": "DELETE", "cache_size": -2048})
        try:
            mode = database.conn.execute("PRAGMA journal_mode").fetchone()[0]
            assert mode.lower() == "delete"
        finally:
            database.close()


class TestUpsert:
    def test_upsert_is_idempotent_by_path(self, db):
        db.upsert_batch([_record("x.jpg", size=1)])
        db.upsert_batch([_record("x.jpg", size=2)])

        assert db.count_images() == 1
        assert db.get_image("x.jpg").size == 2

    def test_indexed_at_is_set(self, db):
        db.insert_image(_record("x.jpg"))
        assert db.get_image("x.jpg").indexed_at is not None

    def test_empty_batch_is_noop(self, db):
        assert db.upsert_batch([]) == 0

    def test_failed_batch_rolls_back(self, db):
        db.upsert_batch([_record("ok.jpg")])
        bad = _record("bad.jpg")
        bad.filename = None  # violates NOT NULL

        with pytest.raises(StoreError):
            db.upsert_batch([_record("also_ok.jpg"), bad])

        assert db.get_all_paths() == ["ok.jpg"]

    def test_index_state(self, db):
        db.upsert_batch([_record("x.jpg", created_at=5, file_hash="abc", thumbnail_path="t.webp")])
        assert db.get_index_state() == {
            "x.jpg": {"modified_at": 5, "thumbnail_path": "t.webp", "file_hash": "abc"},
        }

    def test_iter_paths_chunks(self, db):
        db.upsert_batch([_record(f"{i:03d}.jpg") for i in range(25)])
        assert list(db.iter_paths(chunk_size=10)) == [f"{i:03d}.jpg" for i in range(25)]

    def test_total_cache_size(self, db):
        db.upsert_batch([_record("a.jpg", thumbnail_size=10), _record("b.jpg", thumbnail_size=5)])
        assert db.total_cache_size() == 15


class TestSearch:
    @pytest.fixture()
    def populated(self, db):
        db.upsert_batch([
            _record("beach_sunset.jpg", size=500, created_at=3000),
            _record("city_sunset.png", size=1500, created_at=2000, fmt="png"),
            _record("A/x.jpg", size=100, created_at=1000),
            _record("A/B/y.jpg", size=200, created_at=4000),
            _record("AB/z.jpg", size=300, created_at=5000),
            _record("odd_50%.jpg", size=50, created_at=500),
        ])
        return db

    def _paths(self, result):
        return [r.path for r in result.items]

    def test_default_order_is_newest_first(self, populated):
        result = populated.search()
        assert self._paths(result)[0] == "AB/z.jpg"
        assert result.total == 6

    def test_keywords_are_and_of_substrings(self, populated):
        result = populated.search(SearchFilters(keywords="sunset beach"))
        assert self._paths(result) == ["beach_sunset.jpg"]

    def test_keyword_wildcards_are_literal(self, populated):
        assert self._paths(populated.search(SearchFilters(keywords="50%"))) == ["odd_50%.jpg"]
        assert populated.search(SearchFilters(keywords="%")).total == 1

    def test_folder_matches_nested_but_not_siblings(self, populated):
        result = populated.search(SearchFilters(folder="A"))
        assert sorted(self._paths(result)) == ["A/B/y.jpg", "A/x.jpg"]

    def test_formats_filter(self, populated):
        assert self._paths(populated.search(SearchFilters(formats=("png",)))) == ["city_sunset.png"]

    def test_size_range_inclusive(self, populated):
        result = populated.search(SearchFilters(min_size=200, max_size=500))
        assert sorted(self._paths(result)) == ["A/B/y.jpg", "AB/z.jpg", "beach_sunset.jpg"]

    def test_date_range(self, populated):
        result = populated.search(SearchFilters(start_date=2000, end_date=3000))
        assert sorted(self._paths(result)) == ["beach_sunset.jpg", "city_sunset.png"]

    def test_pagination_total_and_has_more(self, populated):
        first = populated.search(pagination=Pagination(offset=0, limit=4))
        second = populated.search(pagination=Pagination(offset=4, limit=4))

        assert first.total == second.total == 6
        assert len(first.items) == 4 and first.has_more
        assert len(second.items) == 2 and not second.has_more
        assert not set(self._paths(first)) & set(self._paths(second))

    def test_invalid_filters_rejected(self, populated):
        with pytest.raises(ValidationError):
            populated.search(SearchFilters(min_size=10, max_size=1))


class TestDeletes:
    def test_delete_by_paths(self, db):
        db.upsert_batch([_record("a.jpg"), _record("b.jpg"), _record("c.jpg")])
        assert db.delete_by_paths(["a.jpg", "c.jpg", "missing.jpg"]) == 2
        assert db.get_all_paths() == ["b.jpg"]

    def test_delete_by_path(self, db):
        db.insert_image(_record("a.jpg"))
        assert db.delete_by_path("a.jpg") == 1
        assert db.delete_by_path("a.jpg") == 0

    def test_folder_prefix_scenario(self, db):
        db.upsert_batch([_record("A/x.jpg"), _record("A/B/y.jpg"), _record("AB/z.jpg")])
        db.ensure_folder_chain("A/B")
        db.ensure_folder_chain("AB")
        assert db.recompute_folder_count("A") == 2

        assert len(db.search(SearchFilters(folder="A")).items) == 2
        assert db.delete_by_folder_prefix("A") == 2

        assert db.recompute_folder_count("A") == 0
        assert db.get_folder("A").image_count == 0
        assert db.get_all_paths() == ["AB/z.jpg"]

    def test_empty_prefix_rejected(self, db):
        with pytest.raises(ValidationError):
            db.delete_by_folder_prefix("/")


class TestFolders:
    def test_ensure_folder_chain_creates_ancestors(self, db):
        created = db.ensure_folder_chain("A/B/C")

        assert sorted(created) == ["A", "A/B", "A/B/C"]
        assert db.get_folder("A/B").parent_path == "A"
        assert db.get_folder("A").parent_path == ""
        assert db.ensure_folder_chain("A/B/C") == []

    def test_upsert_keeps_existing_count(self, db):
        db.upsert_batch([_record("A/x.jpg")])
        db.ensure_folder_chain("A")
        db.recompute_folder_count("A")

        db.upsert_folders([FolderRecord(path="A", parent_path="", name="A")])

        assert db.get_folder("A").image_count == 1

    def test_recompute_root_counts_everything(self, db):
        db.upsert_batch([_record("x.jpg"), _record("A/y.jpg")])
        assert db.recompute_folder_count("") == 2

    def test_update_all_folder_counts(self, db):
        db.upsert_batch([_record("A/x.jpg"), _record("A/B/y.jpg")])
        db.ensure_folder_chain("A/B")
        assert db.update_all_folder_counts() == 2
        assert db.get_folder("A").image_count == 2
        assert db.get_folder("A/B").image_count == 1

    def test_folder_tree(self, db):
        db.ensure_folder_chain("A/B")
        db.ensure_folder_chain("C")

        tree = db.get_folder_tree()

        assert [node["path"] for node in tree] == ["A", "C"]
        assert tree[0]["children"][0]["path"] == "A/B"
        assert tree[0]["children"][0]["parentPath"] == "A"

    def test_delete_folders_by_prefix(self, db):
        db.ensure_folder_chain("A/B")
        db.ensure_folder_chain("AB")
        assert db.delete_folders_by_prefix("A") == 2
        assert [f.path for f in db.get_all_folders()] == ["AB"]


class TestLifecycle:
    def test_closed_handle_raises_store_error(self, tmp_library):
        database = MetadataDatabase(tmp_library)
        database.close()
        assert database.closed
        with pytest.raises(StoreError):
            database.count_images()

    def test_close_twice_is_harmless(self, tmp_library):
        database = MetadataDatabase(tmp_library)
        database.close()
        database.close()

    def test_checkpoint_on_closed_handle_is_noop(self, tmp_library):
        database = MetadataDatabase(tmp_library)
        database.checkpoint()
        database.close()
        database.checkpoint()

    def test_data_survives_reopen(self, tmp_library):
        database = MetadataDatabase(tmp_library)
        database.insert_image(_record("x.jpg"))
        database.close()

        conn = sqlite3.connect(os.path.join(tmp_library, ".flypic", "metadata.db"))
        try:
            assert conn.execute("SELECT path FROM images").fetchall() == [("x.jpg",)]
        finally:
            conn.close()
