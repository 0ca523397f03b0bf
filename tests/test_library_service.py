"""End-to-end tests for the LibraryService facade."""
import os
import time
from unittest.mock import MagicMock

import pytest

from conftest import write_image
from core.errors import ValidationError
from core.event_system import EventType
from core.library_service import LibraryService
from core.records import ChangeSet, ImageRecord, Pagination, SearchFilters


@pytest.fixture()
def service(mock_config):
    svc = LibraryService(mock_config, supervisor=MagicMock())
    yield svc
    svc.shutdown()


def test_full_scan_then_search(service, sample_images):
    status = service.full_scan("lib", wait=True)
    assert status["state"] == "completed"

    result = service.search("lib", {"folder": "album"})

    assert [r.path for r in result.items] == ["album/c.jpg"]
    assert service.get_scan_status("lib")["state"] == "completed"


def test_search_results_cached_until_scan_finishes(service, tmp_library, sample_images):
    service.full_scan("lib", wait=True)
    first = service.search("lib", SearchFilters(), Pagination(limit=10))
    assert service.search("lib", SearchFilters(), Pagination(limit=10)) is first

    write_image(os.path.join(tmp_library, "d.jpg"))
    service.incremental_sync("lib", wait=True)

    fresh = service.search("lib", SearchFilters(), Pagination(limit=10))
    assert fresh is not first
    assert fresh.total == 4


def test_search_rejects_bad_filters(service):
    with pytest.raises(ValidationError):
        service.search("lib", {"minSize": 10, "maxSize": 1})


def test_unknown_library(service):
    with pytest.raises(ValidationError):
        service.search("nope")


def test_insert_batch_accepts_dicts_and_records(service):
    written = service.insert_batch("lib", [
        {"path": "A/B/x.jpg", "size": 10, "created_at": 1},
        ImageRecord(path="y.jpg", filename="y.jpg", folder="", size=20, created_at=2),
    ])

    assert written == 2
    record = service.get_image("lib", "A/B/x.jpg")
    assert record.filename == "x.jpg" and record.folder == "A/B"
    tree = service.get_folder_tree("lib")
    assert tree[0]["path"] == "A"
    assert tree[0]["children"][0]["path"] == "A/B"


def test_insert_batch_invalidates_search_cache(service):
    before = service.search("lib")
    service.insert_batch("lib", [{"path": "x.jpg"}])
    after = service.search("lib")
    assert before.total == 0 and after.total == 1


def test_insert_batch_rejects_escaping_path(service):
    with pytest.raises(ValidationError):
        service.insert_batch("lib", [{"path": "../outside.jpg"}])


def test_watcher_messages_published_and_buffered(service):
    seen = []
    service.event_system.subscribe(EventType.WATCHER_ADD, seen.append)

    service._on_watcher_event("lib", {"type": "add", "path": "x.jpg", "library_id": "lib"})

    assert seen[0].path == "x.jpg"
    assert service.change_buffer.pending("lib").files_added == ["x.jpg"]


def test_buffered_changes_reach_coordinator(service, tmp_library):
    write_image(os.path.join(tmp_library, "new.jpg"))
    assert service._flush_changes("lib", ChangeSet(files_added=["new.jpg"]))
    service.coordinator.wait("lib", timeout=10.0)
    assert service.get_image("lib", "new.jpg") is not None


def test_watcher_restart_is_bounded(service):
    service.max_restarts = 2
    for _ in range(4):
        service._on_watcher_exit("lib", -15)

    assert service.supervisor.start.call_count == 2
    assert len(service.event_system.get_event_history(EventType.WATCHER_EXITED)) == 4


def test_start_watch_resets_restart_budget(service):
    service._restarts["lib"] = 3
    service.start_watch("lib")
    assert service._restarts["lib"] == 0
    service.supervisor.start.assert_called_with("lib", service.libraries["lib"]["path"])


def test_caches_registered_with_cleanup(service):
    assert set(service.cleanup_manager.registered_caches()) == {
        "search_results", "thumbnail_decoder", "idle_connections",
    }


def test_emergency_cleanup_closes_pool_and_clears_search(service, sample_images):
    service.full_scan("lib", wait=True)
    service.search("lib")
    assert service.pool.is_open(service.libraries["lib"]["path"])

    service.cleanup_manager.run_emergency()

    assert len(service.search_cache) == 0
    assert len(service.pool) == 0
    # The next request reopens on demand.
    assert service.search("lib").total == 3


def test_orphan_artifacts_reported(service, tmp_library, sample_images):
    service.full_scan("lib", wait=True)
    os.remove(os.path.join(tmp_library, "a.jpg"))
    # Remove the row without touching the artifact.
    with service.pool.connection(tmp_library) as db:
        db.delete_by_path("a.jpg")

    orphans = service.find_orphan_artifacts("lib")

    assert len(orphans) == 1


def test_background_services_start_and_stop(mock_config):
    mock_config.config["watcher"]["auto_start"] = True
    supervisor = MagicMock()
    svc = LibraryService(mock_config, supervisor=supervisor)
    svc.start_background_services()
    try:
        assert svc.worker_pool.running
        supervisor.start.assert_called_once()
    finally:
        svc.shutdown()
    supervisor.stop_all.assert_called_once()
    assert not svc.worker_pool.running


def test_two_services_share_nothing(mock_config):
    a = LibraryService(mock_config, supervisor=MagicMock())
    b = LibraryService(mock_config, supervisor=MagicMock())
    try:
        assert a.pool is not b.pool
        assert a.event_system is not b.event_system
    finally:
        a.shutdown()
        b.shutdown()
