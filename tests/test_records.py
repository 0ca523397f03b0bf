import pytest

from core.errors import ValidationError
from core.records import (
    MAX_PAGE_SIZE, ChangeSet, FolderRecord, ImageRecord, Pagination, SearchFilters, SearchResult,
)


def test_image_record_to_api_uses_static_field_names():
    record = ImageRecord(path="a/x.jpg", filename="x.jpg", folder="a", created_at=1,
                         modified_at=2, file_hash="h", thumbnail_path="t", thumbnail_size=3)
    api = record.to_api()
    assert api["createdAt"] == 1
    assert api["modifiedAt"] == 2
    assert api["fileHash"] == "h"
    assert api["thumbnailPath"] == "t"
    assert api["fileType"] == "image"
    assert "created_at" not in api


def test_image_record_row_round_trip():
    record = ImageRecord(path="x.jpg", filename="x.jpg", folder="", size=10, width=4, height=3)
    row = dict(zip(ImageRecord.COLUMNS, record.to_row()))
    assert ImageRecord.from_row(row) == record


def test_folder_record_to_api():
    api = FolderRecord(path="A/B", parent_path="A", name="B", image_count=2).to_api()
    assert api == {"path": "A/B", "parentPath": "A", "name": "B", "imageCount": 2, "lastScan": None}


class TestSearchFilters:
    def test_from_dict_accepts_camel_case(self):
        filters = SearchFilters.from_dict({"minSize": 1, "maxSize": 10, "startDate": 5, "endDate": 6})
        assert (filters.min_size, filters.max_size, filters.start_date, filters.end_date) == (1, 10, 5, 6)

    def test_formats_lowercased_and_tupled(self):
        assert SearchFilters.from_dict({"formats": ["JPG", "Png"]}).formats == ("jpg", "png")
        assert SearchFilters.from_dict({"formats": "WEBP"}).formats == ("webp",)

    def test_empty_dict_gives_defaults(self):
        assert SearchFilters.from_dict(None) == SearchFilters()

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError) as exc:
            SearchFilters.from_dict({"colour": "red"})
        assert exc.value.field == "colour"

    def test_inverted_size_range_rejected(self):
        with pytest.raises(ValidationError):
            SearchFilters.from_dict({"min_size": 10, "max_size": 1})

    def test_inverted_date_range_rejected(self):
        with pytest.raises(ValidationError):
            SearchFilters(start_date=10, end_date=1).validate()

    def test_negative_size_rejected(self):
        with pytest.raises(ValidationError):
            SearchFilters(min_size=-1).validate()

    def test_keyword_tokens_split_on_whitespace(self):
        assert SearchFilters(keywords="  sunset  beach ").keyword_tokens == ["sunset", "beach"]

    def test_filters_are_hashable(self):
        assert hash(SearchFilters(formats=("jpg",))) == hash(SearchFilters(formats=("jpg",)))


class TestPagination:
    def test_defaults(self):
        assert Pagination() == Pagination(offset=0, limit=100)

    @pytest.mark.parametrize("kwargs", [{"offset": -1}, {"limit": 0}, {"limit": MAX_PAGE_SIZE + 1}])
    def test_out_of_range_rejected(self, kwargs):
        with pytest.raises(ValidationError):
            Pagination(**kwargs)


def test_change_set_counts_and_api_shape():
    changes = ChangeSet(files_added=["a.jpg"], dirs_removed=["old"])
    assert len(changes) == 2
    assert not changes.is_empty()
    assert changes.to_api()["dirsRemoved"] == ["old"]
    assert ChangeSet().is_empty()


def test_search_result_to_api():
    result = SearchResult(items=[ImageRecord(path="x.jpg", filename="x.jpg", folder="")],
                          total=5, has_more=True, offset=0, limit=1)
    api = result.to_api()
    assert api["hasMore"] is True
    assert api["total"] == 5
    assert api["images"][0]["path"] == "x.jpg"
