import pytest
from unittest.mock import patch
from sqlalchemy.exc import OperationalError

from image_service.errors import DerivedNotFound, OriginalNotFound, PersistenceFailure


@pytest.mark.unit
class TestImageCatalog:
    """Test suite for the image catalog."""

    @pytest.fixture(autouse=True)
    def setup(self, catalog):
        self.catalog = catalog
        self.keys = []

    def add_original(self, user_id=1, key=None):
        key = key or f"uploads/{user_id}-{len(self.keys)}.png"
        self.keys.append(key)
        return self.catalog.insert_original(user_id, key, "image/png", 1234)

    def add_derived(self, original_id, n):
        return self.catalog.insert_derived(f"transformed/derived-{original_id}-{n}.webp", original_id, "image/webp", 500 + n)

    def test_insert_and_get_original_round_trip(self):
        image_id = self.catalog.insert_original(7, "uploads/7-abc.jpeg", "image/jpeg", 4096)

        original = self.catalog.get_original(image_id)

        assert original.id == image_id
        assert original.user_id == 7
        assert original.storage_key == "uploads/7-abc.jpeg"
        assert original.mime_type == "image/jpeg"
        assert original.size_in_bytes == 4096
        assert original.uploaded_at is not None

    def test_get_original_missing(self):
        with pytest.raises(OriginalNotFound):
            self.catalog.get_original(999)

    def test_duplicate_storage_key_is_persistence_failure(self):
        self.catalog.insert_original(1, "uploads/1-dup.png", "image/png", 10)

        with pytest.raises(PersistenceFailure):
            self.catalog.insert_original(2, "uploads/1-dup.png", "image/png", 10)

    def test_insert_derived_returns_id_and_key(self):
        original_id = self.add_original()

        created = self.catalog.insert_derived("transformed/1-x.webp", original_id, "image/webp", 321)

        assert created.id > 0
        assert created.storage_key == "transformed/1-x.webp"

    def test_insert_derived_requires_existing_original(self):
        with pytest.raises(PersistenceFailure):
            self.catalog.insert_derived("transformed/1-orphan.webp", 424242, "image/webp", 1)

    def test_get_derived_for_owner_joins_original(self):
        original_id = self.add_original(user_id=3)
        created = self.add_derived(original_id, 1)

        record = self.catalog.get_derived_for_owner(created.id, 3)

        assert record.id == created.id
        assert record.original_image_id == original_id
        assert record.original_storage_key == self.keys[0]
        assert record.mime_type == "image/webp"
        assert record.size_in_bytes == 501

    def test_get_derived_for_non_owner_is_not_found(self):
        original_id = self.add_original(user_id=3)
        created = self.add_derived(original_id, 1)

        with pytest.raises(DerivedNotFound):
            self.catalog.get_derived_for_owner(created.id, 4)

    def test_list_is_newest_first_and_scoped(self):
        mine = self.add_original(user_id=1)
        theirs = self.add_original(user_id=2)
        ids = [self.add_derived(mine, n).id for n in range(3)]
        self.add_derived(theirs, 99)

        rows, total = self.catalog.list_derived_for_owner(1, limit=10, offset=0)

        assert total == 3
        assert [row.id for row in rows] == list(reversed(ids))

    def test_list_total_is_independent_of_page(self):
        original_id = self.add_original()
        for n in range(5):
            self.add_derived(original_id, n)

        rows, total = self.catalog.list_derived_for_owner(1, limit=2, offset=4)

        assert len(rows) == 1
        assert total == 5

    def test_list_empty(self):
        rows, total = self.catalog.list_derived_for_owner(1, limit=10, offset=0)

        assert rows == []
        assert total == 0

    def test_database_error_surfaces_as_persistence_failure(self):
        with patch("sqlalchemy.orm.Session.commit", side_effect=OperationalError("INSERT", {}, Exception("db down"))):
            with pytest.raises(PersistenceFailure):
                self.catalog.insert_original(1, "uploads/1-down.png", "image/png", 10)
