"""Reference data cache storage tests."""

from datetime import UTC, datetime

from fieldsync.storage.cache_store import CacheCategory, EntitySyncStatus

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


def people(*keys, scope="10"):
    return [(key, scope, {"roll_number": key, "name": f"Student {key}"}) for key in keys]


class TestEntities:
    """Test cached entity storage."""

    def test_upsert_and_read(self, cache_store):
        count = cache_store.upsert_entities(CacheCategory.PEOPLE, people("A", "B"))

        assert count == 2
        assert cache_store.count_entities(CacheCategory.PEOPLE) == 2
        entity = cache_store.get_entity(CacheCategory.PEOPLE, "A")
        assert entity.scope_id == "10"
        assert entity.data["name"] == "Student A"
        assert entity.sync_status == EntitySyncStatus.CACHED

    def test_upsert_overwrites_by_natural_key(self, cache_store):
        cache_store.upsert_entities(CacheCategory.PEOPLE, people("A"))
        cache_store.upsert_entities(
            CacheCategory.PEOPLE,
            [("A", "10", {"roll_number": "A", "name": "Renamed"})],
        )

        assert cache_store.count_entities(CacheCategory.PEOPLE) == 1
        assert cache_store.get_entity(CacheCategory.PEOPLE, "A").data["name"] == "Renamed"

    def test_refresh_keeps_pending_tag(self, cache_store):
        """Test a refresh does not clear the tag of a locally edited record."""
        cache_store.upsert_entities(CacheCategory.PEOPLE, people("A", "B"))
        cache_store.set_sync_status(CacheCategory.PEOPLE, "A", EntitySyncStatus.PENDING)
        cache_store.set_sync_status(CacheCategory.PEOPLE, "B", EntitySyncStatus.SYNCED)

        cache_store.upsert_entities(CacheCategory.PEOPLE, people("A", "B"))

        assert cache_store.get_entity(CacheCategory.PEOPLE, "A").sync_status == (
            EntitySyncStatus.PENDING
        )
        assert cache_store.get_entity(CacheCategory.PEOPLE, "B").sync_status == (
            EntitySyncStatus.CACHED
        )

    def test_filter_by_scope_and_search(self, cache_store):
        cache_store.upsert_entities(CacheCategory.PEOPLE, people("A1", "A2", scope="1"))
        cache_store.upsert_entities(CacheCategory.PEOPLE, people("B1", scope="2"))

        assert len(cache_store.get_entities(CacheCategory.PEOPLE, scope_id="1")) == 2
        assert [e.natural_key for e in cache_store.get_entities(
            CacheCategory.PEOPLE,
            search="B1",
        )] == ["B1"]
        assert cache_store.counts_by_scope(CacheCategory.PEOPLE) == {"1": 2, "2": 1}
        assert cache_store.count_entities(CacheCategory.PEOPLE, "2") == 1

    def test_scope_ids_from_organizations(self, cache_store):
        cache_store.upsert_entities(
            CacheCategory.ORGANIZATIONS,
            [("7", None, {"id": 7}), ("3", None, {"id": 3})],
        )

        assert cache_store.scope_ids() == ["3", "7"]

    def test_set_sync_status_missing(self, cache_store):
        assert not cache_store.set_sync_status(
            CacheCategory.PEOPLE,
            "missing",
            EntitySyncStatus.PENDING,
        )

    def test_empty_upsert(self, cache_store):
        assert cache_store.upsert_entities(CacheCategory.PEOPLE, []) == 0


class TestMetadata:
    """Test cache metadata."""

    def test_no_metadata(self, cache_store):
        assert cache_store.get_metadata(CacheCategory.PEOPLE) is None
        assert cache_store.get_metadata("unknown") is None

    def test_set_metadata_keeps_created_at(self, cache_store):
        cache_store.set_metadata(CacheCategory.PEOPLE, 5, now=NOW)
        later = NOW.replace(hour=18)
        cache_store.set_metadata(CacheCategory.PEOPLE, 8, now=later)

        metadata = cache_store.get_metadata("people")
        assert metadata.record_count == 8
        assert metadata.last_updated == later
        assert metadata.created_at == NOW
        assert metadata.age(later.replace(hour=20)).total_seconds() == 2 * 3600

    def test_clear(self, cache_store):
        cache_store.upsert_entities(CacheCategory.PEOPLE, people("A"))
        cache_store.set_metadata(CacheCategory.PEOPLE, 1)

        assert cache_store.clear() == 1
        assert cache_store.get_metadata(CacheCategory.PEOPLE) is None
        assert cache_store.count_entities(CacheCategory.PEOPLE) == 0
