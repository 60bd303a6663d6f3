"""
Unit tests for the Firestore traffic store
"""

import pytest
from unittest.mock import patch, AsyncMock, MagicMock, sentinel
from datetime import datetime, timezone

from google.api_core.exceptions import NotFound
from google.cloud import firestore

from store import (
    TrafficStore, apply_upsert, normalize_email, record_from_snapshot, timestamp_to_iso
)


def make_snapshot(doc_id, data=None, exists=True):
    snapshot = MagicMock()
    snapshot.id = doc_id
    snapshot.exists = exists
    snapshot.to_dict.return_value = data
    return snapshot


def make_query_client(snapshots):
    """Firestore client whose collection query chain returns ``snapshots``"""
    client = MagicMock()
    collection = client.collection.return_value
    query = collection.order_by.return_value
    query.start_after.return_value = query
    query.limit.return_value.get = AsyncMock(return_value=snapshots)
    return client, collection, query


def day_snapshots(count):
    return [
        make_snapshot(f"2025-03-{day:02d}", {"date": f"2025-03-{day:02d}", "visits": day})
        for day in range(1, count + 1)
    ]


class TestRecordConversion:
    """Test snapshot to API item conversion"""

    def test_full_record(self):
        created = datetime(2025, 3, 1, 8, 30, tzinfo=timezone.utc)
        snapshot = make_snapshot("2025-03-01", {
            "date": "2025-03-01", "visits": 120, "createdAt": created, "updatedAt": created,
        })

        assert record_from_snapshot(snapshot) == {
            "id": "2025-03-01",
            "date": "2025-03-01",
            "visits": 120,
            "createdAt": "2025-03-01T08:30:00+00:00",
            "updatedAt": "2025-03-01T08:30:00+00:00",
        }

    def test_missing_fields(self):
        record = record_from_snapshot(make_snapshot("2025-03-02", {}))
        assert record["date"] == "2025-03-02"
        assert record["visits"] is None
        assert record["createdAt"] is None

    def test_visits_normalized(self):
        assert record_from_snapshot(make_snapshot("d", {"visits": 3.0}))["visits"] == 3
        assert record_from_snapshot(make_snapshot("d", {"visits": 3.5}))["visits"] is None
        assert record_from_snapshot(make_snapshot("d", {"visits": True}))["visits"] is None
        assert record_from_snapshot(make_snapshot("d", {"visits": "12"}))["visits"] is None

    def test_timestamp_to_iso(self):
        assert timestamp_to_iso(None) is None
        assert timestamp_to_iso("2025-03-01T00:00:00Z") == "2025-03-01T00:00:00Z"
        assert timestamp_to_iso(datetime(2025, 1, 2, 3, 4, 5)) == "2025-01-02T03:04:05"

    def test_normalize_email(self):
        assert normalize_email("  Someone@Example.COM ") == "someone@example.com"
        assert normalize_email(None) == ""


class TestListPage:
    """Test query building and cursor computation"""

    @pytest.mark.asyncio
    async def test_first_page_ascending(self):
        client, collection, query = make_query_client(day_snapshots(4))
        store = TrafficStore(client, traffic_collection="trafficStats")

        page = await store.list_page(3, "asc")

        client.collection.assert_called_with("trafficStats")
        collection.order_by.assert_called_once_with("date", direction=firestore.Query.ASCENDING)
        query.start_after.assert_not_called()
        query.limit.assert_called_once_with(4)
        assert [item["date"] for item in page.items] == ["2025-03-01", "2025-03-02", "2025-03-03"]
        assert page.next_cursor == "2025-03-03"

    @pytest.mark.asyncio
    async def test_cursor_and_descending(self):
        client, collection, query = make_query_client(day_snapshots(2))
        store = TrafficStore(client)

        page = await store.list_page(5, "desc", cursor="2025-03-10")

        collection.order_by.assert_called_once_with("date", direction=firestore.Query.DESCENDING)
        query.start_after.assert_called_once_with({"date": "2025-03-10"})
        query.limit.assert_called_once_with(6)
        assert len(page.items) == 2
        assert page.next_cursor is None

    @pytest.mark.asyncio
    async def test_empty_collection(self):
        client, _, _ = make_query_client([])
        page = await TrafficStore(client).list_page(10)
        assert page.items == []
        assert page.next_cursor is None


class TestUpsert:
    """Test the transactional create-or-update"""

    @pytest.mark.asyncio
    async def test_creates_missing_record(self):
        transaction = MagicMock()
        ref = MagicMock()
        ref.get = AsyncMock(return_value=make_snapshot("2025-03-01", None, exists=False))

        created = await apply_upsert(transaction, ref, "2025-03-01", 120)

        assert created is True
        ref.get.assert_awaited_once_with(transaction=transaction)
        transaction.set.assert_called_once_with(ref, {
            "date": "2025-03-01",
            "visits": 120,
            "createdAt": firestore.SERVER_TIMESTAMP,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        })
        transaction.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_existing_record_keeps_created_at(self):
        transaction = MagicMock()
        ref = MagicMock()
        ref.get = AsyncMock(return_value=make_snapshot("2025-03-01", {"visits": 1}))

        created = await apply_upsert(transaction, ref, "2025-03-01", 90)

        assert created is False
        transaction.update.assert_called_once_with(ref, {
            "visits": 90,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        })
        transaction.set.assert_not_called()

    @pytest.mark.asyncio
    async def test_store_runs_upsert_in_transaction(self):
        client = MagicMock()
        ref = client.collection.return_value.document.return_value
        ref.get = AsyncMock(return_value=make_snapshot("2025-03-01", None, exists=False))
        transaction = client.transaction.return_value

        with patch("store.firestore.async_transactional", side_effect=lambda fn: fn) as wrapper:
            created = await TrafficStore(client).upsert("2025-03-01", 5)

        assert created is True
        wrapper.assert_called_once_with(apply_upsert)
        client.collection.return_value.document.assert_called_with("2025-03-01")
        transaction.set.assert_called_once()


class TestUpdateAndDelete:
    """Test writes that require an existing record"""

    @pytest.mark.asyncio
    async def test_update_existing(self):
        client = MagicMock()
        ref = client.collection.return_value.document.return_value
        ref.update = AsyncMock()

        assert await TrafficStore(client).update_visits("2025-03-01", 9) is True
        ref.update.assert_awaited_once_with({
            "visits": 9,
            "updatedAt": firestore.SERVER_TIMESTAMP,
        })

    @pytest.mark.asyncio
    async def test_update_missing(self):
        client = MagicMock()
        ref = client.collection.return_value.document.return_value
        ref.update = AsyncMock(side_effect=NotFound("No document to update"))

        assert await TrafficStore(client).update_visits("2025-03-01", 9) is False

    @pytest.mark.asyncio
    async def test_delete_uses_exists_precondition(self):
        client = MagicMock()
        client.write_option.return_value = sentinel.exists_option
        ref = client.collection.return_value.document.return_value
        ref.delete = AsyncMock()

        assert await TrafficStore(client).delete("2025-03-01") is True
        client.write_option.assert_called_once_with(exists=True)
        ref.delete.assert_awaited_once_with(option=sentinel.exists_option)

    @pytest.mark.asyncio
    async def test_delete_missing(self):
        client = MagicMock()
        ref = client.collection.return_value.document.return_value
        ref.delete = AsyncMock(side_effect=NotFound("No document to delete"))

        assert await TrafficStore(client).delete("2025-03-01") is False

    @pytest.mark.asyncio
    async def test_update_propagates_other_errors(self):
        client = MagicMock()
        ref = client.collection.return_value.document.return_value
        ref.update = AsyncMock(side_effect=RuntimeError("deadline exceeded"))

        with pytest.raises(RuntimeError):
            await TrafficStore(client).update_visits("2025-03-01", 9)


class TestEditors:
    """Test editor lookups"""

    @pytest.mark.asyncio
    async def test_editor_found_by_normalized_email(self):
        client = MagicMock()
        editors = client.collection.return_value
        editors.document.return_value.get = AsyncMock(return_value=MagicMock(exists=True))

        store = TrafficStore(client, editors_collection="editors")
        assert await store.is_editor(" Editor@Example.com") is True
        client.collection.assert_called_with("editors")
        editors.document.assert_called_with("editor@example.com")

    @pytest.mark.asyncio
    async def test_unknown_email(self):
        client = MagicMock()
        client.collection.return_value.document.return_value.get = AsyncMock(
            return_value=MagicMock(exists=False)
        )
        assert await TrafficStore(client).is_editor("viewer@example.com") is False

    @pytest.mark.asyncio
    async def test_blank_email_skips_lookup(self):
        client = MagicMock()
        assert await TrafficStore(client).is_editor("   ") is False
        client.collection.assert_not_called()


if __name__ == "__main__":
    pytest.main([__file__])
