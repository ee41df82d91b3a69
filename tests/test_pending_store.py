"""Tests for the pending-payment store and its key-value backends."""

import json

import pytest

from unpaid_collection.errors import SelectionConflictError, StorageError
from unpaid_collection.schemas.collection import PendingPayment
from unpaid_collection.storage import (
    InMemoryKeyValueBackend,
    JsonFileKeyValueBackend,
    PendingPaymentStore,
)

ACCOUNT = "PA1000"


class FlakyReadBackend(InMemoryKeyValueBackend):
    """Fails the next read once when armed."""

    def __init__(self):
        super().__init__()
        self.fail_next_read = False

    def get(self, key):
        if self.fail_next_read:
            self.fail_next_read = False
            raise OSError("stale NFS file handle")
        return super().get(key)


def _record(order_id="24010112000000000001", keys=("202401",), amount=30000):
    return PendingPayment(
        order_id=order_id,
        merchant_id="MID0001",
        order_date="20240101",
        card_last4="3456",
        card_expiry_masked="**/28",
        identity_masked="90****",
        amount=amount,
        item_keys=list(keys),
    )


class TestPendingPaymentStore:
    @pytest.mark.asyncio
    async def test_empty_account_lists_nothing(self, store):
        assert await store.list(ACCOUNT) == []
        assert await store.get(ACCOUNT, "missing") is None

    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        record = _record()
        await store.save(ACCOUNT, record)

        assert await store.list(ACCOUNT) == [record]
        assert await store.get(ACCOUNT, record.order_id) == record

    @pytest.mark.asyncio
    async def test_save_replaces_by_order_id(self, store):
        await store.save(ACCOUNT, _record(amount=30000))
        await store.save(ACCOUNT, _record(amount=31000))

        records = await store.list(ACCOUNT)
        assert len(records) == 1
        assert records[0].amount == 31000

    @pytest.mark.asyncio
    async def test_accounts_are_partitioned(self, store):
        await store.save("PA1", _record("O-1"))
        await store.save("PA2", _record("O-2"))

        assert [r.order_id for r in await store.list("PA1")] == ["O-1"]
        assert [r.order_id for r in await store.list("PA2")] == ["O-2"]
        assert await store.list_accounts() == ["PA1", "PA2"]

    @pytest.mark.asyncio
    async def test_remove_is_idempotent(self, store):
        await store.save(ACCOUNT, _record("O-1"))

        assert await store.remove(ACCOUNT, "O-1") is True
        assert await store.remove(ACCOUNT, "O-1") is False
        assert await store.remove("PA-none", "O-1") is False
        assert await store.list_accounts() == []

    @pytest.mark.asyncio
    async def test_unreadable_value_lists_empty(self, backend, store):
        backend.set(f"pending_payments:{ACCOUNT}", {"not": "a list"})
        assert await store.list(ACCOUNT) == []

    @pytest.mark.asyncio
    async def test_malformed_entries_are_skipped(self, backend, store):
        good = _record("O-1").model_dump(mode="json")
        backend.set(f"pending_payments:{ACCOUNT}", [good, {"order_id": "O-2"}])

        records = await store.list(ACCOUNT)
        assert [r.order_id for r in records] == ["O-1"]

    @pytest.mark.asyncio
    async def test_read_errors_list_empty(self):
        class FailingBackend(InMemoryKeyValueBackend):
            def get(self, key):
                raise OSError("permission denied")

        store = PendingPaymentStore(FailingBackend())
        assert await store.list(ACCOUNT) == []

    @pytest.mark.asyncio
    async def test_save_after_failed_read_keeps_existing_records(self):
        backend = FlakyReadBackend()
        store = PendingPaymentStore(backend)
        first = _record("O-1", keys=("202401",))
        await store.save(ACCOUNT, first)

        backend.fail_next_read = True
        with pytest.raises(StorageError):
            await store.save(ACCOUNT, _record("O-2", keys=("202402",)))

        assert await store.list(ACCOUNT) == [first]

    @pytest.mark.asyncio
    async def test_remove_after_failed_read_raises(self):
        backend = FlakyReadBackend()
        store = PendingPaymentStore(backend)
        await store.save(ACCOUNT, _record("O-1"))

        backend.fail_next_read = True
        with pytest.raises(StorageError):
            await store.remove(ACCOUNT, "O-1")

        assert [r.order_id for r in await store.list(ACCOUNT)] == ["O-1"]

    @pytest.mark.asyncio
    async def test_load_raises_where_list_returns_empty(self, backend, store):
        backend.set(f"pending_payments:{ACCOUNT}", {"not": "a list"})

        assert await store.list(ACCOUNT) == []
        with pytest.raises(StorageError):
            await store.load(ACCOUNT)

    @pytest.mark.asyncio
    async def test_save_keeps_malformed_entries(self, backend, store):
        broken = {"order_id": "O-BROKEN"}
        backend.set(f"pending_payments:{ACCOUNT}", [broken])

        await store.save(ACCOUNT, _record("O-1"))

        raw = backend.get(f"pending_payments:{ACCOUNT}")
        assert broken in raw
        assert [r.order_id for r in await store.list(ACCOUNT)] == ["O-1"]

    @pytest.mark.asyncio
    async def test_write_errors_propagate(self):
        class ReadOnlyBackend(InMemoryKeyValueBackend):
            def set(self, key, value):
                raise OSError("read-only file system")

        store = PendingPaymentStore(ReadOnlyBackend())
        with pytest.raises(OSError):
            await store.save(ACCOUNT, _record())


class TestReservations:
    @pytest.mark.asyncio
    async def test_reserved_keys_block_a_second_reservation(self, store):
        await store.reserve(ACCOUNT, ["202401", "202402"])

        with pytest.raises(SelectionConflictError) as exc_info:
            await store.reserve(ACCOUNT, ["202402", "202403"])

        assert exc_info.value.keys == ["202402"]
        assert store.reserved_keys(ACCOUNT) == {"202401", "202402"}

    @pytest.mark.asyncio
    async def test_stored_keys_cannot_be_reserved(self, store):
        await store.save(ACCOUNT, _record(keys=("202401",)))

        with pytest.raises(SelectionConflictError):
            await store.reserve(ACCOUNT, ["202401"])
        assert store.reserved_keys(ACCOUNT) == set()

    @pytest.mark.asyncio
    async def test_release_frees_keys(self, store):
        await store.reserve(ACCOUNT, ["202401"])
        store.release(ACCOUNT, ["202401"])

        assert store.reserved_keys(ACCOUNT) == set()
        await store.reserve(ACCOUNT, ["202401"])

    @pytest.mark.asyncio
    async def test_reservations_are_per_account(self, store):
        await store.reserve("PA1", ["202401"])
        await store.reserve("PA2", ["202401"])

        assert store.reserved_keys("PA1") == {"202401"}
        assert store.reserved_keys("PA2") == {"202401"}

    @pytest.mark.asyncio
    async def test_reserve_refuses_an_unreadable_account(self):
        backend = FlakyReadBackend()
        backend.fail_next_read = True
        store = PendingPaymentStore(backend)

        with pytest.raises(StorageError):
            await store.reserve(ACCOUNT, ["202401"])
        assert store.reserved_keys(ACCOUNT) == set()


class TestJsonFileBackend:
    @pytest.mark.asyncio
    async def test_records_survive_a_new_store_instance(self, tmp_path):
        record = _record(keys=("202401", "202402"), amount=55000)
        await PendingPaymentStore(JsonFileKeyValueBackend(str(tmp_path))).save(ACCOUNT, record)

        reopened = PendingPaymentStore(JsonFileKeyValueBackend(str(tmp_path)))

        assert await reopened.list(ACCOUNT) == [record]
        assert await reopened.list_accounts() == [ACCOUNT]

    @pytest.mark.asyncio
    async def test_corrupted_file_lists_empty(self, tmp_path):
        backend = JsonFileKeyValueBackend(str(tmp_path))
        backend._path(f"pending_payments:{ACCOUNT}").write_text("{not json", encoding="utf-8")

        assert await PendingPaymentStore(backend).list(ACCOUNT) == []

    def test_keys_are_sanitised_but_preserved(self, tmp_path):
        backend = JsonFileKeyValueBackend(str(tmp_path))
        backend.set("pending_payments:PA/../1", [1])

        files = [p.name for p in tmp_path.iterdir()]
        assert files == ["pending_payments_PA_.._1.json"]
        assert backend.keys("pending_payments:") == ["pending_payments:PA/../1"]
        assert backend.get("pending_payments:PA/../1") == [1]

    def test_write_leaves_no_temp_files(self, tmp_path):
        backend = JsonFileKeyValueBackend(str(tmp_path))
        backend.set("k", {"a": 1})
        backend.set("k", {"a": 2})

        assert [p.name for p in tmp_path.iterdir()] == ["k.json"]
        document = json.loads((tmp_path / "k.json").read_text(encoding="utf-8"))
        assert document == {"key": "k", "value": {"a": 2}}

    def test_delete_missing_key_is_noop(self, tmp_path):
        backend = JsonFileKeyValueBackend(str(tmp_path))
        backend.delete("missing")
        assert backend.get("missing") is None


class TestInMemoryBackend:
    def test_values_are_copies(self):
        backend = InMemoryKeyValueBackend()
        value = {"items": [1, 2]}
        backend.set("k", value)
        value["items"].append(3)

        fetched = backend.get("k")
        fetched["items"].append(4)

        assert backend.get("k") == {"items": [1, 2]}
