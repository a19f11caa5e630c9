"""
Tests du store de transactions et de ses miroirs durables.
"""
from datetime import datetime, timedelta, timezone

import pytest

from app.exceptions import DuplicateKeyError, NotFoundError, StoreError, StoreIntegrityError
from app.models.payment_models import PaymentStatus
from app.schemas.transaction_schemas import Transaction
from app.services.transaction_mirror import DatabaseMirror, JsonFileMirror, TransactionMirror
from app.services.transaction_store import TransactionStore


def _record(reference="CE0000000001", correlation_id="ws_CO_0001", **fields):
    return Transaction(
        internal_reference=reference,
        correlation_id=correlation_id,
        phone_number="254712345678",
        amount=fields.pop("amount", 100),
        description="Order #1",
        created_at=fields.pop("created_at", datetime.now(timezone.utc)),
        **fields,
    )


def _completed_record():
    return _record(
        merchant_request_id="29115-34620561-1",
        provider_ack_code="0",
        provider_ack_message="Success. Request accepted for processing",
        customer_message="Success. Request accepted for processing",
        status=PaymentStatus.COMPLETED,
        result_code="0",
        result_description="The service request is processed successfully.",
        resolution_source="callback",
        provider_receipt_id="NLJ7RT61SV",
        provider_confirmed_amount=100.0,
        provider_confirmed_phone="254712345678",
        provider_timestamp="20240101120000",
        created_at=datetime(2024, 1, 1, 11, 59, 30, 123456, tzinfo=timezone.utc),
        terminal_at=datetime(2024, 1, 1, 12, 0, 5, 654321, tzinfo=timezone.utc),
    )


class FailingMirror(TransactionMirror):
    def save(self, record):
        raise StoreError("disk full")

    def load_all(self):
        return []


class TestTransactionStore:
    def test_create_indexes_by_reference_and_correlation_id(self, store):
        store.create(_record())

        assert store.get_by_reference("CE0000000001").correlation_id == "ws_CO_0001"
        assert store.get_by_correlation_id("ws_CO_0001").internal_reference == "CE0000000001"
        assert store.exists("CE0000000001")
        assert store.count() == 1

    def test_duplicate_reference_rejected(self, store):
        store.create(_record())

        with pytest.raises(DuplicateKeyError):
            store.create(_record(correlation_id="ws_CO_0002"))

    def test_duplicate_correlation_id_rejected(self, store):
        store.create(_record())

        with pytest.raises(DuplicateKeyError):
            store.create(_record(reference="CE0000000002"))
        assert not store.exists("CE0000000002")

    def test_unknown_keys_raise_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.get_by_reference("CE_UNKNOWN")
        with pytest.raises(NotFoundError):
            store.get_by_correlation_id("ws_CO_UNKNOWN")

    def test_returned_records_are_copies(self, store):
        store.create(_record())

        record = store.get_by_reference("CE0000000001")
        record.status = PaymentStatus.COMPLETED

        assert store.get_by_reference("CE0000000001").status == PaymentStatus.PENDING

    def test_update_refuses_correlation_change(self, store):
        store.create(_record())
        record = store.get_by_reference("CE0000000001")

        with pytest.raises(StoreIntegrityError):
            store.update(record.model_copy(update={"correlation_id": "ws_CO_9999"}))
        assert store.get_by_correlation_id("ws_CO_0001").internal_reference == "CE0000000001"

    def test_update_can_attach_missing_correlation_id(self, store):
        store.create(_record(correlation_id=None))
        record = store.get_by_reference("CE0000000001")

        store.update(record.model_copy(update={"correlation_id": "ws_CO_0042"}))

        assert store.get_by_correlation_id("ws_CO_0042").internal_reference == "CE0000000001"

    def test_update_unknown_reference(self, store):
        with pytest.raises(NotFoundError):
            store.update(_record(reference="CE_UNKNOWN"))

    def test_mirror_failure_leaves_index_untouched(self):
        store = TransactionStore(FailingMirror())

        with pytest.raises(StoreError):
            store.create(_record())

        assert not store.exists("CE0000000001")
        with pytest.raises(NotFoundError):
            store.get_by_correlation_id("ws_CO_0001")
        # Les clés réservées sont libérées
        with pytest.raises(StoreError):
            store.create(_record())

    def test_list_pending_filters_by_age_and_status(self, store):
        now = datetime.now(timezone.utc)
        store.create(_record("CE_OLD", "ws_CO_1", created_at=now - timedelta(minutes=10)))
        store.create(_record("CE_NEW", "ws_CO_2", created_at=now))
        store.create(_record("CE_DONE", "ws_CO_3", created_at=now - timedelta(minutes=10),
                             status=PaymentStatus.COMPLETED, result_code="0"))

        stale = store.list_pending(older_than=now - timedelta(minutes=2))

        assert [r.internal_reference for r in stale] == ["CE_OLD"]
        assert len(store.list_pending()) == 2


class TestJsonFileMirror:
    def test_reload_restores_both_indexes(self, test_settings, store):
        store.create(_record())
        record = store.get_by_reference("CE0000000001")
        store.update(record.model_copy(update={"status": PaymentStatus.FAILED, "result_code": "1032"}))

        reloaded = TransactionStore(JsonFileMirror(test_settings.TRANSACTIONS_DIR))
        assert reloaded.load() == 1

        restored = reloaded.get_by_correlation_id("ws_CO_0001")
        assert restored.status == PaymentStatus.FAILED
        assert restored.result_code == "1032"

    def test_completed_record_restored_field_for_field(self, tmp_path):
        original = _completed_record()
        JsonFileMirror(str(tmp_path)).save(original)

        reloaded = TransactionStore(JsonFileMirror(str(tmp_path)))
        reloaded.load()

        assert reloaded.get_by_reference(original.internal_reference).model_dump() == original.model_dump()

    def test_corrupt_file_is_skipped(self, tmp_path):
        mirror = JsonFileMirror(str(tmp_path))
        mirror.save(_record())
        (tmp_path / "CE_BROKEN.json").write_text("{not json", encoding="utf-8")
        (tmp_path / ".tmp-partial.json").write_text("{}", encoding="utf-8")

        records = mirror.load_all()

        assert [r.internal_reference for r in records] == ["CE0000000001"]


class TestDatabaseMirror:
    def test_save_and_load_roundtrip(self, tmp_path):
        mirror = DatabaseMirror(f"sqlite:///{tmp_path / 'transactions.db'}")
        try:
            store = TransactionStore(mirror)
            store.create(_record())
            record = store.get_by_reference("CE0000000001")
            store.update(record.model_copy(update={
                "status": PaymentStatus.COMPLETED,
                "result_code": "0",
                "provider_receipt_id": "NLJ7RT61SV",
                "provider_confirmed_amount": 100.0,
                "terminal_at": datetime.now(timezone.utc),
            }))

            reloaded = TransactionStore(mirror)
            assert reloaded.load() == 1
            restored = reloaded.get_by_reference("CE0000000001")
        finally:
            mirror.close()

        assert restored.status == PaymentStatus.COMPLETED
        assert restored.provider_receipt_id == "NLJ7RT61SV"
        assert restored.created_at.tzinfo is not None
        assert restored.terminal_at.tzinfo is not None

    def test_completed_record_restored_field_for_field(self, tmp_path):
        original = _completed_record()
        mirror = DatabaseMirror(f"sqlite:///{tmp_path / 'transactions.db'}")
        try:
            mirror.save(original)
            reloaded = TransactionStore(mirror)
            reloaded.load()
            restored = reloaded.get_by_reference(original.internal_reference)
        finally:
            mirror.close()

        assert restored.model_dump() == original.model_dump()
