"""
Tests du moteur de réconciliation : callbacks, polls et leurs courses.
"""
import threading
from datetime import datetime, timedelta, timezone

import pytest

from app.exceptions import InProgressError, NetworkError, NotFoundError
from app.models.payment_models import PaymentStatus
from app.services.mpesa_service import PushStatus
from app.services.reconciliation_service import (
    SOURCE_CALLBACK,
    SOURCE_POLL,
    parse_callback_metadata,
)
from conftest import SUCCESS_ITEMS


class TestCallbackResolution:
    def test_success_completes_with_receipt(self, reconciliation, make_transaction):
        make_transaction()

        outcome = reconciliation.resolve_by_correlation_id(
            "ws_CO_0001", 0, "The service request is processed successfully.",
            metadata=parse_callback_metadata(SUCCESS_ITEMS),
        )

        assert outcome.transitioned
        record = outcome.record
        assert record.status == PaymentStatus.COMPLETED
        assert record.result_code == "0"
        assert record.provider_receipt_id == "NLJ7RT61SV"
        assert record.provider_confirmed_amount == 100.0
        assert record.provider_confirmed_phone == "254712345678"
        assert record.provider_timestamp == "20240101120000"
        assert record.resolution_source == SOURCE_CALLBACK
        assert record.terminal_at is not None

    def test_non_zero_code_fails(self, reconciliation, make_transaction):
        make_transaction()

        outcome = reconciliation.resolve_by_correlation_id("ws_CO_0001", 1032, "Request cancelled by user")

        assert outcome.transitioned
        assert outcome.record.status == PaymentStatus.FAILED
        assert outcome.record.result_code == "1032"
        assert outcome.record.provider_receipt_id is None

    def test_first_resolution_wins(self, reconciliation, store, make_transaction):
        make_transaction()
        reconciliation.resolve_by_correlation_id("ws_CO_0001", 1032, "Request cancelled by user")

        replay = reconciliation.resolve_by_correlation_id(
            "ws_CO_0001", 0, "Success", metadata=parse_callback_metadata(SUCCESS_ITEMS)
        )

        assert not replay.transitioned
        record = store.get_by_reference("CE0000000001")
        assert record.status == PaymentStatus.FAILED
        assert record.result_code == "1032"

    def test_in_progress_code_is_a_no_op(self, reconciliation, store, make_transaction):
        make_transaction()

        outcome = reconciliation.resolve_by_correlation_id("ws_CO_0001", "500.001.1001", "In progress")

        assert not outcome.transitioned
        assert store.get_by_reference("CE0000000001").status == PaymentStatus.PENDING

    def test_record_lock_released_once_terminal(self, reconciliation, store, make_transaction):
        make_transaction()

        reconciliation.resolve_by_correlation_id("ws_CO_0001", "500.001.1001", "In progress")
        assert store.tracked_lock_count() == 1

        reconciliation.resolve_by_correlation_id("ws_CO_0001", 0, "Success")
        assert store.tracked_lock_count() == 0

        replay = reconciliation.resolve_by_correlation_id("ws_CO_0001", 1032, "Cancelled")
        assert not replay.transitioned
        assert store.tracked_lock_count() == 0
        assert store.get_by_reference("CE0000000001").status == PaymentStatus.COMPLETED

    def test_record_without_correlation_id_never_resolves(self, reconciliation, store, make_transaction):
        make_transaction(correlation_id=None)

        outcome = reconciliation.resolve_by_reference("CE0000000001", "0", "Success")

        assert not outcome.transitioned
        assert store.get_by_reference("CE0000000001").status == PaymentStatus.PENDING

    def test_unknown_correlation_id(self, reconciliation):
        with pytest.raises(NotFoundError):
            reconciliation.resolve_by_correlation_id("ws_CO_UNKNOWN", 0, "Success")

    def test_parse_callback_metadata_skips_items_without_value(self):
        metadata = parse_callback_metadata(SUCCESS_ITEMS)

        assert "Balance" not in metadata
        assert metadata["MpesaReceiptNumber"] == "NLJ7RT61SV"
        assert parse_callback_metadata(None) == {}


class TestPollResolution:
    def test_poll_success(self, reconciliation, mpesa_service, make_transaction):
        record = make_transaction()
        mpesa_service.query_push_status.return_value = PushStatus("0", "The service request is processed successfully.")

        outcome = reconciliation.poll_and_resolve(record)

        mpesa_service.query_push_status.assert_called_once_with("ws_CO_0001")
        assert outcome.transitioned
        assert outcome.record.status == PaymentStatus.COMPLETED
        assert outcome.record.resolution_source == SOURCE_POLL

    def test_poll_in_progress_stays_pending(self, reconciliation, mpesa_service, make_transaction):
        record = make_transaction()
        mpesa_service.query_push_status.side_effect = InProgressError("The transaction is being processed", "500.001.1001")

        outcome = reconciliation.poll_and_resolve(record)

        assert not outcome.transitioned
        assert outcome.record.status == PaymentStatus.PENDING

    def test_poll_skips_terminal_records(self, reconciliation, mpesa_service, make_transaction):
        make_transaction()
        record = reconciliation.resolve_by_correlation_id("ws_CO_0001", 1032, "Cancelled").record

        outcome = reconciliation.poll_and_resolve(record)

        mpesa_service.query_push_status.assert_not_called()
        assert not outcome.transitioned

    def test_late_poll_does_not_override_callback(self, reconciliation, store, mpesa_service, make_transaction):
        pending = make_transaction()

        def callback_lands_during_query(correlation_id):
            reconciliation.resolve_by_correlation_id(correlation_id, 1032, "Request cancelled by user")
            return PushStatus("0", "Success")

        mpesa_service.query_push_status.side_effect = callback_lands_during_query

        outcome = reconciliation.poll_and_resolve(pending)

        assert not outcome.transitioned
        record = store.get_by_reference("CE0000000001")
        assert record.status == PaymentStatus.FAILED
        assert record.resolution_source == SOURCE_CALLBACK

    def test_network_error_propagates(self, reconciliation, store, mpesa_service, make_transaction):
        record = make_transaction()
        mpesa_service.query_push_status.side_effect = NetworkError("Timeout M-Pesa")

        with pytest.raises(NetworkError):
            reconciliation.poll_and_resolve(record)
        assert store.get_by_reference("CE0000000001").status == PaymentStatus.PENDING


class TestConcurrentResolution:
    @pytest.mark.parametrize("run", range(5))
    def test_concurrent_callback_and_poll_single_transition(self, run, reconciliation, store, make_transaction):
        make_transaction()
        barrier = threading.Barrier(2)
        outcomes = {}

        def resolve(name, code, source):
            barrier.wait()
            outcomes[name] = reconciliation.resolve_by_reference("CE0000000001", code, name, source=source)

        threads = [
            threading.Thread(target=resolve, args=("callback", "0", SOURCE_CALLBACK)),
            threading.Thread(target=resolve, args=("poll", "1032", SOURCE_POLL)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        winners = [name for name, outcome in outcomes.items() if outcome.transitioned]
        assert len(winners) == 1

        record = store.get_by_reference("CE0000000001")
        expected = PaymentStatus.COMPLETED if winners[0] == "callback" else PaymentStatus.FAILED
        assert record.status == expected
        assert record.result_description == winners[0]

    def test_concurrent_callbacks_on_distinct_transactions(self, reconciliation, store, make_transaction):
        for n in range(10):
            make_transaction(reference=f"CE{n:010d}", correlation_id=f"ws_CO_{n:04d}")
        barrier = threading.Barrier(10)

        def resolve(n):
            barrier.wait()
            reconciliation.resolve_by_correlation_id(f"ws_CO_{n:04d}", 0, "Success")

        threads = [threading.Thread(target=resolve, args=(n,)) for n in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert all(r.status == PaymentStatus.COMPLETED for r in store.list_all())


class TestSweep:
    def test_sweep_polls_only_stale_pending(self, reconciliation, mpesa_service, store, make_transaction):
        now = datetime.now(timezone.utc)
        make_transaction("CE_OLD", "ws_CO_1", created_at=now - timedelta(minutes=10))
        make_transaction("CE_NEW", "ws_CO_2", created_at=now)
        make_transaction("CE_ORPHAN", None, created_at=now - timedelta(minutes=10))
        mpesa_service.query_push_status.return_value = PushStatus("1032", "Request cancelled by user")

        resolved = reconciliation.sweep_stale_transactions(120, now=now)

        assert resolved == 1
        mpesa_service.query_push_status.assert_called_once_with("ws_CO_1")
        assert store.get_by_reference("CE_OLD").status == PaymentStatus.FAILED
        assert store.get_by_reference("CE_NEW").status == PaymentStatus.PENDING
        assert store.get_by_reference("CE_ORPHAN").status == PaymentStatus.PENDING

    def test_sweep_continues_after_provider_failure(self, reconciliation, mpesa_service, store, make_transaction):
        now = datetime.now(timezone.utc)
        make_transaction("CE_A", "ws_CO_1", created_at=now - timedelta(minutes=10))
        make_transaction("CE_B", "ws_CO_2", created_at=now - timedelta(minutes=5))
        mpesa_service.query_push_status.side_effect = [NetworkError("Timeout"), PushStatus("0", "Success")]

        resolved = reconciliation.sweep_stale_transactions(120, now=now)

        assert resolved == 1
        assert store.get_by_reference("CE_A").status == PaymentStatus.PENDING
        assert store.get_by_reference("CE_B").status == PaymentStatus.COMPLETED
