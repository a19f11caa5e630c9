"""
Pytest configuration and fixtures.
"""
import itertools
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.config import Settings
from app.main import create_app
from app.models.payment_models import PaymentStatus
from app.schemas.transaction_schemas import Transaction
from app.services.mpesa_service import MpesaService, PushAcknowledgement
from app.services.reconciliation_service import ReconciliationService
from app.services.transaction_mirror import JsonFileMirror
from app.services.transaction_store import TransactionStore


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Create test settings."""
    return Settings(
        ENVIRONMENT="test",
        MPESA_ENVIRONMENT="sandbox",
        MPESA_CONSUMER_KEY="test_consumer_key",
        MPESA_CONSUMER_SECRET="test_consumer_secret",
        MPESA_BUSINESS_SHORT_CODE="174379",
        MPESA_PASSKEY="test_passkey",
        MPESA_CALLBACK_URL="https://example.test/payments/callback",
        MPESA_TOKEN_RETRY_DELAY_SECONDS=0,
        TRANSACTION_STORE_BACKEND="json",
        TRANSACTIONS_DIR=str(tmp_path / "transactions"),
        SWEEP_ENABLED=False,
        RATE_LIMIT_ENABLED=False,
        LOG_DIR=None,
        CORS_ORIGINS=[],
    )


@pytest.fixture
def store(test_settings) -> TransactionStore:
    transaction_store = TransactionStore(JsonFileMirror(test_settings.TRANSACTIONS_DIR))
    transaction_store.load()
    return transaction_store


@pytest.fixture
def mpesa_service() -> MagicMock:
    """Client Daraja simulé : chaque push reçoit un CheckoutRequestID distinct."""
    counter = itertools.count(1)

    def acknowledge(phone, amount, reference, description):
        n = next(counter)
        return PushAcknowledgement(
            correlation_id=f"ws_CO_{n:04d}",
            merchant_request_id=f"29115-{n}",
            provider_ack_code="0",
            provider_ack_message="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    service = MagicMock(spec=MpesaService)
    service.initiate_push.side_effect = acknowledge
    return service


@pytest.fixture
def reconciliation(store, mpesa_service) -> ReconciliationService:
    return ReconciliationService(store, mpesa_service)


@pytest.fixture
def app(test_settings, mpesa_service, store):
    return create_app(test_settings, mpesa_service=mpesa_service, store=store)


@pytest.fixture
def client(app) -> TestClient:
    """Create test HTTP client."""
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def client_factory(mpesa_service, store):
    """Client HTTP sur une app construite avec des settings modifiés."""
    def _build(settings: Settings) -> TestClient:
        return TestClient(
            create_app(settings, mpesa_service=mpesa_service, store=store),
            raise_server_exceptions=False,
        )
    return _build


@pytest.fixture
def make_transaction(store):
    """Insérer directement une transaction PENDING dans le store."""
    def _make(reference="CE0000000001", correlation_id="ws_CO_0001", created_at=None, **fields):
        return store.create(Transaction(
            internal_reference=reference,
            correlation_id=correlation_id,
            merchant_request_id="29115-1",
            phone_number=fields.pop("phone_number", "254712345678"),
            amount=fields.pop("amount", 100),
            description=fields.pop("description", "Order #1"),
            status=PaymentStatus.PENDING,
            created_at=created_at or datetime.now(timezone.utc),
            **fields,
        ))
    return _make


def callback_body(correlation_id, result_code=0, result_desc="The service request is processed successfully.", items=None):
    stk_callback = {
        "MerchantRequestID": "29115-1",
        "CheckoutRequestID": correlation_id,
        "ResultCode": result_code,
        "ResultDesc": result_desc,
    }
    if items is not None:
        stk_callback["CallbackMetadata"] = {"Item": items}
    return {"Body": {"stkCallback": stk_callback}}


SUCCESS_ITEMS = [
    {"Name": "Amount", "Value": 100},
    {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
    {"Name": "Balance"},
    {"Name": "TransactionDate", "Value": 20240101120000},
    {"Name": "PhoneNumber", "Value": 254712345678},
]
