import logging
import re
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from app.config import Settings
from app.exceptions import AuthError, DuplicateKeyError, NotFoundError, ProviderError, ValidationError
from app.models.payment_models import PaymentStatus
from app.schemas.payment_schemas import PaymentRequest, StkCallbackPayload
from app.schemas.transaction_schemas import Transaction
from app.services.mpesa_service import MpesaService
from app.services.reconciliation_service import (
    ReconciliationService,
    ResolutionOutcome,
    SOURCE_CALLBACK,
    parse_callback_metadata,
)
from app.services.transaction_store import TransactionStore
from app.utils.security import mask_phone

logger = logging.getLogger(__name__)

MAX_REFERENCE_ATTEMPTS = 5


class PaymentService:
    """Orchestration des routes : validation, push, store, réconciliation"""

    def __init__(
        self,
        settings: Settings,
        store: TransactionStore,
        mpesa_service: MpesaService,
        reconciliation: ReconciliationService,
    ):
        self.settings = settings
        self.store = store
        self.mpesa_service = mpesa_service
        self.reconciliation = reconciliation
        self.phone_pattern = re.compile(rf"^{re.escape(settings.MPESA_COUNTRY_PREFIX)}[0-9]{{9}}$")

    def validate_payment_request(self, request: PaymentRequest):
        if not request.phone_number or not request.description:
            raise ValidationError("Phone number, amount, and description are required")

        if not self.phone_pattern.match(request.phone_number):
            raise ValidationError(
                f"Invalid phone number format. Use {self.settings.MPESA_COUNTRY_PREFIX}XXXXXXXXX"
            )

        if request.amount < self.settings.MIN_AMOUNT:
            raise ValidationError(f"Amount must be at least {self.settings.MIN_AMOUNT} KSh")

        if request.amount > self.settings.MAX_AMOUNT:
            raise ValidationError(f"Amount must not exceed {self.settings.MAX_AMOUNT} KSh")

    def generate_reference(self) -> str:
        # AccountReference Daraja : 12 caractères max
        for _ in range(MAX_REFERENCE_ATTEMPTS):
            reference = f"{self.settings.REFERENCE_PREFIX}{uuid.uuid4().hex[:10].upper()}"
            if not self.store.exists(reference):
                return reference
        raise DuplicateKeyError("Impossible de générer une référence unique")

    def initiate_payment(self, request: PaymentRequest) -> Transaction:
        self.validate_payment_request(request)
        reference = self.generate_reference()

        logger.info(f"💰 Initiation STK Push - Ref: {reference}, Phone: {mask_phone(request.phone_number)}, Amount: {request.amount}")

        ack = self.mpesa_service.initiate_push(
            request.phone_number,
            request.amount,
            reference,
            request.description,
        )

        if not ack.correlation_id:
            logger.warning(f"⚠️ Accusé M-Pesa sans CheckoutRequestID pour {reference} - transaction non réconciliable")

        transaction = self.store.create(Transaction(
            internal_reference=reference,
            correlation_id=ack.correlation_id,
            merchant_request_id=ack.merchant_request_id,
            phone_number=request.phone_number,
            amount=request.amount,
            description=request.description,
            provider_ack_code=ack.provider_ack_code,
            provider_ack_message=ack.provider_ack_message,
            customer_message=ack.customer_message,
            status=PaymentStatus.PENDING,
            created_at=datetime.now(timezone.utc),
        ))

        logger.info(f"📱 STK Push initié - Ref: {reference}, CheckoutRequestID: {ack.correlation_id}")
        return transaction

    def get_status(self, reference: str) -> Transaction:
        """Statut courant ; poll M-Pesa si la transaction est encore PENDING."""
        transaction = self.store.get_by_reference(reference)

        if transaction.status != PaymentStatus.PENDING or not transaction.correlation_id:
            return transaction

        try:
            outcome = self.reconciliation.poll_and_resolve(transaction)
        except (ProviderError, AuthError) as e:
            # Seule une réponse M-Pesa explicite peut décider d'un échec
            logger.warning(f"⚠️ Poll M-Pesa impossible pour {reference}: {e} - statut conservé")
            return self.store.get_by_reference(reference)

        return outcome.record

    def handle_callback(self, payload: StkCallbackPayload) -> Optional[ResolutionOutcome]:
        callback = payload.callback
        logger.info(
            f"📥 Callback M-Pesa reçu - CheckoutRequestID: {callback.checkout_request_id}, "
            f"ResultCode: {callback.result_code}"
        )

        try:
            return self.reconciliation.resolve_by_correlation_id(
                callback.checkout_request_id,
                callback.result_code,
                callback.result_desc,
                metadata=parse_callback_metadata(callback.metadata_items()),
                source=SOURCE_CALLBACK,
            )
        except NotFoundError:
            # Acquitter quand même : M-Pesa réessaierait sans fin
            logger.error(f"❌ Transaction introuvable pour CheckoutRequestID: {callback.checkout_request_id}")
            return None

    def list_transactions(self) -> List[Transaction]:
        return self.store.list_all()
