from .payment_schemas import (
    PaymentRequest, PaymentInitiatedResponse,
    CallbackMetadataItem, CallbackMetadata, StkCallback, StkCallbackBody, StkCallbackPayload
)
from .transaction_schemas import Transaction

__all__ = [
    # ============ PAYMENT ============
    "PaymentRequest", "PaymentInitiatedResponse",

    # ============ CALLBACK ============
    "CallbackMetadataItem", "CallbackMetadata", "StkCallback", "StkCallbackBody", "StkCallbackPayload",

    # ============ TRANSACTION ============
    "Transaction",
]
