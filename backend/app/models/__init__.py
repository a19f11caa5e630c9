from .payment_models import MpesaTransaction, PaymentStatus

__all__ = [
    "MpesaTransaction", "PaymentStatus",
]
