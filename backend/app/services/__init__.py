from .mpesa_service import MpesaService, PushAcknowledgement, PushStatus, generate_password, generate_timestamp
from .transaction_mirror import TransactionMirror, DatabaseMirror, JsonFileMirror, build_mirror
from .transaction_store import TransactionStore
from .reconciliation_service import ReconciliationService, ResolutionOutcome, parse_callback_metadata
from .payment_service import PaymentService

__all__ = [
    "MpesaService", "PushAcknowledgement", "PushStatus", "generate_password", "generate_timestamp",
    "TransactionMirror", "DatabaseMirror", "JsonFileMirror", "build_mirror",
    "TransactionStore",
    "ReconciliationService", "ResolutionOutcome", "parse_callback_metadata",
    "PaymentService",
]
