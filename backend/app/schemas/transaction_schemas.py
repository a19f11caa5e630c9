from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, Dict, Any
from datetime import datetime

from app.models.payment_models import PaymentStatus


class Transaction(BaseModel):
    """Enregistrement d'une transaction STK push - seule entité persistée"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    internal_reference: str
    correlation_id: Optional[str] = None
    merchant_request_id: Optional[str] = None

    phone_number: str
    amount: int
    description: str

    provider_ack_code: Optional[str] = None
    provider_ack_message: Optional[str] = None
    customer_message: Optional[str] = None

    status: PaymentStatus = PaymentStatus.PENDING
    result_code: Optional[str] = None
    result_description: Optional[str] = None
    resolution_source: Optional[str] = None

    provider_receipt_id: Optional[str] = None
    provider_confirmed_amount: Optional[float] = None
    provider_confirmed_phone: Optional[str] = None
    provider_timestamp: Optional[str] = None

    created_at: datetime
    terminal_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_view(self) -> Dict[str, Any]:
        """Vue publique renvoyée par les routes de statut et de listing."""
        return {
            "id": self.internal_reference,
            "status": self.status.value,
            "amount": self.amount,
            "phoneNumber": self.phone_number,
            "description": self.description,
            "timestamp": self.created_at.isoformat(),
            "correlationId": self.correlation_id,
            "mpesaReceiptNumber": self.provider_receipt_id,
            "resultCode": self.result_code,
            "resultDescription": self.result_description,
            "resolved": self.is_terminal,
            "resolvedAt": self.terminal_at.isoformat() if self.terminal_at else None,
        }
