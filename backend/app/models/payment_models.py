from sqlalchemy import Column, Integer, Float, String, DateTime, Text, Enum
from app.database import Base
import enum


class PaymentStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


class MpesaTransaction(Base):
    """Miroir durable d'une transaction STK push"""
    __tablename__ = "mpesa_transactions"

    internal_reference = Column(String(32), primary_key=True, index=True)
    correlation_id = Column(String, unique=True, index=True, nullable=True)  # CheckoutRequestID
    merchant_request_id = Column(String, nullable=True)

    phone_number = Column(String(16), nullable=False)
    amount = Column(Integer, nullable=False)
    description = Column(Text, nullable=False)

    provider_ack_code = Column(String, nullable=True)
    provider_ack_message = Column(Text, nullable=True)
    customer_message = Column(Text, nullable=True)

    status = Column(Enum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False, index=True)
    result_code = Column(String, nullable=True)
    result_description = Column(Text, nullable=True)
    resolution_source = Column(String, nullable=True)  # 'callback', 'poll'

    # Uniquement sur succès, depuis CallbackMetadata
    provider_receipt_id = Column(String, nullable=True)
    provider_confirmed_amount = Column(Float, nullable=True)
    provider_confirmed_phone = Column(String, nullable=True)
    provider_timestamp = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    terminal_at = Column(DateTime(timezone=True), nullable=True)

