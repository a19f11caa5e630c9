"""
ROUTES DE PAIEMENT M-PESA - STK PUSH, CALLBACK, STATUT
"""
from fastapi import APIRouter, Depends, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError
import json
import logging

from app.exceptions import ValidationError
from app.middleware.security import (
    limiter,
    payments_rate_limit,
    require_admin_token,
    status_rate_limit,
    verify_callback_request,
)
from app.schemas.payment_schemas import PaymentInitiatedResponse, PaymentRequest, StkCallbackPayload
from app.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


@router.post("", response_model=PaymentInitiatedResponse, response_model_by_alias=True)
@limiter.limit(payments_rate_limit)
def initiate_payment(
    request: Request,
    payment_data: PaymentRequest,
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Initier un paiement M-Pesa (STK Push)"""
    transaction = payment_service.initiate_payment(payment_data)

    return PaymentInitiatedResponse(
        transaction_id=transaction.internal_reference,
        correlation_id=transaction.correlation_id,
        merchant_request_id=transaction.merchant_request_id,
        provider_ack_code=transaction.provider_ack_code,
        provider_ack_message=transaction.provider_ack_message,
    )


@router.post("/callback")
async def mpesa_callback(
    request: Request,
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Callback M-Pesa - toujours acquitté sauf payload structurellement invalide"""
    payload = await request.body()

    verify_callback_request(
        request.app.state.settings,
        request.client.host if request.client else None,
        payload,
        request.headers.get("X-Callback-Signature"),
    )

    try:
        callback_payload = StkCallbackPayload.model_validate(json.loads(payload))
    except (ValueError, PydanticValidationError) as e:
        logger.error(f"❌ Callback M-Pesa invalide: {e}")
        raise ValidationError("Invalid callback data") from e

    outcome = await run_in_threadpool(payment_service.handle_callback, callback_payload)

    if outcome is None:
        message = "Callback acknowledged (unknown transaction)"
    elif outcome.transitioned:
        message = "Callback processed successfully"
    else:
        message = "Callback acknowledged (no change)"

    return {"success": True, "message": message}


@router.get("/{transaction_id}/status")
@limiter.limit(status_rate_limit)
def get_payment_status(
    request: Request,
    transaction_id: str,
    payment_service: PaymentService = Depends(get_payment_service),
):
    """Statut d'une transaction, avec poll M-Pesa si encore PENDING"""
    transaction = payment_service.get_status(transaction_id)
    return {"success": True, "transaction": transaction.to_view()}


@router.get("", dependencies=[Depends(require_admin_token)])
def list_payments(payment_service: PaymentService = Depends(get_payment_service)):
    """Listing administrateur de toutes les transactions"""
    transactions = [t.to_view() for t in payment_service.list_transactions()]
    return {"success": True, "transactions": transactions, "total": len(transactions)}
