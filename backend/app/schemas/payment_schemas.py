from pydantic import BaseModel, ConfigDict, Field, validator
from typing import Optional, List, Union, Any, Dict
import re

RESULT_CODE_PATTERN = re.compile(r"^-?\d+$")


class PaymentRequest(BaseModel):
    """Corps de POST /payments"""
    model_config = ConfigDict(populate_by_name=True)

    phone_number: str = Field(..., alias="phoneNumber")
    amount: int
    description: str

    @validator('phone_number', 'description')
    def strip_whitespace(cls, v):
        return v.strip()


class PaymentInitiatedResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str = "STK Push initiated successfully"
    transaction_id: str = Field(..., alias="transactionId")
    correlation_id: Optional[str] = Field(None, alias="correlationId")
    merchant_request_id: Optional[str] = Field(None, alias="merchantRequestId")
    provider_ack_code: Optional[str] = Field(None, alias="providerAckCode")
    provider_ack_message: Optional[str] = Field(None, alias="providerAckMessage")


# ============ CALLBACK DARAJA ============
# Format imposé par Safaricom :
# {"Body": {"stkCallback": {"MerchantRequestID", "CheckoutRequestID",
#   "ResultCode", "ResultDesc", "CallbackMetadata": {"Item": [{"Name", "Value"}]}}}}

class CallbackMetadataItem(BaseModel):
    name: str = Field(..., alias="Name")
    value: Optional[Any] = Field(None, alias="Value")


class CallbackMetadata(BaseModel):
    items: List[CallbackMetadataItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    merchant_request_id: Optional[str] = Field(None, alias="MerchantRequestID")
    checkout_request_id: str = Field(..., alias="CheckoutRequestID")
    result_code: Union[int, str] = Field(..., alias="ResultCode")
    result_desc: Optional[str] = Field(None, alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(None, alias="CallbackMetadata")

    @validator('checkout_request_id')
    def validate_checkout_request_id(cls, v):
        if not v.strip():
            raise ValueError('CheckoutRequestID vide')
        return v

    @validator('result_code')
    def validate_result_code(cls, v):
        code = str(v).strip()
        if not RESULT_CODE_PATTERN.match(code):
            raise ValueError(f'ResultCode invalide: {v!r}')
        return code

    def metadata_items(self) -> List[Dict[str, Any]]:
        if not self.callback_metadata:
            return []
        return [{"Name": item.name, "Value": item.value} for item in self.callback_metadata.items]


class StkCallbackBody(BaseModel):
    stk_callback: StkCallback = Field(..., alias="stkCallback")


class StkCallbackPayload(BaseModel):
    body: StkCallbackBody = Field(..., alias="Body")

    @property
    def callback(self) -> StkCallback:
        return self.body.stk_callback
