"""
Pydantic Payment Models

Payment snapshot, gateway metadata variants and the inbound M-Pesa callback
envelope.

Gateway metadata is a tagged union on `kind`:
- InitiationResponse: what Daraja answered to the STK push request
- CallbackPayload: the asynchronous stkCallback result
"""
from datetime import datetime
from typing import Annotated, Optional, Literal, List, Dict, Any, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

PaymentStatus = Literal["initiated", "pending", "completed", "failed"]
TERMINAL_STATUSES = ("completed", "failed")
OPEN_STATUSES = ("initiated", "pending")


# ==================== Gateway Metadata ====================

class InitiationResponse(BaseModel):
    """STK push acknowledgement stored for audit."""
    kind: Literal["initiation_response"] = "initiation_response"
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    response_code: str
    response_description: str = ""
    customer_message: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class CallbackPayload(BaseModel):
    """Parsed stkCallback result stored once the payment reaches a terminal state."""
    kind: Literal["callback_payload"] = "callback_payload"
    merchant_request_id: Optional[str] = None
    checkout_request_id: str
    result_code: int
    result_desc: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


GatewayMetadata = Annotated[
    Union[InitiationResponse, CallbackPayload],
    Field(discriminator="kind")
]

gateway_metadata_adapter = TypeAdapter(GatewayMetadata)


# ==================== Inbound Callback Envelope ====================

class CallbackItem(BaseModel):
    name: str = Field(alias="Name")
    value: Optional[Union[int, float, str]] = Field(default=None, alias="Value")


class CallbackMetadata(BaseModel):
    items: List[CallbackItem] = Field(default_factory=list, alias="Item")


class StkCallback(BaseModel):
    merchant_request_id: Optional[str] = Field(default=None, alias="MerchantRequestID")
    checkout_request_id: str = Field(alias="CheckoutRequestID", min_length=1)
    result_code: int = Field(alias="ResultCode")
    result_desc: str = Field(default="", alias="ResultDesc")
    callback_metadata: Optional[CallbackMetadata] = Field(default=None, alias="CallbackMetadata")


class CallbackBody(BaseModel):
    stk_callback: StkCallback = Field(alias="stkCallback")


class CallbackEnvelope(BaseModel):
    """{"Body": {"stkCallback": {...}}} as posted by Daraja."""
    body: CallbackBody = Field(alias="Body")

    def to_payload(self, raw: Dict[str, Any]) -> CallbackPayload:
        callback = self.body.stk_callback
        metadata: Dict[str, Any] = {}
        if callback.callback_metadata:
            metadata = {item.name: item.value for item in callback.callback_metadata.items}
        return CallbackPayload(
            merchant_request_id=callback.merchant_request_id,
            checkout_request_id=callback.checkout_request_id,
            result_code=callback.result_code,
            result_desc=callback.result_desc,
            metadata=metadata,
            raw=raw,
        )


# ==================== Payment Read Models ====================

class Payment(BaseModel):
    """Full payment record as held by the store."""
    id: str
    order_id: str
    payment_method: Literal["mpesa"] = "mpesa"
    amount_cents: int = Field(ge=0)
    correlation_id: Optional[str] = None
    phone_number: str
    status: PaymentStatus
    initiation_response: Optional[InitiationResponse] = None
    callback_payload: Optional[CallbackPayload] = None
    result_description: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PaymentSnapshot(BaseModel):
    """
    Status view returned to the storefront and consumed by the poller.

    amount is in whole currency units (KES).
    """
    id: str
    status: PaymentStatus
    amount: float
    method: str
    correlation_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ManualReconciliationRequest(BaseModel):
    """Operator decision for a payment whose callback never arrived."""
    succeeded: bool
    reason: str = Field(min_length=1, max_length=255)
