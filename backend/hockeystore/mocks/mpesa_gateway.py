"""
Mock M-Pesa Gateway

Stands in for Daraja in demo mode and in tests. Exposes the same two
coroutines as MpesaClient.

Mock Behavior:
- Special phone numbers trigger specific STK push rejections
- Every other number is accepted with a fresh CheckoutRequestID
- With a callback sink configured, a simulated stkCallback is delivered after
  a delay, as Daraja would once the customer answers the prompt
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..gateway.mpesa_client import InitiationRequest, InitiationResult, to_whole_units
from ..models.payments import InitiationResponse

logger = logging.getLogger(__name__)

# Test phone numbers that trigger specific rejections: (ResponseCode, description)
REJECT_PHONES = {
    "254700000001": ("1", "The balance is insufficient for the transaction"),
    "254700000002": ("1032", "Request cancelled by user"),
    "254700000003": ("2001", "The initiator information is invalid"),
}

# Callback ResultCodes the simulator understands
RESULT_DESCRIPTIONS = {
    0: "The service request is processed successfully.",
    1: "The balance is insufficient for the transaction.",
    1032: "Request cancelled by user",
    1037: "DS timeout user cannot be reached",
}

CallbackSink = Callable[[Dict[str, Any]], Awaitable[Any]]


def build_callback_payload(
    checkout_request_id: str,
    result_code: int = 0,
    amount: Optional[int] = None,
    phone_number: Optional[str] = None,
    merchant_request_id: Optional[str] = None,
    receipt_number: Optional[str] = None
) -> Dict[str, Any]:
    """
    Build an stkCallback body shaped like Daraja's.

    CallbackMetadata is only present on success, as in production.
    """
    callback: Dict[str, Any] = {
        "MerchantRequestID": merchant_request_id or f"mock-{uuid.uuid4().hex[:12]}",
        "CheckoutRequestID": checkout_request_id,
        "ResultCode": result_code,
        "ResultDesc": RESULT_DESCRIPTIONS.get(result_code, "The transaction failed."),
    }

    if result_code == 0:
        items: List[Dict[str, Any]] = [
            {"Name": "MpesaReceiptNumber", "Value": receipt_number or uuid.uuid4().hex[:10].upper()},
            {"Name": "TransactionDate", "Value": int(datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S"))},
        ]
        if amount is not None:
            items.insert(0, {"Name": "Amount", "Value": amount})
        if phone_number is not None:
            items.append({"Name": "PhoneNumber", "Value": int(phone_number)})
        callback["CallbackMetadata"] = {"Item": items}

    return {"Body": {"stkCallback": callback}}


class MockMpesaGateway:
    """
    In-process Daraja double.

    Args:
        callback_sink: Optional coroutine receiving simulated callback bodies
        callback_delay_seconds: How long the simulated customer takes to answer
        callback_result_code: ResultCode the simulated customer produces
    """

    def __init__(
        self,
        callback_sink: Optional[CallbackSink] = None,
        callback_delay_seconds: float = 5.0,
        callback_result_code: int = 0
    ):
        self.callback_sink = callback_sink
        self.callback_delay_seconds = callback_delay_seconds
        self.callback_result_code = callback_result_code
        self.requests: List[InitiationRequest] = []
        self._tasks: set = set()

    async def authorize(self) -> str:
        return f"mock_token_{uuid.uuid4().hex[:8]}"

    async def initiate_payment(self, access_token: str, request: InitiationRequest) -> InitiationResult:
        self.requests.append(request)

        if request.phone_number in REJECT_PHONES:
            code, description = REJECT_PHONES[request.phone_number]
            body = {"errorCode": code, "errorMessage": description}
            return InitiationResult(
                accepted=False,
                response_code=code,
                response_description=description,
                response=InitiationResponse(response_code=code, response_description=description, raw=body),
            )

        merchant_request_id = f"mock-{uuid.uuid4().hex[:12]}"
        checkout_request_id = f"ws_CO_{datetime.now(timezone.utc).strftime('%d%m%Y%H%M%S')}_{uuid.uuid4().hex[:12]}"
        body = {
            "MerchantRequestID": merchant_request_id,
            "CheckoutRequestID": checkout_request_id,
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        }

        if self.callback_sink is not None:
            payload = build_callback_payload(
                checkout_request_id,
                result_code=self.callback_result_code,
                amount=to_whole_units(request.amount_cents),
                phone_number=request.phone_number,
                merchant_request_id=merchant_request_id,
            )
            task = asyncio.create_task(self._deliver_callback(payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        return InitiationResult(
            accepted=True,
            correlation_id=checkout_request_id,
            response_code="0",
            response_description=body["ResponseDescription"],
            response=InitiationResponse(
                merchant_request_id=merchant_request_id,
                checkout_request_id=checkout_request_id,
                response_code="0",
                response_description=body["ResponseDescription"],
                customer_message=body["CustomerMessage"],
                raw=body,
            ),
        )

    async def _deliver_callback(self, payload: Dict[str, Any]) -> None:
        await asyncio.sleep(self.callback_delay_seconds)
        checkout_request_id = payload["Body"]["stkCallback"]["CheckoutRequestID"]
        try:
            await self.callback_sink(payload)
            logger.info(f"Delivered simulated callback for {checkout_request_id}")
        except Exception as e:
            logger.error(f"Simulated callback for {checkout_request_id} failed: {e}", exc_info=True)

    async def aclose(self) -> None:
        """Cancel simulated callbacks that have not fired yet."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
