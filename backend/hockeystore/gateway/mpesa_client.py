"""
M-Pesa Daraja Gateway Client

Two operations per checkout attempt, no automatic retry:
- authorize(): OAuth client-credentials exchange for a short-lived bearer token
- initiate_payment(): Lipa Na M-Pesa Online (STK push) request

A business-level refusal from Daraja is returned as a rejected
InitiationResult; only credential and transport failures raise.
"""
import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import BaseModel

from ..config import Settings
from ..exceptions import GatewayAuthError, GatewayUnreachableError
from ..models.payments import InitiationResponse

logger = logging.getLogger(__name__)

OAUTH_PATH = "/oauth/v1/generate"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
SUCCESS_RESPONSE_CODE = "0"


def generate_timestamp(now: Optional[datetime] = None, utc_offset_hours: int = 3) -> str:
    """
    Daraja timestamp: YYYYMMDDHHMMSS in the gateway's local time.

    Args:
        now: Aware datetime to format (defaults to the current time)
        utc_offset_hours: Gateway local offset from UTC (East Africa Time is +3)
    """
    tz = timezone(timedelta(hours=utc_offset_hours))
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz).strftime("%Y%m%d%H%M%S")


def generate_password(shortcode: str, passkey: str, timestamp: str) -> str:
    """STK push password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def to_whole_units(amount_cents: int) -> int:
    """Round minor units half-up to whole currency units; Daraja only accepts integers."""
    return (amount_cents + 50) // 100


class InitiationRequest(BaseModel):
    """What the orchestrator asks the gateway to charge."""
    amount_cents: int
    phone_number: str
    account_reference: str
    description: str = "Payment for Hockey Store Order"


class InitiationResult(BaseModel):
    """
    Outcome of an STK push request.

    accepted is True only when Daraja returned ResponseCode "0"; correlation_id
    is then the CheckoutRequestID the callback will carry.
    """
    accepted: bool
    correlation_id: Optional[str] = None
    response_code: str
    response_description: str = ""
    response: InitiationResponse


class MpesaClient:
    """
    Async Daraja client.

    One instance is shared by the app and closed on shutdown.
    """

    def __init__(self, settings: Settings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.mpesa_base_url,
            timeout=settings.mpesa_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def authorize(self) -> str:
        """
        Exchange consumer key/secret for a bearer token.

        Raises:
            GatewayAuthError: Non-2xx answer or no access_token in the body
            GatewayUnreachableError: Transport failure
        """
        try:
            response = await self._client.get(
                OAUTH_PATH,
                params={"grant_type": "client_credentials"},
                auth=(self.settings.mpesa_consumer_key, self.settings.mpesa_consumer_secret),
            )
        except httpx.TransportError as e:
            logger.error(f"M-Pesa OAuth request failed: {e}")
            raise GatewayUnreachableError(
                "Failed to reach M-Pesa for an access token",
                details={"error_type": type(e).__name__}
            ) from e

        if not response.is_success:
            logger.error(f"M-Pesa OAuth rejected with HTTP {response.status_code}")
            raise GatewayAuthError(
                "Failed to generate access token",
                details={"status_code": response.status_code}
            )

        try:
            access_token = response.json().get("access_token")
        except ValueError:
            access_token = None

        if not access_token:
            raise GatewayAuthError("Failed to generate access token", details={"reason": "missing access_token"})

        logger.debug("M-Pesa access token obtained")
        return access_token

    def build_stk_payload(self, request: InitiationRequest, timestamp: Optional[str] = None) -> Dict[str, Any]:
        """Assemble the CustomerPayBillOnline request body."""
        shortcode = self.settings.mpesa_business_shortcode
        timestamp = timestamp or generate_timestamp(utc_offset_hours=self.settings.mpesa_utc_offset_hours)

        return {
            "BusinessShortCode": shortcode,
            "Password": generate_password(shortcode, self.settings.mpesa_passkey, timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": to_whole_units(request.amount_cents),
            "PartyA": request.phone_number,
            "PartyB": shortcode,
            "PhoneNumber": request.phone_number,
            "CallBackURL": self.settings.callback_url,
            "AccountReference": request.account_reference,
            "TransactionDesc": request.description,
        }

    async def initiate_payment(self, access_token: str, request: InitiationRequest) -> InitiationResult:
        """
        Send the STK push.

        Returns:
            InitiationResult, accepted or rejected

        Raises:
            GatewayUnreachableError: Transport failure or an error answer without a JSON body
        """
        payload = self.build_stk_payload(request)

        try:
            response = await self._client.post(
                STK_PUSH_PATH,
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.TransportError as e:
            logger.error(f"M-Pesa STK push failed for {request.account_reference}: {e}")
            raise GatewayUnreachableError(
                "Failed to reach M-Pesa to initiate payment",
                details={"error_type": type(e).__name__}
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict):
            logger.error(f"M-Pesa STK push returned HTTP {response.status_code} without a JSON body")
            raise GatewayUnreachableError(
                "Unexpected response from M-Pesa",
                details={"status_code": response.status_code}
            )

        result = self._parse_initiation(body)
        logger.info(
            f"STK push for {request.account_reference}: accepted={result.accepted}, "
            f"code={result.response_code}, checkout_request_id={result.correlation_id}"
        )
        return result

    @staticmethod
    def _parse_initiation(body: Dict[str, Any]) -> InitiationResult:
        # Error answers look like {"requestId", "errorCode", "errorMessage"}
        response_code = str(body.get("ResponseCode", body.get("errorCode", "unknown")))
        description = body.get("ResponseDescription") or body.get("errorMessage") or ""

        response = InitiationResponse(
            merchant_request_id=body.get("MerchantRequestID"),
            checkout_request_id=body.get("CheckoutRequestID"),
            response_code=response_code,
            response_description=description,
            customer_message=body.get("CustomerMessage"),
            raw=body,
        )

        accepted = response_code == SUCCESS_RESPONSE_CODE and bool(response.checkout_request_id)
        return InitiationResult(
            accepted=accepted,
            correlation_id=response.checkout_request_id if accepted else None,
            response_code=response_code,
            response_description=description,
            response=response,
        )
