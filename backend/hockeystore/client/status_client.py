"""
Payment Status Client

httpx client for GET /api/payments/{paymentId}?orderId=..., plus a helper
that runs the bounded poller against it.
"""
import asyncio
from typing import Optional

import httpx

from ..config import settings
from ..models.payments import PaymentSnapshot
from .poller import PaymentStatusPoller, Sleep


class PaymentStatusClient:
    """
    Reads one payment's status as its owner.

    Args:
        http_client: AsyncClient whose base_url points at the store backend
        token: Bearer token of the customer who checked out
    """

    def __init__(self, http_client: httpx.AsyncClient, token: str):
        self._client = http_client
        self.token = token

    async def fetch(self, payment_id: str, order_id: str) -> PaymentSnapshot:
        response = await self._client.get(
            f"/api/payments/{payment_id}",
            params={"orderId": order_id},
            headers={"Authorization": f"Bearer {self.token}"},
        )
        response.raise_for_status()
        return PaymentSnapshot.model_validate(response.json()["payment"])


async def poll_payment_status(
    client: PaymentStatusClient,
    payment_id: str,
    order_id: str,
    interval_seconds: Optional[float] = None,
    max_attempts: Optional[int] = None,
    sleep: Sleep = asyncio.sleep
) -> PaymentSnapshot:
    """
    Poll until the payment is completed or failed.

    Interval and attempt count default to poll_interval_seconds and
    poll_max_attempts from the settings.

    Raises:
        PollTimeoutError: Still not terminal after max_attempts
    """
    poller = PaymentStatusPoller(
        lambda: client.fetch(payment_id, order_id),
        interval_seconds=settings.poll_interval_seconds if interval_seconds is None else interval_seconds,
        max_attempts=settings.poll_max_attempts if max_attempts is None else max_attempts,
        sleep=sleep,
    )
    return await poller.poll()
