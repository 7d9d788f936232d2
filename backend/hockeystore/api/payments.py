"""
Payments API Endpoints

Payment status for the storefront poller, the M-Pesa callback webhook and the
operator reconciliation path.
"""
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Any
import logging

from ..auth import AuthenticatedUser, get_current_user, require_admin
from ..db.init_db import get_db
from ..db.models import OrderModel
from ..exceptions import MalformedCallbackError, PaymentNotFoundError
from ..models.payments import ManualReconciliationRequest
from ..services.callback_service import CallbackReconciler
from ..services.payment_service import get_payment_row, to_snapshot

logger = logging.getLogger(__name__)

router = APIRouter()


def get_reconciler(request: Request) -> CallbackReconciler:
    return CallbackReconciler(request.app.state.database)


@router.post("/payments/callback")
async def payment_callback_endpoint(
    request: Request,
    reconciler: CallbackReconciler = Depends(get_reconciler)
) -> Dict[str, Any]:
    """
    M-Pesa STK push result webhook.

    Unauthenticated. Acknowledges receipt regardless of whether the payment
    itself succeeded or failed.

    Request Body:
        {"Body": {"stkCallback": {"CheckoutRequestID", "ResultCode", "ResultDesc", "CallbackMetadata"?}}}

    Errors:
        400 callback:malformed
        404 callback:unknown_payment
    """
    try:
        body = await request.json()
    except ValueError as e:
        raise MalformedCallbackError("Invalid callback data", details={"reason": "body is not JSON"}) from e

    await reconciler.handle_callback(body)
    return {"success": True}


@router.get("/payments/{payment_id}")
async def get_payment_status_endpoint(
    payment_id: str,
    order_id: str = Query(..., alias="orderId", description="Order the payment belongs to"),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
) -> Dict[str, Any]:
    """
    Current payment status.

    Query Parameters:
        orderId: Owning order (required)

    Returns:
        {
            "success": true,
            "payment": {"id", "status", "amount", "method", "correlationId", "createdAt", "updatedAt"}
        }

    Example:
        GET /api/payments/pay_abc123?orderId=ord_def456
    """
    payment = await get_payment_row(db, payment_id)
    if payment is None or payment.order_id != order_id:
        raise PaymentNotFoundError("Payment not found", details={"payment_id": payment_id})

    if not user.is_admin:
        order = await db.get(OrderModel, order_id)
        if order is None or order.user_id != user.user_id:
            # Same answer as a missing payment; do not reveal other users' payments
            raise PaymentNotFoundError("Payment not found", details={"payment_id": payment_id})

    snapshot = to_snapshot(payment)
    logger.debug(f"Payment {payment_id} status={snapshot.status}")

    return {
        "success": True,
        "payment": snapshot.model_dump(mode="json", by_alias=True)
    }


@router.post("/payments/{payment_id}/reconcile")
async def reconcile_payment_endpoint(
    payment_id: str,
    body: ManualReconciliationRequest,
    admin: AuthenticatedUser = Depends(require_admin),
    reconciler: CallbackReconciler = Depends(get_reconciler)
) -> Dict[str, Any]:
    """
    Resolve a payment by hand (admin only).

    Request Body:
        {"succeeded": bool, "reason": str}

    Already-terminal payments are returned unchanged.
    """
    logger.info(
        f"Manual reconciliation of {payment_id} by {admin.user_id}: succeeded={body.succeeded}, reason={body.reason!r}"
    )
    snapshot = await reconciler.reconcile_manually(payment_id, body.succeeded, body.reason)
    return {
        "success": True,
        "payment": snapshot.model_dump(mode="json", by_alias=True)
    }
