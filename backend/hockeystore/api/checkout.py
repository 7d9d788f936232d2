"""
Checkout API Endpoint

Accepts the storefront cart and starts an M-Pesa STK push.
"""
from fastapi import APIRouter, Depends, Request
import logging

from ..auth import AuthenticatedUser, get_current_user
from ..models.orders import CheckoutRequest, CheckoutResult
from ..services.checkout_service import CheckoutOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter()


def get_checkout_orchestrator(request: Request) -> CheckoutOrchestrator:
    state = request.app.state
    return CheckoutOrchestrator(state.database, state.gateway, state.settings)


@router.post("/checkout", response_model=CheckoutResult)
async def checkout_endpoint(
    body: CheckoutRequest,
    user: AuthenticatedUser = Depends(get_current_user),
    orchestrator: CheckoutOrchestrator = Depends(get_checkout_orchestrator)
) -> CheckoutResult:
    """
    Reserve stock, create the order and send the STK push.

    Request Body:
        {
            "cart": [{"_id": str, "quantity": int}],
            "name": str,
            "email": str,
            "phoneNumber": "2547XXXXXXXX"
        }

    Returns:
        {
            "success": true,
            "message": "Payment initiated. Check your phone ...",
            "orderId": str,
            "paymentId": str,
            "correlationId": str
        }

    Errors:
        400 checkout:insufficient_stock / checkout:product_not_found / gateway:rejected
        502 gateway:unreachable / gateway:auth_failed
    """
    logger.info(f"Checkout requested by user {user.user_id}: {len(body.cart)} cart lines")
    return await orchestrator.checkout(user.user_id, body)
