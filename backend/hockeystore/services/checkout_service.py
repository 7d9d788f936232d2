"""
Checkout Service

Cart -> reserved stock -> order -> M-Pesa STK push -> pending payment.

Two-phase local protocol, no transaction is held open across the gateway call:
1. Reserve: validate the cart, create the order and an 'initiated' payment,
   decrement stock. One short transaction.
2. Gateway: authorize, then initiate the STK push.
3. Confirm (initiated -> pending + CheckoutRequestID) or release (restore
   stock, delete order and payment). One short transaction each.

A reservation whose confirm never happens is released by the sweep
(reservation_sweeper.py).
"""
import logging
from dataclasses import dataclass

from ..config import Settings
from ..db.init_db import Database
from ..exceptions import (
    GatewayRejectedError,
    ReservationExpiredError
)
from ..gateway.mpesa_client import InitiationRequest, InitiationResult
from ..models.orders import CheckoutRequest, CheckoutResult
from . import inventory_service, order_service, payment_service

logger = logging.getLogger(__name__)

CHECK_PHONE_MESSAGE = "Payment initiated. Check your phone to complete M-Pesa payment."


@dataclass
class Reservation:
    """What phase 1 committed; enough to confirm or release it."""
    order_id: str
    payment_id: str
    amount_cents: int
    phone_number: str


class CheckoutOrchestrator:
    """
    Runs one checkout attempt end to end.

    Args:
        database: Store handle
        gateway: MpesaClient or MockMpesaGateway
        settings: Application settings
    """

    def __init__(self, database: Database, gateway, settings: Settings):
        self.database = database
        self.gateway = gateway
        self.settings = settings

    async def checkout(self, user_id: str, request: CheckoutRequest) -> CheckoutResult:
        """
        Execute checkout.

        Raises:
            ProductNotFoundError / InsufficientStockError: nothing persisted
            GatewayAuthError / GatewayUnreachableError: reservation released
            GatewayRejectedError: reservation released, gateway description surfaced
            ReservationExpiredError: sweep released the reservation first
        """
        reservation = await self._reserve(user_id, request)

        try:
            access_token = await self.gateway.authorize()
            result: InitiationResult = await self.gateway.initiate_payment(
                access_token,
                InitiationRequest(
                    amount_cents=reservation.amount_cents,
                    phone_number=reservation.phone_number,
                    account_reference=f"ORDER_{reservation.order_id}",
                ),
            )
        except Exception as e:
            logger.warning(f"Gateway step failed for order {reservation.order_id}: {e}")
            await self._release(reservation)
            raise

        if not result.accepted:
            logger.warning(
                f"M-Pesa rejected STK push for order {reservation.order_id}: "
                f"{result.response_code} {result.response_description}"
            )
            await self._release(reservation)
            raise GatewayRejectedError(
                result.response_description or "Failed to initiate M-Pesa payment",
                details={"response_code": result.response_code}
            )

        await self._confirm(reservation, result)

        logger.info(
            f"Checkout complete: order={reservation.order_id}, payment={reservation.payment_id}, "
            f"checkout_request_id={result.correlation_id}"
        )
        return CheckoutResult(
            message=CHECK_PHONE_MESSAGE,
            order_id=reservation.order_id,
            payment_id=reservation.payment_id,
            correlation_id=result.correlation_id,
        )

    # ========================================================================
    # Phases
    # ========================================================================

    async def _reserve(self, user_id: str, request: CheckoutRequest) -> Reservation:
        async with self.database.transaction() as db:
            lines = await inventory_service.load_cart_products(db, request.cart)
            order = await order_service.create_order(db, user_id, request, lines)
            for line, product in lines:
                await inventory_service.reserve_stock(db, product.id, line.quantity)
            payment = await payment_service.create_payment(
                db, order.id, order.total_cents, request.phone_number
            )
            reservation = Reservation(
                order_id=order.id,
                payment_id=payment.id,
                amount_cents=order.total_cents,
                phone_number=request.phone_number,
            )

        logger.info(f"Reserved stock for order {reservation.order_id} ({len(lines)} lines)")
        return reservation

    async def _confirm(self, reservation: Reservation, result: InitiationResult) -> None:
        async with self.database.transaction() as db:
            confirmed = await payment_service.confirm_initiation(
                db, reservation.payment_id, result.correlation_id, result.response
            )
            if not confirmed:
                # Customer has a prompt on their phone; keep the id so its callback can recover the order
                await payment_service.attach_late_correlation(
                    db, reservation.payment_id, result.correlation_id, result.response
                )

        if not confirmed:
            logger.error(
                f"Reservation for order {reservation.order_id} expired before confirmation; "
                f"checkout_request_id={result.correlation_id} kept on failed payment {reservation.payment_id}"
            )
            raise ReservationExpiredError(
                "Checkout took too long and the reservation was released. Please try again.",
                details={"order_id": reservation.order_id, "payment_id": reservation.payment_id}
            )

    async def _release(self, reservation: Reservation) -> None:
        """
        Undo phase 1 as if it never committed.

        Guarded on the payment still being 'initiated' so the sweep and this
        path cannot both restore stock.
        """
        async with self.database.transaction() as db:
            if not await payment_service.delete_initiated_payment(db, reservation.payment_id):
                logger.info(f"Reservation for order {reservation.order_id} already released")
                return
            await inventory_service.restore_order_items(db, reservation.order_id)
            await order_service.delete_order(db, reservation.order_id)

        logger.info(f"Released reservation for order {reservation.order_id}")
