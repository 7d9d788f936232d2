"""
Callback Service

Reconciles the asynchronous M-Pesa outcome with the payment, its order and the
stock it reserved.

Guarantees:
- Malformed bodies and unknown CheckoutRequestIDs are rejected without writes
- Payment, order and stock change together in one transaction or not at all
- A payment leaves the open states at most once; duplicate or replayed
  callbacks are acknowledged as no-ops and never restore stock twice
- A payment failed by the sweep or an operator is recovered, not dropped,
  when M-Pesa later reports it paid
"""
import logging
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.init_db import Database
from ..db.models import PaymentModel
from ..exceptions import (
    InsufficientStockError,
    MalformedCallbackError,
    PaymentNotFoundError,
    UnknownPaymentError
)
from ..models.payments import (
    CallbackEnvelope,
    CallbackPayload,
    OPEN_STATUSES,
    PaymentSnapshot,
    gateway_metadata_adapter
)
from . import inventory_service, order_service, payment_service

logger = logging.getLogger(__name__)


# ============================================================================
# Shared Terminal Transition
# ============================================================================

async def apply_payment_outcome(
    db: AsyncSession,
    payment: PaymentModel,
    succeeded: bool,
    result_description: Optional[str] = None,
    callback_payload: Optional[CallbackPayload] = None,
    payer_phone: Optional[str] = None
) -> bool:
    """
    Move a payment to its terminal state and propagate to order and stock.

    Used by the callback, the operator path and the reservation sweep. Must be
    called inside an open transaction.

    Returns:
        True if applied, False if the payment was already terminal (no-op)
    """
    status = "completed" if succeeded else "failed"

    applied = await payment_service.mark_terminal(
        db,
        payment.id,
        status,
        result_description=result_description,
        callback_payload=callback_payload,
    )
    if not applied:
        logger.info(f"Payment {payment.id} already terminal; outcome '{status}' ignored")
        return False

    if succeeded:
        await order_service.mark_paid(db, payment.order_id, phone=payer_phone)
    else:
        await order_service.mark_payment_failed(db, payment.order_id)
        await inventory_service.restore_order_items(db, payment.order_id)

    logger.info(f"Payment {payment.id} -> {status} (order {payment.order_id})")
    return True


def parse_callback(body: Any) -> CallbackPayload:
    """
    Validate the stkCallback envelope.

    Raises:
        MalformedCallbackError: Body is not the expected shape
    """
    if not isinstance(body, dict):
        raise MalformedCallbackError("Invalid callback data")
    try:
        envelope = CallbackEnvelope.model_validate(body)
    except ValidationError as e:
        raise MalformedCallbackError(
            "Invalid callback data",
            details={"errors": e.errors(include_url=False, include_context=False, include_input=False)}
        ) from e
    return envelope.to_payload(raw=body)


def _payer_phone(payload: CallbackPayload) -> Optional[str]:
    value = payload.metadata.get("PhoneNumber")
    if value is None:
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def _can_recover(payment: PaymentModel) -> bool:
    """
    True for a failed payment the gateway never reported as failed: it was
    given up on by the sweep or an operator, or a success callback for it
    could not be applied yet.
    """
    if payment.status != "failed":
        return False
    if not payment.callback_payload:
        return True
    recorded = gateway_metadata_adapter.validate_json(payment.callback_payload)
    return isinstance(recorded, CallbackPayload) and recorded.succeeded


async def recover_payment(
    db: AsyncSession,
    payment: PaymentModel,
    result_description: Optional[str] = None,
    callback_payload: Optional[CallbackPayload] = None,
    payer_phone: Optional[str] = None
) -> bool:
    """
    Complete a payment that was failed before the gateway reported it paid.

    Takes the order's stock again and moves the order from payment_failed to
    paid. Must be called inside an open transaction.

    Returns:
        False if the payment was not 'failed'

    Raises:
        InsufficientStockError: Stock was sold in the meantime; roll back
    """
    revived = await payment_service.revive_failed_payment(
        db,
        payment.id,
        result_description=result_description,
        callback_payload=callback_payload,
    )
    if not revived:
        return False

    await inventory_service.reserve_order_items(db, payment.order_id)
    await order_service.mark_paid(db, payment.order_id, phone=payer_phone, from_status="payment_failed")

    logger.warning(f"Payment {payment.id} recovered: failed -> completed (order {payment.order_id})")
    return True


class CallbackReconciler:
    """
    Applies gateway outcomes to the store.

    Args:
        database: Store handle
    """

    def __init__(self, database: Database):
        self.database = database

    async def handle_callback(self, body: Any) -> bool:
        """
        Process one inbound stkCallback.

        A success callback for a payment already failed by the sweep or an
        operator is a conflict: the order is recovered when its stock can
        still be taken, otherwise the callback is stored for an operator.

        Returns:
            True if this callback changed state, False for an idempotent no-op

        Raises:
            MalformedCallbackError: Body shape invalid, store untouched
            UnknownPaymentError: No payment with that CheckoutRequestID, store untouched
        """
        payload = parse_callback(body)
        correlation_id = payload.checkout_request_id

        async with self.database.session() as db:
            known = await payment_service.get_payment_by_correlation_id(db, correlation_id)
        if known is None:
            logger.warning(f"Callback for unknown CheckoutRequestID {correlation_id}")
            raise UnknownPaymentError(
                "Payment not found",
                details={"checkout_request_id": correlation_id}
            )

        logger.info(
            f"M-Pesa callback for payment {known.id}: ResultCode={payload.result_code} "
            f"ResultDesc={payload.result_desc!r}"
        )
        payer_phone = _payer_phone(payload) if payload.succeeded else None

        try:
            async with self.database.transaction() as db:
                payment = await payment_service.get_payment_row(db, known.id)
                if payment.status in OPEN_STATUSES:
                    return await apply_payment_outcome(
                        db,
                        payment,
                        succeeded=payload.succeeded,
                        result_description=payload.result_desc,
                        callback_payload=payload,
                        payer_phone=payer_phone,
                    )

                if not (payload.succeeded and _can_recover(payment)):
                    logger.info(
                        f"Duplicate callback for payment {payment.id} (status={payment.status}); "
                        f"acknowledged without changes"
                    )
                    return False

                logger.error(
                    f"Conflict: M-Pesa reports payment {payment.id} paid after it was failed "
                    f"({payment.result_description!r}); recovering order {payment.order_id}"
                )
                return await recover_payment(
                    db,
                    payment,
                    result_description=payload.result_desc,
                    callback_payload=payload,
                    payer_phone=payer_phone,
                )
        except InsufficientStockError as e:
            async with self.database.transaction() as db:
                await payment_service.record_callback_payload(db, known.id, payload)
            logger.error(
                f"Payment {known.id} was paid but order {known.order_id} cannot be recovered: "
                f"{e.message}; manual reconciliation required"
            )
            return True

    async def reconcile_manually(self, payment_id: str, succeeded: bool, reason: str) -> PaymentSnapshot:
        """
        Operator resolution for a payment whose callback never arrived.

        Completed payments are left as they are. A failed payment can be
        corrected to completed only if the gateway never reported it failed.

        Raises:
            PaymentNotFoundError: No such payment
            InsufficientStockError: Correction needs stock that is gone
        """
        async with self.database.transaction() as db:
            payment = await payment_service.get_payment_row(db, payment_id)
            if payment is None:
                raise PaymentNotFoundError("Payment not found", details={"payment_id": payment_id})

            if payment.status in OPEN_STATUSES:
                await apply_payment_outcome(
                    db,
                    payment,
                    succeeded=succeeded,
                    result_description=f"manual: {reason}",
                )
            elif succeeded and _can_recover(payment):
                logger.warning(f"Manual correction of failed payment {payment_id}: {reason}")
                await recover_payment(db, payment, result_description=f"manual: {reason}")
            else:
                logger.info(f"Manual reconciliation of {payment_id} skipped: already {payment.status}")

        async with self.database.session() as db:
            row = await payment_service.get_payment_row(db, payment_id)
            return payment_service.to_snapshot(row)
