"""
Payment Service

Creates payment records and moves them through their lifecycle:
initiated -> pending -> completed | failed
failed -> completed only when the gateway reports a payment that the sweep or
an operator had already given up on

Invariants:
- correlation_id is written once and never changed, normally on
  initiated -> pending
- at most one transition out of the open states per payment; the affected row
  count of the conditional update tells the caller whether it won
"""
import json
import logging
import uuid
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db.models import PaymentModel, utcnow
from ..models.payments import (
    CallbackPayload,
    InitiationResponse,
    OPEN_STATUSES,
    Payment,
    PaymentSnapshot,
    gateway_metadata_adapter
)

logger = logging.getLogger(__name__)


# ============================================================================
# Payment Creation
# ============================================================================

async def create_payment(
    db: AsyncSession,
    order_id: str,
    amount_cents: int,
    phone_number: str
) -> PaymentModel:
    """
    Insert a payment in 'initiated' state for a freshly created order.

    Args:
        db: Database session (inside an open transaction)
        order_id: Owning order
        amount_cents: Must equal the order total
        phone_number: Payer MSISDN
    """
    payment_id = f"pay_{uuid.uuid4().hex[:16]}"
    now = utcnow()

    payment = PaymentModel(
        id=payment_id,
        order_id=order_id,
        payment_method="mpesa",
        amount_cents=amount_cents,
        correlation_id=None,
        phone_number=phone_number,
        status="initiated",
        created_at=now,
        updated_at=now,
    )
    db.add(payment)
    await db.flush()

    logger.info(f"Created payment {payment_id} for order {order_id}: amount_cents={amount_cents}")
    return payment


async def confirm_initiation(
    db: AsyncSession,
    payment_id: str,
    correlation_id: str,
    response: InitiationResponse
) -> bool:
    """
    initiated -> pending, recording the CheckoutRequestID.

    Returns:
        False if the payment had already left 'initiated' (swept)
    """
    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.status == "initiated")
        .values(
            status="pending",
            correlation_id=correlation_id,
            initiation_response=_dump(response),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def delete_initiated_payment(db: AsyncSession, payment_id: str) -> bool:
    """
    Delete a payment that never reached the gateway successfully.

    Returns:
        False if the payment was no longer 'initiated'
    """
    result = await db.execute(
        delete(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.status == "initiated")
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def mark_terminal(
    db: AsyncSession,
    payment_id: str,
    status: str,
    result_description: Optional[str] = None,
    callback_payload: Optional[CallbackPayload] = None
) -> bool:
    """
    Move an open payment to 'completed' or 'failed'.

    Returns:
        True if this call performed the transition, False if the payment was
        already terminal
    """
    if status not in ("completed", "failed"):
        raise ValueError(f"Not a terminal payment status: {status}")

    values = {
        "status": status,
        "result_description": result_description,
        "updated_at": utcnow(),
    }
    if callback_payload is not None:
        values["callback_payload"] = _dump(callback_payload)

    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.status.in_(OPEN_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def attach_late_correlation(
    db: AsyncSession,
    payment_id: str,
    correlation_id: str,
    response: InitiationResponse
) -> bool:
    """
    Record the CheckoutRequestID on a payment the sweep failed before confirm.

    The STK prompt is already on the customer's phone; storing the id lets
    its callback find the payment.
    """
    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.correlation_id.is_(None))
        .values(
            correlation_id=correlation_id,
            initiation_response=_dump(response),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def record_callback_payload(db: AsyncSession, payment_id: str, callback_payload: CallbackPayload) -> bool:
    """Store a callback on a terminal payment that has none yet; status is untouched."""
    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.callback_payload.is_(None))
        .values(callback_payload=_dump(callback_payload), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def revive_failed_payment(
    db: AsyncSession,
    payment_id: str,
    result_description: Optional[str] = None,
    callback_payload: Optional[CallbackPayload] = None
) -> bool:
    """
    failed -> completed, for a payment failed on timeout or by an operator
    that the gateway later reports as paid.

    Returns:
        False if the payment was not 'failed'
    """
    values = {
        "status": "completed",
        "result_description": result_description,
        "updated_at": utcnow(),
    }
    if callback_payload is not None:
        values["callback_payload"] = _dump(callback_payload)

    result = await db.execute(
        update(PaymentModel)
        .where(PaymentModel.id == payment_id, PaymentModel.status == "failed")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ============================================================================
# Payment Retrieval
# ============================================================================

async def get_payment_row(db: AsyncSession, payment_id: str) -> Optional[PaymentModel]:
    result = await db.execute(
        select(PaymentModel)
        .where(PaymentModel.id == payment_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_payment_by_correlation_id(db: AsyncSession, correlation_id: str) -> Optional[PaymentModel]:
    result = await db.execute(
        select(PaymentModel)
        .where(PaymentModel.correlation_id == correlation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_payment(db: AsyncSession, payment_id: str) -> Optional[Payment]:
    row = await get_payment_row(db, payment_id)
    return to_payment(row) if row else None


def to_payment(row: PaymentModel) -> Payment:
    """Convert ORM row to the Pydantic model, decoding gateway metadata blobs."""
    initiation_response = None
    callback_payload = None
    for blob in (row.initiation_response, row.callback_payload):
        if not blob:
            continue
        metadata = gateway_metadata_adapter.validate_json(blob)
        if isinstance(metadata, InitiationResponse):
            initiation_response = metadata
        elif isinstance(metadata, CallbackPayload):
            callback_payload = metadata

    return Payment(
        id=row.id,
        order_id=row.order_id,
        payment_method=row.payment_method,
        amount_cents=row.amount_cents,
        correlation_id=row.correlation_id,
        phone_number=row.phone_number,
        status=row.status,
        initiation_response=initiation_response,
        callback_payload=callback_payload,
        result_description=row.result_description,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def to_snapshot(row: PaymentModel) -> PaymentSnapshot:
    return PaymentSnapshot(
        id=row.id,
        status=row.status,
        amount=row.amount_cents / 100,
        method=row.payment_method,
        correlation_id=row.correlation_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _dump(metadata) -> str:
    return json.dumps(metadata.model_dump(mode="json"))
