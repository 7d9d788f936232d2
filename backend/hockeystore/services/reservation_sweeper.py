"""
Reservation Sweeper

Timeout path for payments that will not resolve on their own:
- 'initiated' past reservation_timeout_seconds: checkout never confirmed
  (process died or gateway hung between the two phases)
- 'pending' past pending_payment_timeout_seconds: the callback never came

Both are failed through apply_payment_outcome, which restores stock exactly
once even if a callback races the sweep.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import select

from ..config import Settings
from ..db.init_db import Database
from ..db.models import PaymentModel, utcnow
from . import payment_service
from .callback_service import apply_payment_outcome

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired_reservations: List[str]
    expired_pending: List[str]

    @property
    def total(self) -> int:
        return len(self.expired_reservations) + len(self.expired_pending)


async def _find_stale(database: Database, status: str, cutoff: datetime) -> List[str]:
    async with database.session() as db:
        result = await db.execute(
            select(PaymentModel.id)
            .where(PaymentModel.status == status, PaymentModel.created_at < cutoff)
            .order_by(PaymentModel.created_at)
        )
        return list(result.scalars().all())


async def _expire(database: Database, payment_id: str, expected_status: str, reason: str) -> bool:
    async with database.transaction() as db:
        payment = await payment_service.get_payment_row(db, payment_id)
        if payment is None or payment.status != expected_status:
            return False
        return await apply_payment_outcome(db, payment, succeeded=False, result_description=reason)


async def sweep_stale_payments(
    database: Database,
    settings: Settings,
    now: Optional[datetime] = None
) -> SweepResult:
    """
    Fail and compensate stale payments.

    Each payment is handled in its own transaction so one bad row does not
    hold back the rest.

    Args:
        database: Store handle
        settings: Timeouts
        now: Naive UTC reference time (defaults to the current time)
    """
    now = now or utcnow()
    result = SweepResult(expired_reservations=[], expired_pending=[])

    cutoff = now - timedelta(seconds=settings.reservation_timeout_seconds)
    for payment_id in await _find_stale(database, "initiated", cutoff):
        if await _expire(database, payment_id, "initiated", "reservation expired before gateway confirmation"):
            result.expired_reservations.append(payment_id)

    if settings.pending_payment_timeout_seconds is not None:
        cutoff = now - timedelta(seconds=settings.pending_payment_timeout_seconds)
        for payment_id in await _find_stale(database, "pending", cutoff):
            if await _expire(database, payment_id, "pending", "no payment callback received before timeout"):
                result.expired_pending.append(payment_id)

    if result.total:
        logger.info(
            f"Sweep released {len(result.expired_reservations)} stale reservations and "
            f"expired {len(result.expired_pending)} pending payments"
        )
    else:
        logger.debug("Sweep found nothing to release")

    return result
