"""
Payment Status Poller

Consumer-side loop covering a delayed or lost M-Pesa callback: ask for the
payment status at a fixed interval until it is terminal or the attempts run
out. Running out is reported as PollTimeoutError, which is not a payment
failure; the order keeps whatever state the store holds.
"""
import asyncio
import logging
from typing import Awaitable, Callable

from ..exceptions import PollTimeoutError
from ..models.payments import PaymentSnapshot

logger = logging.getLogger(__name__)

FetchStatus = Callable[[], Awaitable[PaymentSnapshot]]
Sleep = Callable[[float], Awaitable[None]]


class PaymentStatusPoller:
    """
    Bounded polling loop.

    Args:
        fetch_status: Coroutine returning the current PaymentSnapshot
        interval_seconds: Delay after each non-terminal attempt
        max_attempts: Upper bound on fetches
        sleep: Injected for tests

    Cancelling the task running poll() stops it between attempts.
    """

    def __init__(
        self,
        fetch_status: FetchStatus,
        interval_seconds: float = 3.0,
        max_attempts: int = 15,
        sleep: Sleep = asyncio.sleep
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.fetch_status = fetch_status
        self.interval_seconds = interval_seconds
        self.max_attempts = max_attempts
        self.sleep = sleep
        self.attempts = 0

    async def poll(self) -> PaymentSnapshot:
        """
        Returns:
            The first snapshot in a terminal status (completed or failed)

        Raises:
            PollTimeoutError: No terminal status within max_attempts
        """
        self.attempts = 0
        last_snapshot = None

        while self.attempts < self.max_attempts:
            self.attempts += 1
            try:
                snapshot = await self.fetch_status()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # A failed check counts as an attempt; keep going
                logger.warning(f"Payment status check {self.attempts}/{self.max_attempts} failed: {e}")
            else:
                last_snapshot = snapshot
                if snapshot.is_terminal:
                    logger.info(f"Payment {snapshot.id} reached {snapshot.status} after {self.attempts} checks")
                    return snapshot

            if self.attempts < self.max_attempts:
                await self.sleep(self.interval_seconds)

        raise PollTimeoutError(
            "Payment status check timed out. Please check your order history for updates.",
            details={
                "attempts": self.attempts,
                "last_status": last_snapshot.status if last_snapshot else None,
            }
        )
