"""
Consumer-side payment status polling.
"""
from .poller import PaymentStatusPoller
from .status_client import PaymentStatusClient, poll_payment_status

__all__ = ["PaymentStatusPoller", "PaymentStatusClient", "poll_payment_status"]
