"""
Payment gateway package.

Exports the Daraja client and its request/result types.
"""
from .mpesa_client import (
    MpesaClient,
    InitiationRequest,
    InitiationResult,
    generate_password,
    generate_timestamp,
    to_whole_units
)

__all__ = [
    "MpesaClient",
    "InitiationRequest",
    "InitiationResult",
    "generate_password",
    "generate_timestamp",
    "to_whole_units",
]
