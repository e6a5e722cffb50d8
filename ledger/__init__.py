"""Ledger adapters."""

from .base import (
    Confirmation,
    EVENT_KIND_PURCHASE,
    EVENT_KIND_SETTLEMENT,
    LedgerAdapter,
    LedgerError,
    LedgerEvent,
    LedgerRateLimitError,
    LedgerTimeoutError,
    LedgerTransientError,
    signer_lock,
)
from .evm_adapter import EvmLedgerAdapter

__all__ = [
    "Confirmation",
    "EVENT_KIND_PURCHASE",
    "EVENT_KIND_SETTLEMENT",
    "LedgerAdapter",
    "LedgerError",
    "LedgerEvent",
    "LedgerRateLimitError",
    "LedgerTimeoutError",
    "LedgerTransientError",
    "signer_lock",
    "EvmLedgerAdapter",
]
