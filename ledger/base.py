#!/usr/bin/env python3
"""
Shared ledger adapter interface, dataclasses and error taxonomy.

The ledger is the external system of record for policy purchases and
settlements. WickGuard needs four things from it:
- submit a settlement (write, requires a signer)
- wait for a submitted settlement to be confirmed
- read the event log over a height range (bounded range per query)
- read the current height
"""

from __future__ import annotations

import abc
import asyncio
import weakref
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional


EVENT_KIND_PURCHASE = "purchase"
EVENT_KIND_SETTLEMENT = "settlement"

DEFAULT_MAX_BLOCK_RANGE = 1000


# ============================================================================
# Errors
# ============================================================================

class LedgerError(Exception):
    """Base class for ledger interaction failures."""


class LedgerTransientError(LedgerError):
    """Network/RPC failure; safe to retry on the next tick."""


class LedgerTimeoutError(LedgerTransientError):
    """Confirmation did not arrive within the allowed wait."""


class LedgerRateLimitError(LedgerTransientError):
    """Provider rejected the request for rate/range limits (HTTP 429 etc)."""


# ============================================================================
# Dataclasses
# ============================================================================

@dataclass
class LedgerEvent:
    """One decoded entry from the ledger event log.

    For purchase events ``amount`` is the coverage amount; premium and expiry
    are carried alongside. For settlement events ``amount`` is the amount paid.
    """
    kind: str
    holder: str
    policy_ref: Optional[str]
    amount: Decimal
    tx_ref: str
    block_height: int
    log_index: int = 0
    premium: Optional[Decimal] = None
    expiry_time: Optional[float] = None
    block_time: Optional[float] = None


@dataclass
class Confirmation:
    """Final status of a submitted settlement."""
    settlement_ref: str
    success: bool
    finalized_height: Optional[int] = None
    error: str = ""


# ============================================================================
# Signer serialization
# ============================================================================

# Locks are loop-bound, so keep one table per running event loop.
_SIGNER_LOCKS: "weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, Dict[str, asyncio.Lock]]" = (
    weakref.WeakKeyDictionary()
)


def signer_lock(address: str) -> asyncio.Lock:
    """Process-wide lock for all write submissions from one signer address."""
    loop = asyncio.get_running_loop()
    locks = _SIGNER_LOCKS.setdefault(loop, {})
    key = str(address or "").strip().lower()
    lock = locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        locks[key] = lock
    return lock


# ============================================================================
# Adapter interface
# ============================================================================

class LedgerAdapter(abc.ABC):
    """Base class for ledger adapters."""

    max_block_range: int = DEFAULT_MAX_BLOCK_RANGE

    def __init__(self, log):
        self.log = log
        self._initialized = False

    @property
    def name(self) -> str:
        return self.__class__.__name__

    @property
    @abc.abstractmethod
    def contract_id(self) -> str:
        """Identifier of the ledger contract (checkpoint key)."""
        raise NotImplementedError

    @property
    @abc.abstractmethod
    def signer_address(self) -> str:
        """Address whose submissions must be serialized."""
        raise NotImplementedError

    @abc.abstractmethod
    async def initialize(self) -> bool:
        """Open connections / load signer. Returns True when ready."""
        raise NotImplementedError

    @abc.abstractmethod
    async def submit_settlement(self, holder: str, policy_ref: str, detection_ref: str) -> str:
        """Sign and submit a settlement. Returns the settlement (tx) ref.

        Raises LedgerError on signing or submission failure.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def wait_for_confirmation(self, settlement_ref: str, timeout: float) -> Confirmation:
        """Block until the settlement is included.

        Raises LedgerTimeoutError if not included within ``timeout`` seconds.
        """
        raise NotImplementedError

    @abc.abstractmethod
    async def fetch_events(self, from_height: int, to_height: int) -> List[LedgerEvent]:
        """Decoded events in [from_height, to_height], ordered by (height, log index)."""
        raise NotImplementedError

    @abc.abstractmethod
    async def current_height(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        """Release connections."""
        return None
