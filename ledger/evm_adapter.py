#!/usr/bin/env python3
"""
EVM ledger adapter: raw JSON-RPC over aiohttp + local eth_account signing.

Contract surface used:
- executePayout(address user, uint256 policyId, string detectionRef)
- event PolicyPurchased(address indexed user, uint256 policyId, uint256 premium,
                        uint256 coverage, uint256 expiryTime)
- event PayoutExecuted(address indexed user, uint256 policyId, uint256 amount)

Token amounts on-chain are integer base units; they are scaled to Decimal
with ``token_decimals`` here so the rest of the pipeline never sees raw ints.

Dry-run mode signs nothing and sends nothing: submissions return a
deterministic synthetic ref and confirm immediately. Log reads still go to
the RPC endpoint when one is configured.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_account import Account
from eth_utils import keccak, to_checksum_address

from config_env import LedgerConfig
from logging_utils import short_ref

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
)


EXECUTE_PAYOUT_SIGNATURE = "executePayout(address,uint256,string)"
POLICY_PURCHASED_SIGNATURE = "PolicyPurchased(address,uint256,uint256,uint256,uint256)"
PAYOUT_EXECUTED_SIGNATURE = "PayoutExecuted(address,uint256,uint256)"

EXECUTE_PAYOUT_SELECTOR = keccak(text=EXECUTE_PAYOUT_SIGNATURE)[:4]
POLICY_PURCHASED_TOPIC = "0x" + keccak(text=POLICY_PURCHASED_SIGNATURE).hex()
PAYOUT_EXECUTED_TOPIC = "0x" + keccak(text=PAYOUT_EXECUTED_SIGNATURE).hex()

# JSON-RPC error codes providers use for "limit exceeded" / "range too large".
_RATE_LIMIT_RPC_CODES = {-32005, 429}
_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "block range", "more than 10000 results")


def _hex_to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    text = str(value or "0")
    return int(text, 16) if text.startswith("0x") else int(text)


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def scale_amount(raw: int, decimals: int) -> Decimal:
    """Integer base units -> Decimal token amount (exact)."""
    return Decimal(int(raw)).scaleb(-int(decimals))


def encode_execute_payout(holder: str, policy_ref: str, detection_ref: str) -> str:
    """ABI-encode executePayout calldata as 0x-hex."""
    args = abi_encode(
        ["address", "uint256", "string"],
        [to_checksum_address(holder), int(policy_ref), str(detection_ref)],
    )
    return "0x" + (EXECUTE_PAYOUT_SELECTOR + args).hex()


def decode_log(raw: Dict[str, Any], token_decimals: int) -> Optional[LedgerEvent]:
    """Decode one eth_getLogs entry. Returns None for events we do not track."""
    topics = raw.get("topics") or []
    if not topics:
        return None
    topic0 = str(topics[0]).lower()
    if len(topics) < 2:
        return None
    holder = "0x" + _strip_0x(str(topics[1]))[-40:]
    data = bytes.fromhex(_strip_0x(str(raw.get("data") or "0x")))
    block_height = _hex_to_int(raw.get("blockNumber"))
    log_index = _hex_to_int(raw.get("logIndex"))
    tx_ref = str(raw.get("transactionHash") or "")

    if topic0 == POLICY_PURCHASED_TOPIC:
        policy_id, premium, coverage, expiry = abi_decode(
            ["uint256", "uint256", "uint256", "uint256"], data
        )
        return LedgerEvent(
            kind=EVENT_KIND_PURCHASE,
            holder=holder.lower(),
            policy_ref=str(policy_id),
            amount=scale_amount(coverage, token_decimals),
            premium=scale_amount(premium, token_decimals),
            expiry_time=float(expiry),
            tx_ref=tx_ref,
            block_height=block_height,
            log_index=log_index,
        )
    if topic0 == PAYOUT_EXECUTED_TOPIC:
        policy_id, amount = abi_decode(["uint256", "uint256"], data)
        return LedgerEvent(
            kind=EVENT_KIND_SETTLEMENT,
            holder=holder.lower(),
            policy_ref=str(policy_id),
            amount=scale_amount(amount, token_decimals),
            tx_ref=tx_ref,
            block_height=block_height,
            log_index=log_index,
        )
    return None


class EvmLedgerAdapter(LedgerAdapter):
    """LedgerAdapter for an EVM insurance-pool contract."""

    def __init__(self, log, config: LedgerConfig):
        super().__init__(log)
        self.config = config
        self.max_block_range = int(config.max_block_range)
        self.dry_run = bool(config.dry_run)
        self._session: Optional[aiohttp.ClientSession] = None
        self._account = None
        self._chain_id: Optional[int] = config.chain_id
        self._next_nonce: Optional[int] = None
        self._request_ids = itertools.count(1)
        self._block_time_cache: Dict[int, float] = {}
        self._dry_run_height = 0

    # ============================================================ identity

    @property
    def contract_id(self) -> str:
        return str(self.config.contract_address or "dry-run").lower()

    @property
    def signer_address(self) -> str:
        if self._account is not None:
            return str(self._account.address)
        return "dry-run-signer"

    # ============================================================ lifecycle

    async def initialize(self) -> bool:
        if self._initialized:
            return True

        if not self.dry_run:
            missing = [
                name for name, value in (
                    ("ledger.rpc_url", self.config.rpc_url),
                    ("ledger.contract_address", self.config.contract_address),
                    ("WICKGUARD_SIGNER_KEY", self.config.signer_key),
                ) if not value
            ]
            if missing:
                raise ValueError(f"Ledger config missing for live mode: {', '.join(missing)}")
            self._account = Account.from_key(self.config.signer_key)

        if self.config.rpc_url:
            connector = aiohttp.TCPConnector(limit=10, keepalive_timeout=30)
            timeout = aiohttp.ClientTimeout(total=float(self.config.request_timeout_sec))
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"},
                connector=connector,
                timeout=timeout,
            )
            if self._chain_id is None and not self.dry_run:
                self._chain_id = _hex_to_int(await self._rpc("eth_chainId", []))

        self._initialized = True
        mode = "DRY RUN" if self.dry_run else "live"
        self.log.info(f"EVM ledger adapter initialized ({mode}, contract={short_ref(self.contract_id)})")
        if self._account is not None:
            self.log.info(f"  Signer: {short_ref(self.signer_address)} chain_id={self._chain_id}")
        return True

    async def close(self) -> None:
        """Close aiohttp session to avoid resource leaks."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    # ============================================================ JSON-RPC

    async def _rpc(self, method: str, params: List[Any]) -> Any:
        if not self._session or self._session.closed:
            raise LedgerError("RPC session not available (not initialized or closed)")

        payload = {"jsonrpc": "2.0", "id": next(self._request_ids), "method": method, "params": params}
        try:
            async with self._session.post(self.config.rpc_url, json=payload) as resp:
                if resp.status == 429:
                    raise LedgerRateLimitError(f"{method}: 429 Too Many Requests")
                if resp.status >= 500:
                    raise LedgerTransientError(f"{method}: HTTP {resp.status}")
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise LedgerTransientError(f"{method}: {e}") from e

        err = (body or {}).get("error")
        if err:
            code = err.get("code") if isinstance(err, dict) else None
            message = err.get("message") if isinstance(err, dict) else str(err)
            lowered = str(message).lower()
            if code in _RATE_LIMIT_RPC_CODES or any(m in lowered for m in _RATE_LIMIT_MARKERS):
                raise LedgerRateLimitError(f"{method}: {message}")
            raise LedgerError(f"{method}: {message} (code={code})")
        return body.get("result")

    # ============================================================ reads

    async def current_height(self) -> int:
        if not self.config.rpc_url:
            return self._dry_run_height
        return _hex_to_int(await self._rpc("eth_blockNumber", []))

    async def _block_time(self, height: int) -> Optional[float]:
        cached = self._block_time_cache.get(height)
        if cached is not None:
            return cached
        block = await self._rpc("eth_getBlockByNumber", [hex(height), False])
        if not block:
            return None
        ts = float(_hex_to_int(block.get("timestamp")))
        if len(self._block_time_cache) > 4096:
            self._block_time_cache.clear()
        self._block_time_cache[height] = ts
        return ts

    async def fetch_events(self, from_height: int, to_height: int) -> List[LedgerEvent]:
        if to_height < from_height:
            return []
        if to_height - from_height + 1 > self.max_block_range:
            raise ValueError(
                f"range {from_height}-{to_height} exceeds provider limit of {self.max_block_range} blocks"
            )
        if not self.config.rpc_url:
            return []

        raw_logs = await self._rpc("eth_getLogs", [{
            "fromBlock": hex(int(from_height)),
            "toBlock": hex(int(to_height)),
            "address": self.config.contract_address,
            "topics": [[POLICY_PURCHASED_TOPIC, PAYOUT_EXECUTED_TOPIC]],
        }])

        events: List[LedgerEvent] = []
        for raw in raw_logs or []:
            if raw.get("removed"):
                continue
            event = decode_log(raw, self.config.token_decimals)
            if event is None:
                continue
            if event.kind == EVENT_KIND_PURCHASE:
                event.block_time = await self._block_time(event.block_height)
            events.append(event)

        events.sort(key=lambda e: (e.block_height, e.log_index))
        return events

    # ============================================================ writes

    async def submit_settlement(self, holder: str, policy_ref: str, detection_ref: str) -> str:
        calldata = encode_execute_payout(holder, policy_ref, detection_ref)

        if self.dry_run:
            ref = "0x" + keccak(text=f"{holder.lower()}:{policy_ref}:{detection_ref}").hex()
            self.log.info(f"[DRY RUN] executePayout({short_ref(holder)}, {policy_ref}) -> {short_ref(ref)}")
            return ref

        pending_nonce = _hex_to_int(
            await self._rpc("eth_getTransactionCount", [self.signer_address, "pending"])
        )
        nonce = max(pending_nonce, self._next_nonce or 0)
        gas_price = _hex_to_int(await self._rpc("eth_gasPrice", []))

        tx = {
            "to": to_checksum_address(self.config.contract_address),
            "data": calldata,
            "value": 0,
            "gas": int(self.config.gas_limit),
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": int(self._chain_id or 0),
        }
        try:
            signed = self._account.sign_transaction(tx)
        except (TypeError, ValueError) as e:
            raise LedgerError(f"failed to sign settlement: {e}") from e

        tx_hash = await self._rpc("eth_sendRawTransaction", ["0x" + bytes(signed.raw_transaction).hex()])
        self._next_nonce = nonce + 1
        self.log.info(
            f"executePayout sent: holder={short_ref(holder)} policy={policy_ref} "
            f"nonce={nonce} tx={short_ref(tx_hash)}"
        )
        return str(tx_hash)

    async def wait_for_confirmation(self, settlement_ref: str, timeout: float) -> Confirmation:
        if self.dry_run:
            return Confirmation(
                settlement_ref=settlement_ref,
                success=True,
                finalized_height=await self.current_height(),
            )

        deadline = time.monotonic() + float(timeout)
        while True:
            try:
                receipt = await self._rpc("eth_getTransactionReceipt", [settlement_ref])
            except LedgerTransientError as e:
                self.log.debug(f"Receipt poll failed for {short_ref(settlement_ref)}: {e}")
                receipt = None

            if receipt:
                success = _hex_to_int(receipt.get("status")) == 1
                return Confirmation(
                    settlement_ref=settlement_ref,
                    success=success,
                    finalized_height=_hex_to_int(receipt.get("blockNumber")),
                    error="" if success else "execution reverted",
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise LedgerTimeoutError(
                    f"no receipt for {settlement_ref} after {float(timeout):.0f}s"
                )
            await asyncio.sleep(min(float(self.config.receipt_poll_sec), remaining))
