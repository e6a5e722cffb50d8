#!/usr/bin/env python3
"""
Ledger reconciler for WickGuard.

Keeps the local store consistent with the ledger event log:
- PolicyPurchased -> insert-or-ignore a Policy keyed by its ledger policy ref
- PayoutExecuted  -> insert-or-ignore a Payout keyed by tx ref, claim the Policy

Progress is tracked by a per-contract checkpoint (last fully synced height).
Each tick fetches (checkpoint, head] in chunks no larger than the adapter's
max_block_range. The checkpoint advances to head only when every chunk and
every entry was processed without error; otherwise the whole range is fetched
again next tick, which is safe because every write is idempotent.

Settlement -> policy resolution prefers the policy ref carried by the event.
When the ref is unknown locally it falls back to the holder's most recent
active policy, which is ambiguous for holders with several active policies.
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Optional

from config_env import ReconcilerConfig
from ledger.base import (
    EVENT_KIND_PURCHASE,
    EVENT_KIND_SETTLEMENT,
    LedgerAdapter,
    LedgerError,
    LedgerEvent,
    LedgerRateLimitError,
)
from logging_utils import get_logger, short_ref
from policy_status import POLICY_STATUS_CLAIMED, can_transition_policy_status
from wickguard_db import PAYOUT_SOURCE_RECONCILER, Policy, WickGuardDB


RECONCILE_JITTER_SEC = 2.0


@dataclass
class ReconcileResult:
    """Summary of one reconciliation tick."""
    from_height: int = 0
    to_height: int = 0
    events_seen: int = 0
    policies_created: int = 0
    payouts_created: int = 0
    policies_claimed: int = 0
    unlinked_payouts: int = 0
    policies_expired: int = 0
    errors: int = 0
    checkpoint_advanced: bool = False
    skipped: bool = False


class LedgerReconciler:
    """Polls the ledger event log and merges it into the local store."""

    DEFAULT_BACKOFF_BASE_SECONDS = 5.0
    DEFAULT_BACKOFF_MAX_SECONDS = 300.0

    def __init__(
        self,
        db: WickGuardDB,
        ledger: LedgerAdapter,
        config: Optional[ReconcilerConfig] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.config = config or ReconcilerConfig()
        self.log = get_logger(f"reconciler.{short_ref(ledger.contract_id)}")
        self._running = False
        self._wakeup = asyncio.Event()
        self._backoff_base_seconds = float(self.DEFAULT_BACKOFF_BASE_SECONDS)
        self._backoff_max_seconds = float(self.DEFAULT_BACKOFF_MAX_SECONDS)
        self._backoff_seconds = 0.0
        self._backoff_until = 0.0

    @property
    def contract_id(self) -> str:
        return self.ledger.contract_id

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start reconciliation loop."""
        self._running = True
        self.log.info(f"Starting ledger reconciliation loop ({self.config.interval_sec}s interval)")
        while self._running:
            try:
                await self._reconcile_cycle()
            except Exception as e:
                self.log.error(f"Reconciliation error: {e}")
            if not self._running:
                break
            sleep_for = float(self.config.interval_sec)
            if RECONCILE_JITTER_SEC > 0:
                sleep_for += random.uniform(0.0, RECONCILE_JITTER_SEC)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=sleep_for)
            except asyncio.TimeoutError:
                pass
        self.log.info("Ledger reconciler stopped")

    def stop(self) -> None:
        """Stop reconciliation loop; an in-flight tick finishes."""
        self._running = False
        self._wakeup.set()

    async def reconcile_now(self) -> ReconcileResult:
        """Run a single reconciliation tick immediately."""
        return await self._reconcile_cycle()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------

    async def _reconcile_cycle(self) -> ReconcileResult:
        result = ReconcileResult()

        now = time.time()
        if self._backoff_until > now:
            self.log.warning(
                f"Rate limit backoff active; skipping tick for {self._backoff_until - now:.1f}s"
            )
            result.skipped = True
            return result

        try:
            head = int(await self.ledger.current_height())
        except LedgerRateLimitError as e:
            self._apply_backoff(e)
            result.skipped = True
            return result
        except LedgerError as e:
            self.log.warning(f"Could not read ledger height; retrying next tick: {e}")
            result.errors += 1
            return result

        last = self.db.get_checkpoint(self.contract_id)
        if last is None:
            last = max(0, head - int(self.config.lookback_blocks))
            last = self.db.advance_checkpoint(self.contract_id, last)
            self.log.info(f"Seeded checkpoint at height {last} (head={head})")

        if head <= last:
            self.log.debug(f"Up to date at height {last}")
            result.from_height = result.to_height = last
            self._sweep_expired(result)
            return result

        result.from_height = last + 1
        result.to_height = head
        chunk = max(1, int(self.ledger.max_block_range))

        start = last + 1
        while start <= head:
            end = min(head, start + chunk - 1)
            try:
                events = await self.ledger.fetch_events(start, end)
            except LedgerRateLimitError as e:
                self._apply_backoff(e)
                result.errors += 1
                break
            except Exception as e:
                self.log.error(f"Failed to fetch events {start}-{end}: {e}")
                result.errors += 1
                break

            for event in events:
                result.events_seen += 1
                try:
                    self._dispatch(event, result)
                except Exception as e:
                    result.errors += 1
                    self.log.error(
                        f"Failed to apply {event.kind} at block {event.block_height} "
                        f"(tx {short_ref(event.tx_ref)}): {e}"
                    )
            start = end + 1

        if result.errors:
            self.log.warning(
                f"Range {result.from_height}-{head} had {result.errors} error(s); "
                f"checkpoint stays at {last}"
            )
            return result

        self._reset_backoff()
        self.db.advance_checkpoint(self.contract_id, head)
        result.checkpoint_advanced = True
        # Only after a clean merge, so settlements logged before expiry still claim.
        self._sweep_expired(result)
        if result.events_seen:
            self.log.info(
                f"Synced {result.from_height}-{head}: {result.events_seen} events, "
                f"{result.policies_created} new policies, {result.payouts_created} new payouts"
            )
        return result

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _sweep_expired(self, result: ReconcileResult) -> None:
        if not self.config.expiry_sweep:
            return
        result.policies_expired = self.db.expire_policies(now=time.time())
        if result.policies_expired:
            self.log.info(f"Expired {result.policies_expired} policies past their coverage window")

    def _dispatch(self, event: LedgerEvent, result: ReconcileResult) -> None:
        if event.kind == EVENT_KIND_PURCHASE:
            self._apply_purchase(event, result)
        elif event.kind == EVENT_KIND_SETTLEMENT:
            self._apply_settlement(event, result)
        else:
            self.log.debug(f"Skipping unknown ledger event kind {event.kind!r}")

    def _apply_purchase(self, event: LedgerEvent, result: ReconcileResult) -> None:
        if not event.policy_ref:
            raise ValueError("purchase event without policy ref")
        purchase_time = float(event.block_time) if event.block_time is not None else time.time()
        created = self.db.upsert_policy_from_purchase(
            policy_ref=str(event.policy_ref),
            holder_address=event.holder,
            premium=event.premium if event.premium is not None else 0,
            coverage_amount=event.amount,
            purchase_time=purchase_time,
            expiry_time=float(event.expiry_time or 0),
            purchase_tx_ref=event.tx_ref or None,
            purchase_block=event.block_height,
        )
        if created:
            result.policies_created += 1
            self.log.info(
                f"Policy {event.policy_ref} purchased by {short_ref(event.holder)}: "
                f"coverage={event.amount} (block {event.block_height})"
            )

    def _resolve_policy(self, event: LedgerEvent) -> Optional[Policy]:
        if event.policy_ref:
            policy = self.db.get_policy_by_ref(str(event.policy_ref))
            if policy is not None:
                return policy
        return self.db.find_latest_active_policy_for_holder(event.holder)

    def _apply_settlement(self, event: LedgerEvent, result: ReconcileResult) -> None:
        if not event.tx_ref:
            raise ValueError("settlement event without tx ref")
        policy = self._resolve_policy(event)
        policy_id = policy.id if policy is not None else None
        if policy is None:
            result.unlinked_payouts += 1
            self.log.warning(
                f"Settlement {short_ref(event.tx_ref)} for {short_ref(event.holder)} "
                f"has no matching local policy (ref={event.policy_ref}); recording unlinked"
            )

        created = self.db.insert_payout(
            settlement_ref=event.tx_ref,
            holder_address=event.holder,
            amount=event.amount,
            policy_id=policy_id,
            block_height=event.block_height,
            source=PAYOUT_SOURCE_RECONCILER,
        )
        if created:
            result.payouts_created += 1

        if policy_id is None:
            return
        if can_transition_policy_status(policy.status, POLICY_STATUS_CLAIMED) and self.db.claim_policy(
            policy_id, event.tx_ref
        ):
            result.policies_claimed += 1
            self.log.info(f"Policy {policy_id} claimed via ledger settlement {short_ref(event.tx_ref)}")
        else:
            self.db.backfill_settlement_ref(policy_id, event.tx_ref)

    # ------------------------------------------------------------------
    # Backoff
    # ------------------------------------------------------------------

    def _apply_backoff(self, exc: Exception) -> None:
        """Apply exponential backoff with jitter for rate limits."""
        if self._backoff_seconds <= 0:
            next_base = self._backoff_base_seconds
        else:
            next_base = min(self._backoff_seconds * 2, self._backoff_max_seconds)
        self._backoff_seconds = next_base
        jitter = random.uniform(0.5, 1.0)
        delay = min(self._backoff_max_seconds, next_base * jitter)
        self._backoff_until = time.time() + delay
        self.log.warning(
            f"Rate limited by ledger provider ({exc}); backing off {delay:.1f}s (base={next_base:.1f}s)"
        )

    def _reset_backoff(self) -> None:
        """Reset backoff after a clean tick."""
        self._backoff_seconds = 0.0
        self._backoff_until = 0.0
