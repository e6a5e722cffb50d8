#!/usr/bin/env python3
"""
Settlement executor for WickGuard.

Given a freshly detected WickEvent, pays out every policy that is active and
unexpired at call time. Each policy is handled independently:

    submit executePayout -> wait for confirmation -> record Payout -> claim Policy

A rejection or ledger failure for one policy is logged and reported in its
SettlementOutcome; it never stops the others and is not retried within the
call. Writes from the same signer are serialized through ledger.signer_lock so
nonce allocation and send cannot interleave, even with max_concurrency > 1.

The Payout row and the active->claimed transition are both idempotent at the
storage layer, so the reconciler may observe the same settlement at any time.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from config_env import ExecutorConfig
from ledger.base import LedgerAdapter, LedgerError, LedgerTimeoutError, signer_lock
from logging_utils import get_logger, short_ref
from wickguard_db import PAYOUT_SOURCE_EXECUTOR, Policy, WickEvent, WickGuardDB


OUTCOME_SETTLED = "settled"
OUTCOME_REJECTED = "rejected"
OUTCOME_FAILED = "failed"


@dataclass
class SettlementOutcome:
    """Result of settling one policy against one wick event."""
    policy_id: int
    holder: str
    status: str
    settlement_ref: Optional[str] = None
    finalized_height: Optional[int] = None
    payout_created: bool = False
    policy_claimed: bool = False
    error: str = ""

    @property
    def success(self) -> bool:
        return self.status == OUTCOME_SETTLED


def detection_ref_for(event: WickEvent) -> str:
    """Human-traceable reference passed on-chain with the payout."""
    stamp = datetime.fromtimestamp(float(event.timestamp), tz=timezone.utc).strftime("%Y%m%d%H%M%S")
    return f"wick_{event.id}_{stamp}"


class SettlementExecutor:
    """Turns wick events into on-ledger payouts for eligible policies."""

    def __init__(
        self,
        db: WickGuardDB,
        ledger: LedgerAdapter,
        config: Optional[ExecutorConfig] = None,
    ):
        self.db = db
        self.ledger = ledger
        self.config = config or ExecutorConfig()
        self.log = get_logger("executor")
        self._semaphore: Optional[asyncio.Semaphore] = None

    async def execute(self, event: WickEvent) -> List[SettlementOutcome]:
        """Settle all eligible policies for ``event``. Returns one outcome per policy."""
        policies = self.db.get_eligible_policies(now=time.time())
        if not policies:
            self.log.info(f"Wick event {event.id}: no eligible policies")
            return []

        detection_ref = detection_ref_for(event)
        self.log.info(
            f"Wick event {event.id}: settling {len(policies)} eligible policies ({detection_ref})"
        )

        if self.config.max_concurrency <= 1:
            outcomes = [await self._settle_policy(event, policy, detection_ref) for policy in policies]
        else:
            if self._semaphore is None:
                self._semaphore = asyncio.Semaphore(int(self.config.max_concurrency))
            outcomes = list(await asyncio.gather(
                *(self._settle_bounded(event, policy, detection_ref) for policy in policies)
            ))

        settled = sum(1 for o in outcomes if o.success)
        self.log.info(
            f"Wick event {event.id}: {settled} settled, {len(outcomes) - settled} not settled"
        )
        return outcomes

    async def _settle_bounded(self, event: WickEvent, policy: Policy, detection_ref: str) -> SettlementOutcome:
        async with self._semaphore:
            return await self._settle_policy(event, policy, detection_ref)

    async def _settle_policy(self, event: WickEvent, policy: Policy, detection_ref: str) -> SettlementOutcome:
        outcome = SettlementOutcome(
            policy_id=int(policy.id),
            holder=policy.holder_address,
            status=OUTCOME_FAILED,
        )
        try:
            async with signer_lock(self.ledger.signer_address):
                settlement_ref = await self.ledger.submit_settlement(
                    policy.holder_address, policy.policy_ref, detection_ref
                )
            outcome.settlement_ref = settlement_ref

            confirmation = await self.ledger.wait_for_confirmation(
                settlement_ref, timeout=float(self.config.confirmation_timeout_sec)
            )
        except LedgerTimeoutError as e:
            outcome.error = f"confirmation timeout: {e}"
            self.log.warning(
                f"Policy {policy.id}: settlement {short_ref(outcome.settlement_ref)} not confirmed: {e}"
            )
            return outcome
        except LedgerError as e:
            outcome.error = str(e)
            self.log.error(f"Policy {policy.id}: settlement failed: {e}")
            return outcome
        except Exception as e:
            outcome.error = f"{type(e).__name__}: {e}"
            self.log.error(f"Policy {policy.id}: unexpected settlement error: {outcome.error}")
            return outcome

        outcome.finalized_height = confirmation.finalized_height
        if not confirmation.success:
            outcome.status = OUTCOME_REJECTED
            outcome.error = confirmation.error or "rejected"
            self.log.warning(
                f"Policy {policy.id}: settlement {short_ref(settlement_ref)} rejected ({outcome.error})"
            )
            return outcome

        try:
            outcome.payout_created = self.db.insert_payout(
                settlement_ref=settlement_ref,
                holder_address=policy.holder_address,
                amount=policy.coverage_amount,
                policy_id=policy.id,
                event_id=event.id,
                block_height=confirmation.finalized_height,
                source=PAYOUT_SOURCE_EXECUTOR,
            )
            outcome.policy_claimed = self.db.claim_policy(policy.id, settlement_ref)
            if not outcome.policy_claimed:
                # Reconciler got there first; make sure the ref is attached.
                self.db.backfill_settlement_ref(policy.id, settlement_ref)
        except Exception as e:
            # Confirmed on-ledger; the reconciler will record it on its next pass.
            outcome.status = OUTCOME_SETTLED
            outcome.error = f"local record failed: {e}"
            self.log.error(
                f"Policy {policy.id}: settlement {short_ref(settlement_ref)} confirmed "
                f"but local record failed: {e}"
            )
            return outcome

        outcome.status = OUTCOME_SETTLED
        self.log.info(
            f"PAYOUT {policy.coverage_amount} -> {short_ref(policy.holder_address)} "
            f"(policy {policy.id}, tx {short_ref(settlement_ref)}, block {confirmation.finalized_height})"
        )
        return outcome
