#!/usr/bin/env python3
"""Tests for settlement execution against a fake ledger."""

import asyncio
import tempfile
import time
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_env import ExecutorConfig
from ledger.base import Confirmation, LedgerAdapter, LedgerError, LedgerTimeoutError
from logging_utils import get_logger
from settlement_executor import (
    OUTCOME_FAILED,
    OUTCOME_REJECTED,
    OUTCOME_SETTLED,
    SettlementExecutor,
    detection_ref_for,
)
from wickguard_db import Candle, WickGuardDB


HOLDER_A = "0xaaaa000000000000000000000000000000000001"
HOLDER_B = "0xbbbb000000000000000000000000000000000002"


class FakeLedger(LedgerAdapter):
    """Scriptable ledger: per-holder behaviour for submit/confirm."""

    def __init__(self, reject=(), submit_fail=(), timeout=(), submit_delay: float = 0.0):
        super().__init__(get_logger("test.ledger"))
        self.reject = set(reject)
        self.submit_fail = set(submit_fail)
        self.timeout = set(timeout)
        self.submit_delay = submit_delay
        self.submissions = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.height = 1000

    @property
    def contract_id(self) -> str:
        return "0xpool"

    @property
    def signer_address(self) -> str:
        return "0xsigner"

    async def initialize(self) -> bool:
        return True

    async def submit_settlement(self, holder, policy_ref, detection_ref):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.submit_delay:
                await asyncio.sleep(self.submit_delay)
            if holder in self.submit_fail:
                raise LedgerError("nonce too low")
            ref = f"0xtx{len(self.submissions) + 1}"
            self.submissions.append((holder, policy_ref, detection_ref, ref))
            return ref
        finally:
            self.in_flight -= 1

    async def wait_for_confirmation(self, settlement_ref, timeout):
        holder = next(s[0] for s in self.submissions if s[3] == settlement_ref)
        if holder in self.timeout:
            raise LedgerTimeoutError(f"no receipt for {settlement_ref}")
        self.height += 1
        if holder in self.reject:
            return Confirmation(settlement_ref=settlement_ref, success=False,
                                finalized_height=self.height, error="execution reverted")
        return Confirmation(settlement_ref=settlement_ref, success=True, finalized_height=self.height)

    async def fetch_events(self, from_height, to_height):
        return []

    async def current_height(self):
        return self.height


def _new_db() -> WickGuardDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return WickGuardDB(db_path)


def _wick_event(db: WickGuardDB):
    candle = Candle(
        symbol="BTCUSDT",
        timestamp=1_700_000_040.0,
        open=Decimal("44000"),
        high=Decimal("48000"),
        low=Decimal("39500"),
        close=Decimal("43900"),
    )
    db.insert_candle(candle)
    event, _ = db.insert_wick_event(candle, Decimal("0.0118"), Decimal("0.1936"))
    return event


def _add_policy(db: WickGuardDB, ref: str, holder: str, coverage: str = "250", expiry_offset: float = 3600.0) -> int:
    now = time.time()
    db.upsert_policy_from_purchase(
        policy_ref=ref,
        holder_address=holder,
        premium=Decimal("10"),
        coverage_amount=Decimal(coverage),
        purchase_time=now - 10,
        expiry_time=now + expiry_offset,
    )
    return db.get_policy_by_ref(ref).id


def test_one_rejection_one_success() -> None:
    db = _new_db()
    event = _wick_event(db)
    rejected_id = _add_policy(db, "1", HOLDER_A)
    settled_id = _add_policy(db, "2", HOLDER_B, coverage="500")
    ledger = FakeLedger(reject={HOLDER_A})

    outcomes = asyncio.run(SettlementExecutor(db, ledger).execute(event))

    by_policy = {o.policy_id: o for o in outcomes}
    assert by_policy[rejected_id].status == OUTCOME_REJECTED
    assert by_policy[rejected_id].payout_created is False
    assert by_policy[settled_id].status == OUTCOME_SETTLED
    assert by_policy[settled_id].payout_created is True
    assert by_policy[settled_id].policy_claimed is True

    assert db.get_policy(rejected_id).status == "active"
    claimed = db.get_policy(settled_id)
    assert claimed.status == "claimed"
    assert claimed.settlement_ref == by_policy[settled_id].settlement_ref

    payouts = db.get_recent_payouts()
    assert len(payouts) == 1
    assert payouts[0].policy_id == settled_id
    assert payouts[0].event_id == event.id
    assert payouts[0].amount == Decimal("500")
    assert payouts[0].block_height == by_policy[settled_id].finalized_height


def test_detection_ref_passed_to_ledger() -> None:
    db = _new_db()
    event = _wick_event(db)
    _add_policy(db, "9", HOLDER_A)
    ledger = FakeLedger()

    asyncio.run(SettlementExecutor(db, ledger).execute(event))

    holder, policy_ref, detection_ref, _ = ledger.submissions[0]
    assert holder == HOLDER_A
    assert policy_ref == "9"
    assert detection_ref == detection_ref_for(event)
    assert detection_ref == f"wick_{event.id}_20231114221400"


def test_no_eligible_policies_is_a_noop() -> None:
    db = _new_db()
    event = _wick_event(db)
    _add_policy(db, "1", HOLDER_A, expiry_offset=-5)
    ledger = FakeLedger()

    assert asyncio.run(SettlementExecutor(db, ledger).execute(event)) == []
    assert ledger.submissions == []


def test_submission_error_is_isolated() -> None:
    db = _new_db()
    event = _wick_event(db)
    failing = _add_policy(db, "1", HOLDER_A)
    ok = _add_policy(db, "2", HOLDER_B)
    ledger = FakeLedger(submit_fail={HOLDER_A})

    outcomes = asyncio.run(SettlementExecutor(db, ledger).execute(event))
    by_policy = {o.policy_id: o for o in outcomes}

    assert by_policy[failing].status == OUTCOME_FAILED
    assert by_policy[failing].settlement_ref is None
    assert "nonce too low" in by_policy[failing].error
    assert by_policy[ok].status == OUTCOME_SETTLED
    assert db.get_policy(failing).status == "active"


def test_confirmation_timeout_leaves_policy_active() -> None:
    db = _new_db()
    event = _wick_event(db)
    pid = _add_policy(db, "1", HOLDER_A)
    ledger = FakeLedger(timeout={HOLDER_A})

    outcomes = asyncio.run(SettlementExecutor(db, ledger, ExecutorConfig(confirmation_timeout_sec=1)).execute(event))

    assert outcomes[0].status == OUTCOME_FAILED
    assert outcomes[0].settlement_ref == "0xtx1"
    assert db.get_policy(pid).status == "active"
    assert db.get_payout_by_ref("0xtx1") is None


def test_signer_writes_are_serialized_under_concurrency() -> None:
    db = _new_db()
    event = _wick_event(db)
    for i in range(4):
        _add_policy(db, str(i + 1), f"0x{i + 1:040x}")
    ledger = FakeLedger(submit_delay=0.01)
    executor = SettlementExecutor(db, ledger, ExecutorConfig(max_concurrency=4))

    outcomes = asyncio.run(executor.execute(event))

    assert len(outcomes) == 4
    assert all(o.status == OUTCOME_SETTLED for o in outcomes)
    assert ledger.max_in_flight == 1
    assert db.get_system_stats()["total_payouts"] == 4


def test_policy_already_claimed_by_reconciler_gets_no_second_claim() -> None:
    db = _new_db()
    event = _wick_event(db)
    pid = _add_policy(db, "1", HOLDER_A)
    ledger = FakeLedger()

    original_wait = ledger.wait_for_confirmation

    async def wait_and_race(settlement_ref, timeout):
        confirmation = await original_wait(settlement_ref, timeout)
        db.insert_payout(settlement_ref=settlement_ref, holder_address=HOLDER_A,
                         amount=Decimal("250"), policy_id=pid, source="reconciler")
        db.claim_policy(pid, settlement_ref)
        return confirmation

    ledger.wait_for_confirmation = wait_and_race
    outcomes = asyncio.run(SettlementExecutor(db, ledger).execute(event))

    assert outcomes[0].status == OUTCOME_SETTLED
    assert outcomes[0].payout_created is False
    assert outcomes[0].policy_claimed is False
    payout = db.get_payout_by_ref(outcomes[0].settlement_ref)
    assert payout.event_id == event.id
    assert db.get_system_stats()["total_payouts"] == 1
