#!/usr/bin/env python3
"""
WickGuard state store.

SQLite database with WAL mode for concurrent access from:
- Wick detector (streaming + replay, candle/event writes)
- Settlement executor (payout inserts, policy claims at submission time)
- Ledger reconciler (policy/payout merges from the ledger event log)
- CLI / read-only consumers (stats, recent events and payouts)

Every write that both the executor and the reconciler can attempt is an
idempotent statement: UNIQUE-backed INSERT OR IGNORE, or an UPDATE guarded by
the expected current state. No caller may pre-check existence and then write.

Monetary values and prices are stored as fixed-point decimal TEXT, never REAL.
"""

import os
import sqlite3
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from env_utils import WICKGUARD_DB_PATH
from logging_utils import get_logger, short_ref
from policy_status import (
    POLICY_STATUS_ACTIVE,
    POLICY_STATUS_CLAIMED,
    POLICY_STATUS_EXPIRED,
    normalize_policy_status,
)


PAYOUT_SOURCE_EXECUTOR = "executor"
PAYOUT_SOURCE_RECONCILER = "reconciler"


def to_decimal(value: Any) -> Decimal:
    """Coerce numbers/strings to Decimal without passing through binary float repr."""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def normalize_address(value: Any) -> str:
    return str(value or "").strip().lower()


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class Candle:
    """OHLCV candle. ``id`` is None until stored."""
    symbol: str
    timestamp: float
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal = Decimal("0")
    id: Optional[int] = None


@dataclass
class WickEvent:
    id: int
    symbol: str
    timestamp: float
    candle_id: int
    body_ratio: Decimal
    range_ratio: Decimal
    detected_at: float


@dataclass
class Policy:
    id: int
    policy_ref: str
    holder_address: str
    premium: Decimal
    coverage_amount: Decimal
    purchase_time: float
    expiry_time: float
    status: str
    settlement_ref: Optional[str] = None
    purchase_tx_ref: Optional[str] = None
    purchase_block: Optional[int] = None

    def is_eligible(self, now: float) -> bool:
        return self.status == POLICY_STATUS_ACTIVE and self.expiry_time > now


@dataclass
class Payout:
    id: int
    policy_id: Optional[int]
    holder_address: str
    amount: Decimal
    event_id: Optional[int]
    settlement_ref: str
    executed_at: float
    block_height: Optional[int] = None
    source: str = PAYOUT_SOURCE_EXECUTOR


# =============================================================================
# Database Class
# =============================================================================

class WickGuardDB:
    """
    SQLite store for candles, wick events, policies, payouts and the
    reconciliation checkpoint.

    Features:
    - WAL mode + per-thread connections for concurrent access
    - Payout idempotency via UNIQUE(settlement_ref)
    - Wick event idempotency via UNIQUE(candle_id)
    - Compare-and-set policy status transitions
    - Monotonic checkpoint advancement
    """

    def __init__(self, db_path: str = WICKGUARD_DB_PATH):
        self.db_path = Path(db_path)
        self.log = get_logger("db")
        self._local = threading.local()
        self._conn_lock = threading.Lock()
        self._conn_by_tid: Dict[int, sqlite3.Connection] = {}
        self._conn_pid: int = int(os.getpid())
        self._init_db()

    def _open_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    def _get_connection(self) -> sqlite3.Connection:
        """Get a per-thread database connection."""
        tid = int(threading.get_ident())
        current_pid = int(os.getpid())
        with self._conn_lock:
            # After fork, inherited sqlite handles are unsafe in the child.
            if current_pid != int(self._conn_pid):
                for conn in self._conn_by_tid.values():
                    try:
                        conn.close()
                    except sqlite3.Error:
                        pass
                self._conn_by_tid.clear()
                self._local.conn = None
                self._conn_pid = current_pid
            self._cleanup_stale_connections_locked()
            conn = self._conn_by_tid.get(tid)
            if conn is None:
                conn = self._open_connection()
                self._conn_by_tid[tid] = conn
                self._local.conn = conn
            return conn

    def _cleanup_stale_connections_locked(self) -> None:
        alive = {int(t.ident) for t in threading.enumerate() if t.ident is not None}
        stale_tids = [tid for tid in self._conn_by_tid.keys() if tid not in alive]
        for tid in stale_tids:
            conn = self._conn_by_tid.pop(tid, None)
            if conn is None:
                continue
            try:
                conn.close()
            except sqlite3.Error:
                pass

    def close(self) -> None:
        with self._conn_lock:
            conns = list(self._conn_by_tid.values())
            self._conn_by_tid.clear()
            self._local.conn = None
        for conn in conns:
            try:
                conn.close()
            except sqlite3.Error:
                pass

    def _init_db(self) -> None:
        """Create tables and indexes (idempotent)."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS candles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    ts REAL NOT NULL,
                    open TEXT NOT NULL,
                    high TEXT NOT NULL,
                    low TEXT NOT NULL,
                    close TEXT NOT NULL,
                    volume TEXT NOT NULL DEFAULT '0',
                    created_at REAL DEFAULT (strftime('%s', 'now')),
                    UNIQUE(symbol, ts)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS wick_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    ts REAL NOT NULL,
                    candle_id INTEGER NOT NULL UNIQUE REFERENCES candles(id),
                    body_ratio TEXT NOT NULL,
                    range_ratio TEXT NOT NULL,
                    detected_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS policies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    policy_ref TEXT NOT NULL UNIQUE,
                    holder_address TEXT NOT NULL,
                    premium TEXT NOT NULL,
                    coverage_amount TEXT NOT NULL,
                    purchase_time REAL NOT NULL,
                    expiry_time REAL NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active'
                        CHECK (status IN ('active', 'expired', 'claimed')),
                    settlement_ref TEXT,
                    purchase_tx_ref TEXT,
                    purchase_block INTEGER,
                    created_at REAL DEFAULT (strftime('%s', 'now')),
                    updated_at REAL DEFAULT (strftime('%s', 'now'))
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS payouts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    policy_id INTEGER REFERENCES policies(id),
                    holder_address TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    event_id INTEGER REFERENCES wick_events(id),
                    settlement_ref TEXT NOT NULL UNIQUE,
                    block_height INTEGER,
                    source TEXT NOT NULL DEFAULT 'executor',
                    executed_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS sync_state (
                    contract_id TEXT PRIMARY KEY,
                    last_synced_height INTEGER NOT NULL,
                    updated_at REAL DEFAULT (strftime('%s', 'now'))
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_candles_symbol_ts ON candles(symbol, ts)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_wick_events_detected ON wick_events(detected_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_policies_status_expiry ON policies(status, expiry_time)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_policies_holder ON policies(holder_address, status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_payouts_policy ON payouts(policy_id)")
            conn.commit()

    # =========================================================================
    # Candles
    # =========================================================================

    def insert_candle(self, candle: Candle) -> Optional[int]:
        """Insert a candle. Returns the new id, or None if (symbol, ts) already exists."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO candles (symbol, ts, open, high, low, close, volume)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    candle.symbol.upper(),
                    float(candle.timestamp),
                    str(to_decimal(candle.open)),
                    str(to_decimal(candle.high)),
                    str(to_decimal(candle.low)),
                    str(to_decimal(candle.close)),
                    str(to_decimal(candle.volume or 0)),
                ),
            )
            conn.commit()
            if cursor.rowcount > 0:
                candle.id = int(cursor.lastrowid)
                return candle.id
            return None

    def insert_candles(self, candles: Iterable[Candle]) -> int:
        """Bulk insert-or-ignore. Returns the number of new rows."""
        inserted = 0
        for candle in candles:
            if self.insert_candle(candle) is not None:
                inserted += 1
        return inserted

    def get_candle(self, candle_id: int) -> Optional[Candle]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM candles WHERE id = ?", (int(candle_id),)).fetchone()
            return self._row_to_candle(row) if row else None

    def get_latest_candle(self, symbol: str) -> Optional[Candle]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM candles WHERE symbol = ? ORDER BY ts DESC LIMIT 1",
                (symbol.upper(),),
            ).fetchone()
            return self._row_to_candle(row) if row else None

    def get_candles_between(self, symbol: str, start_ts: float, end_ts: float) -> List[Candle]:
        """Candles with start_ts <= ts <= end_ts, oldest first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM candles WHERE symbol = ? AND ts >= ? AND ts <= ? ORDER BY ts ASC",
                (symbol.upper(), float(start_ts), float(end_ts)),
            ).fetchall()
            return [self._row_to_candle(r) for r in rows]

    def get_candles_after(self, symbol: str, after_id: int, limit: int = 500) -> List[Candle]:
        """Candles stored after a row-id cursor (streaming consumption), in arrival order."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM candles WHERE symbol = ? AND id > ? ORDER BY id ASC LIMIT ?",
                (symbol.upper(), int(after_id), int(limit)),
            ).fetchall()
            return [self._row_to_candle(r) for r in rows]

    def get_max_candle_id(self, symbol: str) -> int:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(id), 0) AS max_id FROM candles WHERE symbol = ?",
                (symbol.upper(),),
            ).fetchone()
            return int(row["max_id"])

    def _row_to_candle(self, row: sqlite3.Row) -> Candle:
        return Candle(
            id=int(row["id"]),
            symbol=row["symbol"],
            timestamp=float(row["ts"]),
            open=Decimal(row["open"]),
            high=Decimal(row["high"]),
            low=Decimal(row["low"]),
            close=Decimal(row["close"]),
            volume=Decimal(row["volume"]),
        )

    # =========================================================================
    # Wick events
    # =========================================================================

    def insert_wick_event(
        self,
        candle: Candle,
        body_ratio: Decimal,
        range_ratio: Decimal,
        detected_at: Optional[float] = None,
    ) -> Tuple[WickEvent, bool]:
        """Record a wick for a stored candle.

        Returns (event, created). ``created`` is False when the candle was
        already linked to an event; the existing event is returned unchanged.
        """
        if candle.id is None:
            raise ValueError("candle must be stored before an event can reference it")
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO wick_events (symbol, ts, candle_id, body_ratio, range_ratio, detected_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    candle.symbol.upper(),
                    float(candle.timestamp),
                    int(candle.id),
                    str(body_ratio),
                    str(range_ratio),
                    float(detected_at if detected_at is not None else time.time()),
                ),
            )
            created = cursor.rowcount > 0
            row = conn.execute(
                "SELECT * FROM wick_events WHERE candle_id = ?",
                (int(candle.id),),
            ).fetchone()
            conn.commit()
        return self._row_to_event(row), created

    def get_wick_event(self, event_id: int) -> Optional[WickEvent]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM wick_events WHERE id = ?", (int(event_id),)).fetchone()
            return self._row_to_event(row) if row else None

    def get_recent_wick_events(self, limit: int = 20) -> List[WickEvent]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM wick_events ORDER BY detected_at DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
            return [self._row_to_event(r) for r in rows]

    def _row_to_event(self, row: sqlite3.Row) -> WickEvent:
        return WickEvent(
            id=int(row["id"]),
            symbol=row["symbol"],
            timestamp=float(row["ts"]),
            candle_id=int(row["candle_id"]),
            body_ratio=Decimal(row["body_ratio"]),
            range_ratio=Decimal(row["range_ratio"]),
            detected_at=float(row["detected_at"]),
        )

    # =========================================================================
    # Policies
    # =========================================================================

    def upsert_policy_from_purchase(
        self,
        *,
        policy_ref: str,
        holder_address: str,
        premium: Decimal,
        coverage_amount: Decimal,
        purchase_time: float,
        expiry_time: float,
        purchase_tx_ref: Optional[str] = None,
        purchase_block: Optional[int] = None,
    ) -> bool:
        """Insert a policy keyed by its ledger policy ref; never overwrite.

        Returns True if a new row was created.
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO policies (
                    policy_ref, holder_address, premium, coverage_amount,
                    purchase_time, expiry_time, status, purchase_tx_ref, purchase_block
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(policy_ref),
                    normalize_address(holder_address),
                    str(to_decimal(premium)),
                    str(to_decimal(coverage_amount)),
                    float(purchase_time),
                    float(expiry_time),
                    POLICY_STATUS_ACTIVE,
                    purchase_tx_ref,
                    purchase_block,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_policy(self, policy_id: int) -> Optional[Policy]:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM policies WHERE id = ?", (int(policy_id),)).fetchone()
            return self._row_to_policy(row) if row else None

    def get_policy_by_ref(self, policy_ref: str) -> Optional[Policy]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM policies WHERE policy_ref = ?",
                (str(policy_ref),),
            ).fetchone()
            return self._row_to_policy(row) if row else None

    def get_eligible_policies(self, now: Optional[float] = None) -> List[Policy]:
        """Active policies whose coverage window is still open at ``now``."""
        ts = float(now if now is not None else time.time())
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM policies WHERE status = ? AND expiry_time > ? ORDER BY id ASC",
                (POLICY_STATUS_ACTIVE, ts),
            ).fetchall()
            return [self._row_to_policy(r) for r in rows]

    def find_latest_active_policy_for_holder(self, holder_address: str) -> Optional[Policy]:
        """Most recently created active policy for a holder (settlement fallback heuristic)."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM policies
                WHERE holder_address = ? AND status = ?
                ORDER BY id DESC LIMIT 1
                """,
                (normalize_address(holder_address), POLICY_STATUS_ACTIVE),
            ).fetchone()
            return self._row_to_policy(row) if row else None

    def claim_policy(self, policy_id: int, settlement_ref: str) -> bool:
        """Compare-and-set active -> claimed. Returns True only for the winning writer."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE policies SET
                    status = ?,
                    settlement_ref = ?,
                    updated_at = strftime('%s', 'now')
                WHERE id = ? AND status = ?
                """,
                (POLICY_STATUS_CLAIMED, settlement_ref, int(policy_id), POLICY_STATUS_ACTIVE),
            )
            conn.commit()
            return cursor.rowcount > 0

    def backfill_settlement_ref(self, policy_id: int, settlement_ref: str) -> bool:
        """Fill a missing settlement ref on an already-claimed policy; never replaces one."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE policies SET
                    settlement_ref = ?,
                    updated_at = strftime('%s', 'now')
                WHERE id = ? AND status = ? AND settlement_ref IS NULL
                """,
                (settlement_ref, int(policy_id), POLICY_STATUS_CLAIMED),
            )
            conn.commit()
            return cursor.rowcount > 0

    def expire_policies(self, now: Optional[float] = None) -> int:
        """Sweep active policies past expiry to 'expired'. Returns rows changed."""
        ts = float(now if now is not None else time.time())
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE policies SET
                    status = ?,
                    updated_at = strftime('%s', 'now')
                WHERE status = ? AND expiry_time <= ?
                """,
                (POLICY_STATUS_EXPIRED, POLICY_STATUS_ACTIVE, ts),
            )
            conn.commit()
            return cursor.rowcount

    def _row_to_policy(self, row: sqlite3.Row) -> Policy:
        return Policy(
            id=int(row["id"]),
            policy_ref=row["policy_ref"],
            holder_address=row["holder_address"],
            premium=Decimal(row["premium"]),
            coverage_amount=Decimal(row["coverage_amount"]),
            purchase_time=float(row["purchase_time"]),
            expiry_time=float(row["expiry_time"]),
            status=normalize_policy_status(row["status"], POLICY_STATUS_ACTIVE),
            settlement_ref=row["settlement_ref"],
            purchase_tx_ref=row["purchase_tx_ref"],
            purchase_block=row["purchase_block"],
        )

    # =========================================================================
    # Payouts
    # =========================================================================

    def insert_payout(
        self,
        *,
        settlement_ref: str,
        holder_address: str,
        amount: Decimal,
        policy_id: Optional[int] = None,
        event_id: Optional[int] = None,
        block_height: Optional[int] = None,
        source: str = PAYOUT_SOURCE_EXECUTOR,
        executed_at: Optional[float] = None,
    ) -> bool:
        """Insert-or-ignore a payout keyed by settlement ref.

        Returns True if this call created the row. When the row already exists,
        missing links (policy, event, block) are filled in from this call but
        existing values are never replaced.
        """
        if not settlement_ref:
            raise ValueError("settlement_ref is required")
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO payouts (
                    policy_id, holder_address, amount, event_id,
                    settlement_ref, block_height, source, executed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    policy_id,
                    normalize_address(holder_address),
                    str(to_decimal(amount)),
                    event_id,
                    str(settlement_ref),
                    block_height,
                    source,
                    float(executed_at if executed_at is not None else time.time()),
                ),
            )
            created = cursor.rowcount > 0
            if not created:
                conn.execute(
                    """
                    UPDATE payouts SET
                        policy_id = COALESCE(policy_id, ?),
                        event_id = COALESCE(event_id, ?),
                        block_height = COALESCE(block_height, ?)
                    WHERE settlement_ref = ?
                    """,
                    (policy_id, event_id, block_height, str(settlement_ref)),
                )
            conn.commit()

        if not created:
            self.log.debug(f"Payout {short_ref(settlement_ref)} already recorded; merged links")
        return created

    def get_payout_by_ref(self, settlement_ref: str) -> Optional[Payout]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM payouts WHERE settlement_ref = ?",
                (str(settlement_ref),),
            ).fetchone()
            return self._row_to_payout(row) if row else None

    def get_recent_payouts(self, limit: int = 20) -> List[Payout]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM payouts ORDER BY executed_at DESC, id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
            return [self._row_to_payout(r) for r in rows]

    def get_unlinked_payouts(self, limit: int = 100) -> List[Payout]:
        """Payouts observed on the ledger that could not be tied to a local policy."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM payouts WHERE policy_id IS NULL ORDER BY id DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
            return [self._row_to_payout(r) for r in rows]

    def _row_to_payout(self, row: sqlite3.Row) -> Payout:
        return Payout(
            id=int(row["id"]),
            policy_id=row["policy_id"],
            holder_address=row["holder_address"],
            amount=Decimal(row["amount"]),
            event_id=row["event_id"],
            settlement_ref=row["settlement_ref"],
            executed_at=float(row["executed_at"]),
            block_height=row["block_height"],
            source=row["source"],
        )

    # =========================================================================
    # Reconciliation checkpoint
    # =========================================================================

    def get_checkpoint(self, contract_id: str) -> Optional[int]:
        """Last fully-synced ledger height, or None before the first sync."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT last_synced_height FROM sync_state WHERE contract_id = ?",
                (normalize_address(contract_id),),
            ).fetchone()
            return int(row["last_synced_height"]) if row else None

    def advance_checkpoint(self, contract_id: str, height: int) -> int:
        """Persist a checkpoint; never moves backwards. Returns the stored height."""
        key = normalize_address(contract_id)
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_state (contract_id, last_synced_height, updated_at)
                VALUES (?, ?, strftime('%s', 'now'))
                ON CONFLICT(contract_id) DO UPDATE SET
                    last_synced_height = MAX(sync_state.last_synced_height, excluded.last_synced_height),
                    updated_at = excluded.updated_at
                """,
                (key, int(height)),
            )
            row = conn.execute(
                "SELECT last_synced_height FROM sync_state WHERE contract_id = ?",
                (key,),
            ).fetchone()
            conn.commit()
            return int(row["last_synced_height"])

    # =========================================================================
    # Reporting / maintenance
    # =========================================================================

    def get_system_stats(self, now: Optional[float] = None) -> Dict[str, int]:
        ts = float(now if now is not None else time.time())
        with self._get_connection() as conn:
            def _count(sql: str, params: tuple = ()) -> int:
                return int(conn.execute(sql, params).fetchone()[0])

            return {
                "total_candles": _count("SELECT COUNT(*) FROM candles"),
                "total_wick_events": _count("SELECT COUNT(*) FROM wick_events"),
                "total_policies": _count("SELECT COUNT(*) FROM policies"),
                "active_policies": _count(
                    "SELECT COUNT(*) FROM policies WHERE status = ? AND expiry_time > ?",
                    (POLICY_STATUS_ACTIVE, ts),
                ),
                "claimed_policies": _count(
                    "SELECT COUNT(*) FROM policies WHERE status = ?",
                    (POLICY_STATUS_CLAIMED,),
                ),
                "total_payouts": _count("SELECT COUNT(*) FROM payouts"),
                "unlinked_payouts": _count("SELECT COUNT(*) FROM payouts WHERE policy_id IS NULL"),
            }

    def reset_market_data(self) -> Tuple[int, int]:
        """Clear candles and wick events before a fresh replay.

        Events referenced by a payout (and their candles) are kept; policies
        and payouts are never touched. Returns (events_deleted, candles_deleted).
        """
        with self._get_connection() as conn:
            ev = conn.execute(
                """
                DELETE FROM wick_events
                WHERE id NOT IN (SELECT event_id FROM payouts WHERE event_id IS NOT NULL)
                """
            ).rowcount
            cd = conn.execute(
                "DELETE FROM candles WHERE id NOT IN (SELECT candle_id FROM wick_events)"
            ).rowcount
            conn.commit()
        self.log.info(f"Market data reset: {ev} events, {cd} candles removed")
        return ev, cd
