#!/usr/bin/env python3
"""
Wick detector for WickGuard.

A wick is a candle with a large high-low range and a small open-close body:
a transient dislocation rather than a sustained move. Direction does not
matter.

    body  = |close - open|
    range = high - low
    wick  <=> range > 0
              and body / range  <= body_ratio_max    (default 0.30)
              and range / close >= range_threshold   (default 0.10)

Both bounds are inclusive. Persisting the WickEvent is what makes a candle
"detected"; the store keeps at most one event per candle.

Two consumption modes share evaluate():
- streaming: stream() polls the store for newly arrived candles (or is woken
  by notify_new_candles()) and hands every new event to on_event
- replay: detect_range() scans a stored historical range for backtesting
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, List, Optional, Tuple

from config_env import DetectorConfig
from logging_utils import get_logger
from wickguard_db import Candle, WickEvent, WickGuardDB, to_decimal


DEFAULT_BODY_RATIO_MAX = Decimal("0.30")
DEFAULT_RANGE_THRESHOLD = Decimal("0.10")
STREAM_BATCH_LIMIT = 500

EventCallback = Callable[[WickEvent], Awaitable[object]]


@dataclass
class WickMetrics:
    body_ratio: Decimal
    range_ratio: Decimal
    qualifies: bool


def measure_candle(
    candle: Candle,
    body_ratio_max: Decimal = DEFAULT_BODY_RATIO_MAX,
    range_threshold: Decimal = DEFAULT_RANGE_THRESHOLD,
) -> Optional[WickMetrics]:
    """Compute wick ratios. Returns None for malformed candles (non-positive range or close)."""
    try:
        o = to_decimal(candle.open)
        h = to_decimal(candle.high)
        lo = to_decimal(candle.low)
        c = to_decimal(candle.close)
    except (InvalidOperation, TypeError, ValueError):
        return None

    rng = h - lo
    if rng <= 0 or c <= 0:
        return None

    body = abs(c - o)
    body_ratio = body / rng
    range_ratio = rng / c
    return WickMetrics(
        body_ratio=body_ratio,
        range_ratio=range_ratio,
        qualifies=body_ratio <= body_ratio_max and range_ratio >= range_threshold,
    )


class WickDetector:
    """Classifies candles and persists wick events."""

    def __init__(
        self,
        db: WickGuardDB,
        config: Optional[DetectorConfig] = None,
        on_event: Optional[EventCallback] = None,
    ):
        self.db = db
        self.config = config or DetectorConfig()
        self.on_event = on_event
        self.log = get_logger("detector")
        self._running = False
        self._wakeup = asyncio.Event()
        self._cursor: Optional[int] = None

    @property
    def symbol(self) -> str:
        return self.config.symbol.upper()

    def classify(self, candle: Candle) -> Optional[WickMetrics]:
        """Pure classification; no persistence. None means 'not a wick'."""
        metrics = measure_candle(candle, self.config.body_ratio_max, self.config.range_threshold)
        if metrics is None or not metrics.qualifies:
            return None
        return metrics

    def evaluate(self, candle: Candle) -> Optional[WickEvent]:
        """Classify a stored candle and persist a WickEvent if it qualifies.

        Returns the event only when this call created it; a candle already
        linked to an event yields None.
        """
        metrics = self.classify(candle)
        if metrics is None:
            return None
        event, created = self.db.insert_wick_event(candle, metrics.body_ratio, metrics.range_ratio)
        if not created:
            self.log.debug(f"Candle {candle.id} already has wick event {event.id}")
            return None
        self.log.info(
            f"WICK DETECTED {candle.symbol} @ {candle.timestamp:.0f}: "
            f"body_ratio={metrics.body_ratio:.4f} range_ratio={metrics.range_ratio:.4f} "
            f"(event {event.id})"
        )
        return event

    # ------------------------------------------------------------------
    # Replay
    # ------------------------------------------------------------------

    def scan_range(self, start_ts: float, end_ts: float) -> List[Tuple[WickEvent, bool]]:
        """Evaluate every stored candle in [start_ts, end_ts] in time order.

        Returns (event, created) for each qualifying candle; created is False for
        events recorded by an earlier run.
        """
        candles = self.db.get_candles_between(self.symbol, start_ts, end_ts)
        self.log.info(f"Analyzing {len(candles)} {self.symbol} candles from {start_ts:.0f} to {end_ts:.0f}")

        found: List[Tuple[WickEvent, bool]] = []
        for candle in candles:
            metrics = self.classify(candle)
            if metrics is None:
                continue
            event, created = self.db.insert_wick_event(candle, metrics.body_ratio, metrics.range_ratio)
            if created:
                self.log.info(
                    f"Wick at {candle.timestamp:.0f}: body_ratio={metrics.body_ratio:.4f} "
                    f"range_ratio={metrics.range_ratio:.4f}"
                )
            found.append((event, created))

        new_count = sum(1 for _, created in found if created)
        self.log.info(f"Analysis complete: found {len(found)} wick(s), {new_count} new")
        return found

    def detect_range(self, start_ts: float, end_ts: float) -> List[WickEvent]:
        """All qualifying events in the range, including ones from earlier runs,
        so a replay can be restarted from any offset.
        """
        return [event for event, _ in self.scan_range(start_ts, end_ts)]

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def notify_new_candles(self) -> None:
        """Wake the streaming loop early (called by the candle feed after inserts)."""
        self._wakeup.set()

    async def poll_once(self) -> List[WickEvent]:
        """Evaluate candles that arrived since the cursor; run on_event for each new event."""
        if self._cursor is None:
            # Live streams only move forward: start at whatever is newest now.
            self._cursor = self.db.get_max_candle_id(self.symbol)
            self.log.info(f"Streaming {self.symbol} candles after id {self._cursor}")
            return []

        new_events: List[WickEvent] = []
        while True:
            candles = self.db.get_candles_after(self.symbol, self._cursor, limit=STREAM_BATCH_LIMIT)
            if not candles:
                break
            for candle in candles:
                event = self.evaluate(candle)
                self._cursor = int(candle.id)
                if event is None:
                    continue
                new_events.append(event)
                if self.on_event is not None:
                    try:
                        await self.on_event(event)
                    except Exception as e:
                        self.log.error(f"Event callback failed for wick event {event.id}: {e}")
            if len(candles) < STREAM_BATCH_LIMIT:
                break
        return new_events

    async def stream(self) -> None:
        """Run the streaming loop until stop() is called."""
        self._running = True
        self.log.info(
            f"Starting wick detection for {self.symbol} "
            f"(body_ratio<={self.config.body_ratio_max}, range_ratio>={self.config.range_threshold})"
        )
        while self._running:
            try:
                await self.poll_once()
            except Exception as e:
                self.log.error(f"Detection error: {e}")
            if not self._running:
                break
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=float(self.config.poll_interval_sec))
            except asyncio.TimeoutError:
                pass
            self._wakeup.clear()
        self.log.info("Wick detector stopped")

    def stop(self) -> None:
        """Stop accepting new ticks; an in-flight tick finishes."""
        self._running = False
        self._wakeup.set()
