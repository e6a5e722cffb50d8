#!/usr/bin/env python3
"""
WickGuard process wiring.

Builds the store, ledger adapter, detector, executor, reconciler and
(optional) candle feed from config, and runs the long-lived loops:

    candle feed --(notify)--> detector.stream --(on_event)--> executor.execute
    reconciler.start (independent, coarser interval)

SIGINT/SIGTERM set a stop event; every loop stops taking new ticks and the
in-flight tick (bounded by the confirmation timeout) finishes.
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from candle_feed import KlinePoller, load_csv_candles
from config_env import (
    build_detector_config,
    build_executor_config,
    build_feed_config,
    build_ledger_config,
    build_reconciler_config,
    db_path_from_config,
)
from ledger import EvmLedgerAdapter, LedgerAdapter
from ledger_reconciler import LedgerReconciler
from logging_utils import get_logger
from settlement_executor import SettlementExecutor, SettlementOutcome
from wick_detector import WickDetector
from wickguard_db import WickEvent, WickGuardDB


@dataclass
class WickGuardComponents:
    db: WickGuardDB
    ledger: LedgerAdapter
    detector: WickDetector
    executor: SettlementExecutor
    reconciler: LedgerReconciler
    feed: Optional[KlinePoller] = None


def build_components(
    config: Dict[str, Any],
    *,
    dry_run: Optional[bool] = None,
    db_path: Optional[str] = None,
    ledger: Optional[LedgerAdapter] = None,
    with_feed: bool = True,
) -> WickGuardComponents:
    """Wire every component from a loaded config dict (see config_env.load_config)."""
    db = WickGuardDB(db_path or db_path_from_config(config))

    if ledger is None:
        ledger_cfg = build_ledger_config(config)
        if dry_run is not None:
            ledger_cfg.dry_run = bool(dry_run)
        ledger = EvmLedgerAdapter(get_logger("ledger.evm"), ledger_cfg)

    executor = SettlementExecutor(db, ledger, build_executor_config(config))
    detector = WickDetector(db, build_detector_config(config), on_event=executor.execute)
    reconciler = LedgerReconciler(db, ledger, build_reconciler_config(config))

    feed = None
    feed_cfg = build_feed_config(config)
    if with_feed and feed_cfg.source == "binance":
        feed = KlinePoller(db, detector.symbol, feed_cfg, on_candles=detector.notify_new_candles)

    return WickGuardComponents(
        db=db,
        ledger=ledger,
        detector=detector,
        executor=executor,
        reconciler=reconciler,
        feed=feed,
    )


async def run_loop(components: WickGuardComponents, log: logging.Logger) -> None:
    """Run detector, reconciler and feed until a signal or a worker dies."""
    stop_event = asyncio.Event()

    def _stop() -> None:
        components.detector.stop()
        components.reconciler.stop()
        if components.feed is not None:
            components.feed.stop()
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop)
        except NotImplementedError:
            pass

    tasks = [
        asyncio.create_task(components.detector.stream()),
        asyncio.create_task(components.reconciler.start()),
    ]
    if components.feed is not None:
        tasks.append(asyncio.create_task(components.feed.start()))

    async def _monitor_workers() -> None:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        if stop_event.is_set():
            return
        for task in done:
            if task.cancelled():
                log.warning("Worker task was cancelled unexpectedly; stopping")
                continue
            exc = task.exception()
            if exc is None:
                log.warning("Worker task exited unexpectedly; stopping")
            else:
                log.error(f"Worker task crashed; stopping: {exc}")
        _stop()

    monitor_task = asyncio.create_task(_monitor_workers())
    await stop_event.wait()

    # Let in-flight ticks finish; the loops exit on their own once stopped.
    monitor_task.cancel()
    await asyncio.gather(*tasks, monitor_task, return_exceptions=True)
    log.info("WickGuard stopped")


async def run_replay(
    components: WickGuardComponents,
    csv_path: str,
    start_ts: float,
    end_ts: float,
    settle: bool = False,
    reset: bool = False,
) -> Dict[str, Any]:
    """Load a CSV into the store, batch-detect over [start_ts, end_ts], optionally settle.

    Only events created by this pass are settled; an event seen by an earlier
    run already had its one settlement attempt.
    """
    log = get_logger("replay")
    if reset:
        components.db.reset_market_data()
    symbol = components.detector.symbol
    candles = load_csv_candles(csv_path, symbol)
    inserted = components.db.insert_candles(candles)
    log.info(f"Stored {inserted} new candles ({len(candles) - inserted} already present)")

    found = components.detector.scan_range(start_ts, end_ts)
    events: List[WickEvent] = [event for event, _ in found]
    new_events: List[WickEvent] = [event for event, created in found if created]
    outcomes: List[SettlementOutcome] = []
    if settle:
        for event in new_events:
            outcomes.extend(await components.executor.execute(event))

    return {
        "candles_loaded": len(candles),
        "candles_inserted": inserted,
        "events": events,
        "new_events": new_events,
        "outcomes": outcomes,
    }
