#!/usr/bin/env python3
"""
CLI for WickGuard.

Commands:
- run: detector + executor + reconciler loops (and the live candle feed if configured)
- replay: load a CSV of candles, batch-detect wicks, optionally settle them
- reconcile: sync policies/payouts from the ledger (loop, or --once)
- stats: store counts
- events: recent wick events
- payouts: recent payouts (or --unlinked ones)
- expire: flip active policies past expiry to expired
"""

import argparse
import asyncio
import json
import signal
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

# Add package root so the flat modules import when run as a script
sys.path.insert(0, str(Path(__file__).parent))

from candle_feed import parse_timestamp
from config_env import db_path_from_config, load_config
from logging_utils import get_logger, setup_logging
from pipeline import build_components, run_loop, run_replay
from wickguard_db import WickGuardDB


def _fmt_ts(ts: Optional[float]) -> str:
    if ts is None:
        return '-'
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S')


def _get_db(config: Dict[str, Any], args) -> WickGuardDB:
    return WickGuardDB(getattr(args, 'db', None) or db_path_from_config(config))


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ============================================================================
# Commands
# ============================================================================

async def cmd_run(args):
    """Run the streaming pipeline until SIGINT/SIGTERM."""
    config = load_config(args.config)
    log = get_logger('runner')
    components = build_components(
        config,
        dry_run=True if args.dry_run else None,
        db_path=args.db,
    )
    try:
        await components.ledger.initialize()
    except ValueError as e:
        log.error(f"Ledger config error: {e}")
        return 1
    try:
        await run_loop(components, log)
        return 0
    finally:
        await components.ledger.close()
        components.db.close()


async def cmd_replay(args):
    """Backtest detection over a CSV file."""
    config = load_config(args.config)
    start_ts = parse_timestamp(args.start) if args.start else 0.0
    end_ts = parse_timestamp(args.end) if args.end else time.time()
    if end_ts < start_ts:
        print(f"Error: --end ({_fmt_ts(end_ts)}) is before --start ({_fmt_ts(start_ts)})")
        return 1

    components = build_components(
        config,
        dry_run=True if args.dry_run else None,
        db_path=args.db,
        with_feed=False,
    )
    try:
        if args.settle:
            await components.ledger.initialize()
        result = await run_replay(
            components, args.csv, start_ts, end_ts, settle=args.settle, reset=args.reset
        )
    finally:
        await components.ledger.close()
        components.db.close()

    print(
        f"Loaded {result['candles_loaded']} candles "
        f"({result['candles_inserted']} new) from {args.csv}"
    )
    print(
        f"Wicks between {_fmt_ts(start_ts)} and {_fmt_ts(end_ts)}: "
        f"{len(result['events'])} ({len(result['new_events'])} new)"
    )
    for event in result['events']:
        print(
            f"  #{event.id} {_fmt_ts(event.timestamp)} {event.symbol} "
            f"body_ratio={event.body_ratio:.4f} range_ratio={event.range_ratio:.4f}"
        )
    if args.settle:
        outcomes = result['outcomes']
        settled = sum(1 for o in outcomes if o.success)
        print(f"Settlements: {settled}/{len(outcomes)} settled")
        for o in outcomes:
            line = f"  policy {o.policy_id} -> {o.holder}: {o.status}"
            if o.settlement_ref:
                line += f" ({o.settlement_ref})"
            if o.error:
                line += f" [{o.error}]"
            print(line)
    return 0


async def cmd_reconcile(args):
    """Sync the store from the ledger event log."""
    config = load_config(args.config)
    log = get_logger('runner')
    components = build_components(config, db_path=args.db, with_feed=False)
    try:
        try:
            await components.ledger.initialize()
        except ValueError as e:
            log.error(f"Ledger config error: {e}")
            return 1

        if args.once:
            result = await components.reconciler.reconcile_now()
            print(
                f"Blocks {result.from_height}-{result.to_height}: {result.events_seen} events, "
                f"{result.policies_created} new policies, {result.payouts_created} new payouts, "
                f"{result.unlinked_payouts} unlinked, {result.errors} errors"
            )
            if result.skipped:
                print("Tick skipped (provider backoff active)")
            return 1 if result.errors else 0

        reconciler = components.reconciler
        task = asyncio.create_task(reconciler.start())
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, reconciler.stop)
            except NotImplementedError:
                pass
        await task
        return 0
    finally:
        await components.ledger.close()
        components.db.close()


async def cmd_stats(args):
    """Print store counts."""
    config = load_config(args.config)
    db = _get_db(config, args)
    try:
        stats = db.get_system_stats()
        if args.json:
            _print_json(stats)
            return 0
        print("WickGuard store")
        print(f"  candles:          {stats['total_candles']}")
        print(f"  wick events:      {stats['total_wick_events']}")
        print(f"  policies:         {stats['total_policies']} "
              f"(active {stats['active_policies']}, claimed {stats['claimed_policies']})")
        print(f"  payouts:          {stats['total_payouts']} (unlinked {stats['unlinked_payouts']})")
        return 0
    finally:
        db.close()


async def cmd_events(args):
    """Show recent wick events."""
    config = load_config(args.config)
    db = _get_db(config, args)
    try:
        events = db.get_recent_wick_events(limit=args.limit)
        if args.json:
            _print_json([e.__dict__ for e in events])
            return 0
        if not events:
            print("No wick events recorded.")
            return 0
        for e in events:
            print(
                f"#{e.id:<6} {_fmt_ts(e.timestamp)} {e.symbol:<10} "
                f"body={e.body_ratio:.4f} range={e.range_ratio:.4f} candle={e.candle_id}"
            )
        return 0
    finally:
        db.close()


async def cmd_payouts(args):
    """Show recent payouts."""
    config = load_config(args.config)
    db = _get_db(config, args)
    try:
        if args.unlinked:
            payouts = db.get_unlinked_payouts(limit=args.limit)
        else:
            payouts = db.get_recent_payouts(limit=args.limit)
        if args.json:
            _print_json([p.__dict__ for p in payouts])
            return 0
        if not payouts:
            print("No payouts recorded." if not args.unlinked else "No unlinked payouts.")
            return 0
        for p in payouts:
            policy = p.policy_id if p.policy_id is not None else 'UNLINKED'
            print(
                f"#{p.id:<6} {_fmt_ts(p.executed_at)} {p.amount} -> {p.holder_address} "
                f"policy={policy} event={p.event_id or '-'} block={p.block_height or '-'} "
                f"src={p.source} tx={p.settlement_ref}"
            )
        return 0
    finally:
        db.close()


async def cmd_expire(args):
    """One-off expiry sweep."""
    config = load_config(args.config)
    db = _get_db(config, args)
    try:
        expired = db.expire_policies()
        print(f"Expired {expired} policies")
        return 0
    finally:
        db.close()


# ============================================================================
# Main
# ============================================================================

def main():
    parser = argparse.ArgumentParser(
        description='WickGuard wick-insurance pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--config', default=None, help='Path to wickguard.yaml')
    parser.add_argument('--db', default=None, help='SQLite path (overrides config)')
    parser.add_argument('--log-file', default=None, help='Also log to this file')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Run detector, executor and reconciler')
    run_parser.add_argument('--dry-run', action='store_true', help='Do not send transactions')

    replay_parser = subparsers.add_parser('replay', help='Backtest wick detection over a CSV')
    replay_parser.add_argument('--csv', required=True, help='CSV with timestamp,open,high,low,close[,volume]')
    replay_parser.add_argument('--start', default=None, help='Range start (epoch or ISO-8601)')
    replay_parser.add_argument('--end', default=None, help='Range end (epoch or ISO-8601)')
    replay_parser.add_argument('--settle', action='store_true', help='Settle eligible policies for each wick')
    replay_parser.add_argument('--dry-run', action='store_true', help='Do not send transactions')
    replay_parser.add_argument(
        '--reset', action='store_true',
        help='Clear candles and unpaid wick events before loading',
    )

    reconcile_parser = subparsers.add_parser('reconcile', help='Sync policies and payouts from the ledger')
    reconcile_parser.add_argument('--once', action='store_true', help='Run one reconciliation tick and exit')

    stats_parser = subparsers.add_parser('stats', help='Show store counts')
    stats_parser.add_argument('--json', action='store_true', help='JSON output')

    events_parser = subparsers.add_parser('events', help='Show recent wick events')
    events_parser.add_argument('--limit', type=int, default=20, help='Number of events (default: 20)')
    events_parser.add_argument('--json', action='store_true', help='JSON output')

    payouts_parser = subparsers.add_parser('payouts', help='Show recent payouts')
    payouts_parser.add_argument('--limit', type=int, default=20, help='Number of payouts (default: 20)')
    payouts_parser.add_argument('--unlinked', action='store_true', help='Only payouts with no local policy')
    payouts_parser.add_argument('--json', action='store_true', help='JSON output')

    subparsers.add_parser('expire', help='Expire active policies past their expiry time')

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    setup_logging(log_file=args.log_file, verbose=args.verbose)

    if args.command == 'run':
        return asyncio.run(cmd_run(args))
    elif args.command == 'replay':
        return asyncio.run(cmd_replay(args))
    elif args.command == 'reconcile':
        return asyncio.run(cmd_reconcile(args))
    elif args.command == 'stats':
        return asyncio.run(cmd_stats(args))
    elif args.command == 'events':
        return asyncio.run(cmd_events(args))
    elif args.command == 'payouts':
        return asyncio.run(cmd_payouts(args))
    elif args.command == 'expire':
        return asyncio.run(cmd_expire(args))
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
