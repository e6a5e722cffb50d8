#!/usr/bin/env python3
"""Tests for wick classification, replay and streaming."""

import asyncio
import tempfile
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from config_env import DetectorConfig
from wick_detector import WickDetector, measure_candle
from wickguard_db import Candle, WickGuardDB


def _new_db() -> WickGuardDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return WickGuardDB(db_path)


def _candle(ts, o, h, l, c) -> Candle:
    return Candle(
        symbol="BTCUSDT",
        timestamp=float(ts),
        open=Decimal(str(o)),
        high=Decimal(str(h)),
        low=Decimal(str(l)),
        close=Decimal(str(c)),
    )


def _stored(db: WickGuardDB, ts, o, h, l, c) -> Candle:
    candle = _candle(ts, o, h, l, c)
    db.insert_candle(candle)
    return candle


def test_large_body_drop_is_not_a_wick() -> None:
    db = _new_db()
    detector = WickDetector(db)
    candle = _stored(db, 1_700_000_000, 45000, 45200, 40400, 40500)

    assert detector.evaluate(candle) is None
    assert db.get_system_stats()["total_wick_events"] == 0


def test_long_wick_small_body_creates_one_event() -> None:
    db = _new_db()
    detector = WickDetector(db)
    candle = _stored(db, 1_700_000_060, 44000, 48000, 39500, 43900)

    event = detector.evaluate(candle)
    assert event is not None
    assert event.candle_id == candle.id
    assert event.body_ratio == Decimal(100) / Decimal(8500)
    assert event.range_ratio == Decimal(8500) / Decimal(43900)

    assert detector.evaluate(candle) is None
    assert db.get_system_stats()["total_wick_events"] == 1


def test_thresholds_are_inclusive() -> None:
    # body/range == 0.30 and range/close == 0.10 exactly
    metrics = measure_candle(_candle(1, 97, 105, 95, 100))
    assert metrics.body_ratio == Decimal("0.3")
    assert metrics.range_ratio == Decimal("0.1")
    assert metrics.qualifies is True

    assert measure_candle(_candle(1, "96.9", 105, 95, 100)).qualifies is False
    assert measure_candle(_candle(1, 97, "104.9", "95.1", 100)).qualifies is False


def test_direction_does_not_matter() -> None:
    up = measure_candle(_candle(1, 99, 105, 95, 100))
    down = measure_candle(_candle(1, 100, 105, 95, 99))
    assert up.qualifies is True
    assert down.qualifies is True


def test_malformed_candles_are_not_wicks() -> None:
    assert measure_candle(_candle(1, 100, 100, 100, 100)) is None
    assert measure_candle(_candle(1, 100, 95, 105, 100)) is None
    assert measure_candle(_candle(1, 1, 2, -3, 0)) is None
    assert measure_candle(_candle(1, 1, 2, -3, -1)) is None

    detector = WickDetector(_new_db())
    assert detector.classify(_candle(1, 100, 100, 100, 100)) is None


def test_custom_thresholds_from_config() -> None:
    db = _new_db()
    strict = WickDetector(db, DetectorConfig(body_ratio_max=Decimal("0.01"), range_threshold=Decimal("0.10")))
    candle = _stored(db, 1_700_000_060, 44000, 48000, 39500, 43900)
    assert strict.evaluate(candle) is None


def test_detect_range_returns_existing_and_new_events() -> None:
    db = _new_db()
    detector = WickDetector(db)
    _stored(db, 100, 45000, 45200, 40400, 40500)
    first_wick = _stored(db, 200, 44000, 48000, 39500, 43900)
    _stored(db, 300, 97, 105, 95, 100)
    _stored(db, 400, 97, 105, 95, 100)

    already = detector.evaluate(first_wick)
    assert already is not None

    events = detector.detect_range(100, 300)
    assert [e.timestamp for e in events] == [200.0, 300.0]
    assert events[0].id == already.id

    again = detector.detect_range(100, 300)
    assert [e.id for e in again] == [e.id for e in events]
    assert db.get_system_stats()["total_wick_events"] == 2


def test_scan_range_flags_only_events_created_by_this_pass() -> None:
    db = _new_db()
    detector = WickDetector(db)
    earlier = _stored(db, 200, 44000, 48000, 39500, 43900)
    _stored(db, 300, 97, 105, 95, 100)
    detector.evaluate(earlier)

    found = detector.scan_range(100, 300)

    assert [(e.timestamp, created) for e, created in found] == [(200.0, False), (300.0, True)]
    assert all(created is False for _, created in detector.scan_range(100, 300))


def test_streaming_starts_at_newest_and_invokes_callback_once() -> None:
    db = _new_db()
    seen = []

    async def on_event(event):
        seen.append(event.id)

    detector = WickDetector(db, on_event=on_event)
    _stored(db, 100, 44000, 48000, 39500, 43900)

    async def run() -> None:
        # First tick only positions the cursor; history is replay's job.
        assert await detector.poll_once() == []

        _stored(db, 200, 45000, 45200, 40400, 40500)
        _stored(db, 300, 97, 105, 95, 100)
        new_events = await detector.poll_once()
        assert len(new_events) == 1
        assert await detector.poll_once() == []

    asyncio.run(run())
    assert len(seen) == 1
    assert db.get_system_stats()["total_wick_events"] == 1


def test_streaming_callback_errors_do_not_stop_detection() -> None:
    db = _new_db()

    async def boom(event):
        raise RuntimeError("executor exploded")

    detector = WickDetector(db, on_event=boom)

    async def run() -> None:
        await detector.poll_once()
        _stored(db, 100, 97, 105, 95, 100)
        _stored(db, 200, 99, 105, 95, 100)
        events = await detector.poll_once()
        assert len(events) == 2

    asyncio.run(run())


def test_stream_loop_stops_cleanly() -> None:
    db = _new_db()
    detector = WickDetector(db, DetectorConfig(poll_interval_sec=0.01))

    async def run() -> None:
        task = asyncio.create_task(detector.stream())
        await asyncio.sleep(0.05)
        _stored(db, 100, 97, 105, 95, 100)
        detector.notify_new_candles()
        await asyncio.sleep(0.05)
        detector.stop()
        await asyncio.wait_for(task, timeout=1.0)

    asyncio.run(run())
    assert db.get_system_stats()["total_wick_events"] == 1
