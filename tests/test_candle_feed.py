#!/usr/bin/env python3
"""Tests for CSV loading and Binance kline normalization."""

import asyncio
import tempfile
from decimal import Decimal
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from candle_feed import KlinePoller, load_csv_candles, normalize_klines, parse_timestamp
from config_env import FeedConfig
from wickguard_db import WickGuardDB


def _new_db() -> WickGuardDB:
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name
    return WickGuardDB(db_path)


def test_parse_timestamp_formats() -> None:
    assert parse_timestamp("1700000000") == 1_700_000_000.0
    assert parse_timestamp("1700000000000") == 1_700_000_000.0
    assert parse_timestamp("2023-11-14T22:13:20Z") == 1_700_000_000.0
    assert parse_timestamp("2023-11-14 22:13:20") == 1_700_000_000.0


def test_load_csv_sorts_and_skips_malformed_rows(tmp_path) -> None:
    path = tmp_path / "btc.csv"
    path.write_text(
        "Timestamp,Open,High,Low,Close,Volume\n"
        "2023-11-14T22:14:00Z,44000,48000,39500,43900,12.5\n"
        "1700000000,45000,45200,40400,40500,3\n"
        "not-a-time,1,2,3,4,5\n"
        "1700000120,1,2,x,4,5\n"
    )

    candles = load_csv_candles(str(path), "btcusdt")

    assert [c.timestamp for c in candles] == [1_700_000_000.0, 1_700_000_040.0]
    assert candles[0].symbol == "BTCUSDT"
    assert candles[1].high == Decimal("48000")
    assert candles[1].volume == Decimal("12.5")


def test_load_csv_requires_ohlc_columns(tmp_path) -> None:
    path = tmp_path / "bad.csv"
    path.write_text("timestamp,open,close\n1,2,3\n")
    try:
        load_csv_candles(str(path), "BTCUSDT")
    except ValueError as e:
        assert "high" in str(e) and "low" in str(e)
    else:
        raise AssertionError("expected ValueError for missing columns")


def test_csv_reload_does_not_duplicate(tmp_path) -> None:
    db = _new_db()
    path = tmp_path / "btc.csv"
    path.write_text("timestamp,open,high,low,close\n1700000000,1,2,0.5,1.5\n1700000060,1,2,0.5,1.5\n")

    assert db.insert_candles(load_csv_candles(str(path), "BTCUSDT")) == 2
    assert db.insert_candles(load_csv_candles(str(path), "BTCUSDT")) == 0


def test_normalize_klines_drops_open_candle() -> None:
    raw = [
        [1_700_000_000_000, "100", "110", "90", "105", "7", 1_700_000_059_999],
        [1_700_000_060_000, "105", "106", "104", "105", "1", 1_700_000_119_999],
        ["garbage"],
    ]

    candles = normalize_klines("btcusdt", raw, now_ms=1_700_000_100_000)

    assert len(candles) == 1
    assert candles[0].timestamp == 1_700_000_000.0
    assert candles[0].close == Decimal("105")


def test_poller_stores_closed_candles_and_wakes_consumer() -> None:
    db = _new_db()
    wakeups = []
    poller = KlinePoller(db, "btcusdt", FeedConfig(source="binance"), on_candles=lambda: wakeups.append(1))
    raw = [
        [1_600_000_000_000, "100", "110", "90", "105", "7", 1_600_000_059_999],
        [1_600_000_060_000, "105", "106", "104", "105", "1", 1_600_000_119_999],
    ]

    async def fake_fetch(limit):
        return raw

    poller._fetch = fake_fetch

    async def run():
        first = await poller.poll_once()
        second = await poller.poll_once()
        return first, second

    first, second = asyncio.run(run())

    assert first == 2
    assert second == 0
    assert wakeups == [1]
    assert db.get_latest_candle("BTCUSDT").timestamp == 1_600_000_060.0


def test_poller_rejects_unknown_interval() -> None:
    try:
        KlinePoller(_new_db(), "BTCUSDT", FeedConfig(interval="7m"))
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError for unsupported interval")
