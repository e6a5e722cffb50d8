#!/usr/bin/env python3
"""
Candle sources for WickGuard.

- load_csv_candles(): historical OHLCV from a CSV file (replay/backtest)
- KlinePoller: live Binance spot klines over aiohttp, closed candles only

Both produce Candle rows that go through WickGuardDB.insert_candles
(insert-or-ignore on (symbol, timestamp)), so re-loading a file or
re-polling an overlapping window never duplicates data.
"""

import asyncio
import csv
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, List, Optional

import aiohttp

from config_env import FeedConfig
from logging_utils import get_logger
from wickguard_db import Candle, WickGuardDB


INTERVAL_MS = {
    "1m": 60_000,
    "3m": 180_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "4h": 14_400_000,
    "1d": 86_400_000,
}

KLINES_PATH = "/api/v3/klines"
KLINES_POLL_LIMIT = 10

# Retries/backoff for a flaky public endpoint.
KLINE_FETCH_MAX_RETRIES = 3
KLINE_FETCH_BACKOFF_BASE_SEC = 0.6
KLINE_FETCH_BACKOFF_MAX_SEC = 5.0

CSV_COLUMNS = ("timestamp", "open", "high", "low", "close")


def parse_timestamp(value: str) -> float:
    """Epoch seconds, epoch millis or ISO-8601 -> epoch seconds (UTC)."""
    text = str(value or "").strip()
    if not text:
        raise ValueError("empty timestamp")
    try:
        num = float(text)
    except ValueError:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.timestamp()
    # Anything past year ~2286 in seconds is really milliseconds.
    return num / 1000.0 if num > 1e10 else num


def load_csv_candles(path: str, symbol: str) -> List[Candle]:
    """Read OHLCV rows from ``path``. Unparseable rows are skipped with a warning."""
    log = get_logger("feed.csv")
    candles: List[Candle] = []
    skipped = 0
    with open(Path(path), "r", newline="") as f:
        reader = csv.DictReader(f)
        header = [str(h or "").strip().lower() for h in (reader.fieldnames or [])]
        missing = [c for c in CSV_COLUMNS if c not in header]
        if missing:
            raise ValueError(f"{path}: missing CSV column(s): {', '.join(missing)}")
        for line_no, raw in enumerate(reader, start=2):
            row = {str(k or "").strip().lower(): v for k, v in raw.items()}
            try:
                candles.append(Candle(
                    symbol=symbol.upper(),
                    timestamp=parse_timestamp(row["timestamp"]),
                    open=Decimal(str(row["open"]).strip()),
                    high=Decimal(str(row["high"]).strip()),
                    low=Decimal(str(row["low"]).strip()),
                    close=Decimal(str(row["close"]).strip()),
                    volume=Decimal(str(row.get("volume") or "0").strip()),
                ))
            except (InvalidOperation, ValueError, TypeError) as e:
                skipped += 1
                log.warning(f"{path}:{line_no}: skipping malformed row ({e})")
    candles.sort(key=lambda c: c.timestamp)
    log.info(f"Loaded {len(candles)} {symbol.upper()} candles from {path} ({skipped} skipped)")
    return candles


def _backoff_sec(attempt: int) -> float:
    return min(KLINE_FETCH_BACKOFF_MAX_SEC, KLINE_FETCH_BACKOFF_BASE_SEC * (2 ** max(0, attempt)))


def normalize_klines(symbol: str, raw: list, now_ms: Optional[int] = None) -> List[Candle]:
    """Binance kline rows -> closed Candles (the still-forming candle is dropped)."""
    now_ms = int(now_ms if now_ms is not None else time.time() * 1000)
    candles: List[Candle] = []
    for row in raw or []:
        try:
            close_time_ms = int(row[6])
            if close_time_ms >= now_ms:
                continue
            candles.append(Candle(
                symbol=symbol.upper(),
                timestamp=int(row[0]) / 1000.0,
                open=Decimal(str(row[1])),
                high=Decimal(str(row[2])),
                low=Decimal(str(row[3])),
                close=Decimal(str(row[4])),
                volume=Decimal(str(row[5])),
            ))
        except (IndexError, InvalidOperation, TypeError, ValueError):
            continue
    candles.sort(key=lambda c: c.timestamp)
    return candles


class KlinePoller:
    """Polls Binance klines and stores closed candles."""

    def __init__(
        self,
        db: WickGuardDB,
        symbol: str,
        config: Optional[FeedConfig] = None,
        on_candles: Optional[Callable[[], None]] = None,
    ):
        self.db = db
        self.symbol = symbol.upper()
        self.config = config or FeedConfig()
        self.on_candles = on_candles
        self.log = get_logger("feed.binance")
        self._running = False
        self._session: Optional[aiohttp.ClientSession] = None
        if self.config.interval not in INTERVAL_MS:
            raise ValueError(f"unsupported kline interval: {self.config.interval}")

    async def _fetch(self, limit: int) -> Optional[list]:
        url = f"{self.config.base_url}{KLINES_PATH}"
        params = {"symbol": self.symbol, "interval": self.config.interval, "limit": int(limit)}
        for attempt in range(KLINE_FETCH_MAX_RETRIES):
            try:
                async with self._session.get(url, params=params) as resp:
                    if resp.status == 200:
                        return await resp.json()
                    body = (await resp.text()).replace("\n", " ")[:160]
                    if resp.status in (418, 429):
                        self.log.warning(f"Binance rate-limited (status={resp.status}); skipping poll")
                        return None
                    if resp.status in (500, 502, 503, 504):
                        self.log.warning(
                            f"Binance klines retry {attempt+1}/{KLINE_FETCH_MAX_RETRIES} "
                            f"status={resp.status} body={body}"
                        )
                        await asyncio.sleep(_backoff_sec(attempt))
                        continue
                    self.log.warning(f"Binance klines failed status={resp.status} body={body}")
                    return None
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                self.log.warning(f"Binance klines error attempt {attempt+1}: {exc}")
                await asyncio.sleep(_backoff_sec(attempt))
        return None

    async def poll_once(self, limit: int = KLINES_POLL_LIMIT) -> int:
        """Fetch the latest klines and store closed ones. Returns new rows stored."""
        raw = await self._fetch(limit)
        if raw is None:
            return 0
        inserted = self.db.insert_candles(normalize_klines(self.symbol, raw))
        if inserted:
            self.log.debug(f"Stored {inserted} new {self.symbol} {self.config.interval} candle(s)")
            if self.on_candles is not None:
                self.on_candles()
        return inserted

    async def start(self) -> None:
        """Poll until stop() is called."""
        self._running = True
        timeout = aiohttp.ClientTimeout(total=15)
        self.log.info(
            f"Starting Binance kline feed for {self.symbol} "
            f"({self.config.interval}, every {self.config.poll_interval_sec}s)"
        )
        async with aiohttp.ClientSession(timeout=timeout) as session:
            self._session = session
            try:
                while self._running:
                    try:
                        await self.poll_once()
                    except Exception as e:
                        self.log.error(f"Kline poll error: {e}")
                    if not self._running:
                        break
                    await asyncio.sleep(float(self.config.poll_interval_sec))
            finally:
                self._session = None
        self.log.info("Kline feed stopped")

    def stop(self) -> None:
        self._running = False
