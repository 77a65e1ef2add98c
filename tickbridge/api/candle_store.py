# tickbridge/api/candle_store.py
from __future__ import annotations
import math
from typing import Dict, Iterable, List, Optional, Tuple

from tickbridge.api.db import Storage
from tickbridge.api.tasks import BackgroundWriter
from tickbridge.common.candles import CandleAggregator, bucket_start
from tickbridge.common.logging import get_logger
from tickbridge.common.models import INTERVAL_MS, Candle, CandleSeries

log = get_logger("tickbridge.candles")

WINDOW_MARGIN = 5


def clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


class CandleStore:
    """
    In-memory series per (symbol, interval), authoritative for this process.
    Finalized candles are mirrored to storage best-effort; warm_start() reloads them.
    """

    def __init__(self, storage: Storage, writer: BackgroundWriter, intervals: Iterable[str],
                 cap: int = 4000, query_floor: int = 200, query_ceiling: int = 5000,
                 aggregator: Optional[CandleAggregator] = None):
        self.storage = storage
        self.writer = writer
        self.intervals = [i for i in intervals if i in INTERVAL_MS]
        self.cap = int(cap)
        self.query_floor = int(query_floor)
        self.query_ceiling = int(query_ceiling)
        self.aggregator = aggregator or CandleAggregator()
        self._series: Dict[Tuple[str, str], CandleSeries] = {}

    def series(self, symbol: str, interval: str) -> CandleSeries:
        key = (symbol, interval)
        s = self._series.get(key)
        if s is None:
            s = self._series[key] = CandleSeries(symbol, interval)
        return s

    def peek(self, symbol: str, interval: str) -> Optional[CandleSeries]:
        return self._series.get((symbol, interval))

    # ---------- live ----------
    def update(self, symbol: str, interval: str, price: float, ts_ms: int) -> List[Candle]:
        if interval not in INTERVAL_MS:
            return []
        series = self.series(symbol, interval)
        finished = self.aggregator.update(series, price, ts_ms)
        for c in finished:
            self.push_finalized(series, c)
        if finished:
            self._persist(finished)
        return finished

    def ingest(self, symbol: str, price: float, ts_ms: int) -> Dict[str, List[Candle]]:
        """One tick fans out to every configured interval."""
        return {itv: self.update(symbol, itv, price, ts_ms) for itv in self.intervals}

    def push_finalized(self, series: CandleSeries, candle: Candle) -> None:
        series.history.append(candle)
        overflow = len(series.history) - self.cap
        if overflow > 0:
            del series.history[:overflow]

    def _persist(self, rows: List[Candle]) -> None:
        self.writer.submit("candles.upsert", self.storage.upsert_candles, list(rows))

    # ---------- backfill ----------
    def seed(self, symbol: str, interval: str, candles: Iterable[Candle]) -> int:
        """
        Merge external candles into history by bucket start (incoming wins).
        Buckets at or after the open live candle are skipped: the feed owns them.
        """
        interval_ms = INTERVAL_MS.get(interval)
        if interval_ms is None:
            return 0
        series = self.series(symbol, interval)
        live_start = series.current.start_ms if series.current else None

        merged = {c.start_ms: c for c in series.history}
        accepted: List[Candle] = []
        for c in candles:
            start = bucket_start(int(c.start_ms), interval_ms)
            if live_start is not None and start >= live_start:
                continue
            if not all(math.isfinite(x) for x in (c.open, c.high, c.low, c.close)):
                continue
            row = c.model_copy(update={
                "symbol": symbol, "interval": interval,
                "start_ms": start, "end_ms": start + interval_ms,
                "last_tick_ms": c.last_tick_ms or start, "seeded": True,
            })
            merged[start] = row
            accepted.append(row)

        history = [merged[k] for k in sorted(merged)]
        series.history = history[-self.cap:] if len(history) > self.cap else history
        if accepted:
            self._persist(accepted)
        log.info("seeded %s %s: %d candles (history=%d)", symbol, interval, len(accepted), len(series.history))
        return len(accepted)

    async def warm_start(self) -> int:
        """Reload the newest `cap` finalized candles per known symbol/interval; no open candle."""
        try:
            symbols = await self.storage.candle_symbols()
        except Exception as e:  # noqa: BLE001
            log.warning("warm start skipped, storage unavailable: %r", e)
            return 0
        loaded = 0
        for sym in symbols:
            for itv in self.intervals:
                try:
                    rows = await self.storage.load_candles(sym, itv, limit=self.cap)
                except Exception as e:  # noqa: BLE001
                    log.warning("warm start %s %s failed: %r", sym, itv, e)
                    continue
                if not rows:
                    continue
                series = CandleSeries(sym, itv)
                series.history = rows
                self._series[(sym, itv)] = series
                loaded += len(rows)
        log.info("warm start: %d candles for %d symbols", loaded, len(symbols))
        return loaded

    # ---------- read ----------
    def rows_for_window(self, span_ms: int, interval_ms: int) -> int:
        need = math.ceil(max(0, span_ms) / interval_ms) + WINDOW_MARGIN
        return int(clamp(need, self.query_floor, self.query_ceiling))

    async def query(self, symbol: str, interval: str, now_ms: int, since_ms: Optional[int] = None,
                    until_ms: Optional[int] = None, limit: Optional[int] = None,
                    include_gap: bool = True) -> List[Candle]:
        interval_ms = INTERVAL_MS[interval]
        if since_ms is not None:
            rows = self.rows_for_window((until_ms if until_ms is not None else now_ms) - since_ms, interval_ms)
        else:
            rows = int(clamp(limit or self.query_floor, self.query_floor, self.query_ceiling))
        cap = int(clamp(limit, 1, self.query_ceiling)) if limit else rows

        try:
            durable = await self.storage.load_candles(symbol, interval, since_ms, until_ms, rows)
        except Exception as e:  # noqa: BLE001
            log.warning("candle query fell back to memory for %s %s: %r", symbol, interval, e)
            durable = []

        by_start = {c.start_ms: c for c in durable}
        series = self.peek(symbol, interval)
        if series:
            for c in series.all():
                by_start[c.start_ms] = c

        out = []
        for k in sorted(by_start):
            c = by_start[k]
            if since_ms is not None and c.start_ms < since_ms:
                continue
            if until_ms is not None and c.start_ms > until_ms:
                continue
            if not include_gap and c.gap:
                continue
            out.append(c)
        return out[-cap:]
