from __future__ import annotations
import math
from typing import List

from tickbridge.common.models import INTERVAL_MS, Candle, CandleSeries

# --- petites utils ---

def bucket_start(ts_ms: int, interval_ms: int) -> int:
    return (ts_ms // interval_ms) * interval_ms


def _open(series: CandleSeries, start: int, interval_ms: int, price: float, ts_ms: int) -> Candle:
    return Candle(
        symbol=series.symbol, interval=series.interval,
        start_ms=start, end_ms=start + interval_ms,
        open=price, high=price, low=price, close=price,
        last_tick_ms=ts_ms,
    )


def gap_candles(series: CandleSeries, prev: Candle, until_start: int, interval_ms: int) -> List[Candle]:
    """Flat candles at prev.close for every bucket strictly between prev and until_start."""
    out: List[Candle] = []
    nxt = prev.start_ms + interval_ms
    while nxt < until_start:
        out.append(Candle(
            symbol=series.symbol, interval=series.interval,
            start_ms=nxt, end_ms=nxt + interval_ms,
            open=prev.close, high=prev.close, low=prev.close, close=prev.close,
            last_tick_ms=nxt, gap=True,
        ))
        nxt += interval_ms
    return out


class CandleAggregator:
    """
    OHLC state machine for one series. update() mutates series.current and
    returns the candles it finalized (closed candle first, then gap fillers).
    Ticks older than the current bucket, or than the last finalized bucket
    when nothing is open, are dropped, never reordered.
    """

    def update(self, series: CandleSeries, price: float, ts_ms: int) -> List[Candle]:
        interval_ms = INTERVAL_MS.get(series.interval)
        if interval_ms is None:
            return []
        try:
            price = float(price)
            ts_ms = int(ts_ms)
        except (TypeError, ValueError, OverflowError):
            return []
        if not math.isfinite(price):
            return []

        start = bucket_start(ts_ms, interval_ms)
        cur = series.current

        if cur is None:
            # after seed or warm start the history tail may already be later than this tick
            if series.history and start <= series.history[-1].start_ms:
                return []
            series.current = _open(series, start, interval_ms, price, ts_ms)
            return []

        if ts_ms < cur.start_ms:
            return []

        if start == cur.start_ms:
            cur.high = max(cur.high, price)
            cur.low = min(cur.low, price)
            cur.close = price
            cur.last_tick_ms = ts_ms
            return []

        finished = [cur] + gap_candles(series, cur, start, interval_ms)
        series.current = _open(series, start, interval_ms, price, ts_ms)
        return finished
