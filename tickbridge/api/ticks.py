# tickbridge/api/ticks.py
from __future__ import annotations
import json
import math
from typing import Any, Dict, Optional

import redis.asyncio as redis

from tickbridge.api.errors import ValidationFailed
from tickbridge.api.tasks import BackgroundWriter
from tickbridge.common.clock import parse_time_to_ms
from tickbridge.common.logging import get_logger
from tickbridge.common.models import Tick

log = get_logger("tickbridge.ticks")


def first_json_object(raw: Any) -> Optional[str]:
    """Everything between the first '{' and the last '}' (EAs pad bodies with NULs)."""
    s = raw.decode("utf-8", "ignore") if isinstance(raw, (bytes, bytearray)) else str(raw or "")
    a, b = s.find("{"), s.rfind("}")
    if a == -1 or b == -1 or b <= a:
        return None
    return s[a:b + 1]


def parse_tick_body(raw: Any, now_ms: int, max_drift_ms: int) -> Tick:
    """
    {symbol, bid, ask, ts?, time?}. The client timestamp is trusted only when
    within max_drift_ms of server time; otherwise server time is used.
    """
    js = first_json_object(raw)
    if js is None:
        raise ValidationFailed("bad")
    try:
        data = json.loads(js)
    except ValueError:
        raise ValidationFailed("bad_json")
    if not isinstance(data, dict):
        raise ValidationFailed("bad_json")

    symbol, bid, ask = data.get("symbol"), data.get("bid"), data.get("ask")
    if not symbol or bid is None or ask is None:
        raise ValidationFailed("bad")
    try:
        bid_f, ask_f = float(bid), float(ask)
    except (TypeError, ValueError):
        raise ValidationFailed("bad")
    if not (math.isfinite(bid_f) and math.isfinite(ask_f)):
        raise ValidationFailed("bad")

    ts_candidate: Optional[int] = None
    raw_ts, raw_time = data.get("ts"), data.get("time")
    if raw_ts is not None:
        ts_candidate = parse_time_to_ms(raw_ts)
    if ts_candidate is None and raw_time is not None:
        ts_candidate = parse_time_to_ms(raw_time)

    use_client = ts_candidate is not None and abs(ts_candidate - now_ms) <= max_drift_ms
    ts = ts_candidate if use_client else now_ms
    return Tick(
        symbol=str(symbol).strip().upper(), bid=bid_f, ask=ask_f, ts=ts,
        raw_time=None if raw_time is None else str(raw_time),
        raw_ts=None if raw_ts is None else str(raw_ts),
        used_server_time=not use_client,
    )


class TickBoard:
    """Latest tick per symbol; mirrored to Redis (hash last_ticks + channel ticks) when configured."""

    def __init__(self, writer: BackgroundWriter, redis_url: str = ""):
        self.writer = writer
        self.redis_url = redis_url
        self._r: Optional[redis.Redis] = redis.from_url(redis_url, decode_responses=True) if redis_url else None
        self._last: Dict[str, Tick] = {}
        self.latest: Optional[Tick] = None

    def put(self, tick: Tick) -> None:
        self._last[tick.symbol] = tick
        self.latest = tick
        if self._r is not None:
            self.writer.submit("ticks.redis", self._mirror, tick)

    async def _mirror(self, tick: Tick) -> None:
        payload = json.dumps({"symbol": tick.symbol, "bid": tick.bid, "ask": tick.ask,
                              "close": tick.mid, "ts": tick.ts})
        await self._r.hset("last_ticks", tick.symbol, payload)
        await self._r.publish("ticks", payload)

    def get(self, symbol: Optional[str] = None) -> Optional[Tick]:
        if symbol:
            return self._last.get(symbol.upper())
        return self.latest

    async def close(self) -> None:
        if self._r is not None:
            await self._r.aclose()
