from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Union

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from tickbridge.api.config import Settings, load_settings
from tickbridge.api.context import ServiceContext
from tickbridge.api.errors import BridgeError, NotFound, Unauthorized, ValidationFailed
from tickbridge.api.guards import cooldown_remaining
from tickbridge.api.ticks import parse_tick_body
from tickbridge.common.clock import parse_time_to_ms
from tickbridge.common.logging import get_logger
from tickbridge.common.models import INTERVAL_MS, Candle

log = get_logger("tickbridge.api")


# ---------------- Bodies ----------------
class SignalCreate(BaseModel):
    symbol: str
    direction: str
    stop_loss: Any = None
    take_profits: Union[str, List[float], None] = None
    risk_pct: Optional[float] = None
    comment: str = ""
    id: Optional[str] = None
    secret: Optional[str] = None


class ExecutionReport(BaseModel):
    signal_id: str
    ticket: Optional[Union[str, int]] = None
    fill_price: Optional[float] = None
    confirmed: bool = False
    ts: Optional[Any] = None


class CloseReport(BaseModel):
    signal_id: str
    outcome: Optional[str] = None
    result: Optional[Union[str, float]] = None
    closed_at: Optional[Any] = None


class StatusReport(BaseModel):
    symbol: str
    account: str
    has_position: bool


class CooldownSet(BaseModel):
    symbol: str
    active: bool = True
    until: Optional[Any] = None
    minutes: Optional[float] = None
    reason: Optional[str] = None
    secret: Optional[str] = None


class ClaimReq(BaseModel):
    symbol: str
    kind: str
    ref: int


class SeedCandle(BaseModel):
    start: Any
    open: float
    high: float
    low: float
    close: float


class SeedReq(BaseModel):
    symbol: str
    interval: str = "15m"
    candles: List[SeedCandle]


# ---------------- Helpers ----------------
def _candle_out(c: Candle) -> Dict[str, Any]:
    return c.model_dump()


def _ms_param(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    ms = parse_time_to_ms(value)
    if ms is None:
        raise ValidationFailed(f"bad_{name}", {name: value})
    return ms


def create_app(settings: Optional[Settings] = None, ctx: Optional[ServiceContext] = None) -> FastAPI:
    ctx = ctx or ServiceContext(settings or load_settings())
    cfg = ctx.settings

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        await ctx.start()
        yield
        await ctx.stop()

    app = FastAPI(title="tickbridge", lifespan=lifespan)
    app.state.ctx = ctx

    @app.exception_handler(BridgeError)
    async def _bridge_error(_: Request, exc: BridgeError):
        return JSONResponse(status_code=exc.status_code, content=exc.payload())

    def _require_secret(provided: Optional[str]) -> None:
        if cfg.signal_secret and provided != cfg.signal_secret:
            raise Unauthorized("unauthorized")

    def _allowed(symbol: str) -> str:
        sym = (symbol or "").strip().upper()
        if sym not in cfg.symbols:
            raise ValidationFailed("symbol_not_allowed", {"symbol": sym})
        return sym

    # ---------------- Health ----------------
    @app.get("/health")
    async def health():
        return {
            "status": "ok", "env": cfg.env, "persistence": ctx.storage.kind,
            "symbols": cfg.symbols, "intervals": cfg.intervals,
            "pending_writes": ctx.writer.pending, "write_failures": ctx.writer.failures,
        }

    # ---------------- Ticks ----------------
    @app.post("/price")
    async def post_price(request: Request):
        tick = parse_tick_body(await request.body(), ctx.clock.now_ms(), cfg.max_tick_drift_ms)
        _allowed(tick.symbol)
        ctx.ingest(tick)
        return PlainTextResponse("ok")

    @app.get("/price")
    async def get_price(symbol: Optional[str] = None):
        tick = ctx.ticks.get(symbol)
        if tick is None:
            return JSONResponse(status_code=404, content={"ok": False})
        return {"ok": True, **tick.model_dump(), "mid": tick.mid, "time": ctx.venue.iso(tick.ts)}

    # ---------------- Candles ----------------
    @app.get("/candles")
    async def get_candles(
        symbol: str,
        interval: str = "15m",
        since: Optional[str] = None,
        until: Optional[str] = None,
        hours: Optional[float] = Query(None, gt=0),
        limit: Optional[int] = Query(None, ge=1),
        include_gap: bool = True,
    ):
        symbol = symbol.strip().upper()
        if interval not in INTERVAL_MS:
            raise ValidationFailed("unsupported_interval", {"interval": interval})
        now = ctx.clock.now_ms()
        since_ms, until_ms = _ms_param("since", since), _ms_param("until", until)
        if since_ms is None and hours is not None:
            since_ms = now - int(hours * 3_600_000)
        rows = await ctx.candles.query(symbol, interval, now, since_ms=since_ms, until_ms=until_ms,
                                       limit=limit, include_gap=include_gap)
        return {
            "ok": True, "symbol": symbol, "interval": interval,
            "persistence": ctx.storage.kind, "count": len(rows),
            "candles": [_candle_out(c) for c in rows],
        }

    @app.post("/candles/seed")
    async def seed_candles(body: SeedReq):
        symbol = _allowed(body.symbol)
        if body.interval not in INTERVAL_MS:
            raise ValidationFailed("unsupported_interval", {"interval": body.interval})
        itv_ms = INTERVAL_MS[body.interval]
        rows = []
        for c in body.candles:
            start = _ms_param("start", c.start)
            rows.append(Candle(symbol=symbol, interval=body.interval, start_ms=start, end_ms=start + itv_ms,
                               open=c.open, high=c.high, low=c.low, close=c.close, last_tick_ms=start))
        merged = ctx.candles.seed(symbol, body.interval, rows)
        return {"ok": True, "symbol": symbol, "interval": body.interval, "merged": merged}

    # ---------------- Signals ----------------
    @app.post("/signal")
    async def create_signal(body: SignalCreate, x_signal_secret: Optional[str] = Header(None)):
        _require_secret(x_signal_secret or body.secret)
        sig = await ctx.registry.create(
            body.symbol, body.direction, body.stop_loss, body.take_profits,
            risk_pct=body.risk_pct, comment=body.comment, id=body.id,
        )
        return {"ok": True, "signal": sig.model_dump(mode="json")}

    @app.get("/signal/next")
    async def next_signal(symbol: str, since: Optional[str] = None):
        sig = await ctx.registry.next(symbol, _ms_param("since", since) or 0)
        return {"ok": True, "signal": sig.model_dump(mode="json") if sig else None}

    @app.get("/signal/{signal_id}")
    async def get_signal(signal_id: str):
        sig = await ctx.registry.get(signal_id)
        return {"ok": True, "signal": sig.model_dump(mode="json")}

    @app.post("/signal/executed")
    async def signal_executed(body: ExecutionReport):
        sig, ex = await ctx.registry.mark_executed(
            body.signal_id, ticket=body.ticket, fill_price=body.fill_price,
            confirmed=body.confirmed, filled_at_ms=_ms_param("ts", body.ts),
        )
        return {"ok": True, "signal": sig.model_dump(mode="json"), "execution": ex.model_dump()}

    @app.post("/signal/closed")
    async def signal_closed(body: CloseReport):
        sig = await ctx.registry.mark_closed(
            body.signal_id, outcome=body.outcome, result=body.result,
            closed_at_ms=_ms_param("closed_at", body.closed_at),
        )
        return {"ok": True, "signal": sig.model_dump(mode="json")}

    # ---------------- EA status / cooldown ----------------
    @app.post("/ea/status")
    async def post_status(body: StatusReport):
        st = await ctx.state.report_status(_allowed(body.symbol), body.account, body.has_position, ctx.clock.now_ms())
        return {"ok": True, "status": st.model_dump()}

    @app.get("/ea/status")
    async def get_status(symbol: str, account: Optional[str] = None):
        st = await ctx.state.status(symbol.strip().upper(), account)
        if st is None:
            raise NotFound("status_not_found", {"symbol": symbol})
        age = max(0, ctx.clock.now_ms() - st.reported_at_ms)
        return {"ok": True, "status": st.model_dump(), "age_ms": age,
                "fresh": age <= cfg.status_max_age_s * 1000}

    @app.post("/ea/cooldown")
    async def post_cooldown(body: CooldownSet, x_signal_secret: Optional[str] = Header(None)):
        _require_secret(x_signal_secret or body.secret)
        now = ctx.clock.now_ms()
        until_ms = _ms_param("until", body.until)
        if until_ms is None and body.minutes is not None:
            until_ms = now + int(body.minutes * 60_000)
        if body.active and until_ms is None:
            raise ValidationFailed("bad_until", {"until": body.until, "minutes": body.minutes})
        st = await ctx.state.set_cooldown(_allowed(body.symbol), body.active, until_ms, body.reason, now)
        return {"ok": True, "cooldown": st.model_dump()}

    @app.get("/ea/cooldown")
    async def get_cooldown(symbol: str):
        now = ctx.clock.now_ms()
        st = await ctx.state.cooldown(symbol.strip().upper())
        remaining, until, source = cooldown_remaining(st, now, int(cfg.cooldown_minutes * 60_000))
        return {"ok": True, "cooldown": st.model_dump() if st else None,
                "active": remaining > 0, "remaining_ms": remaining, "until_ms": until, "source": source}

    # ---------------- Claims ----------------
    @app.post("/claim")
    async def claim(body: ClaimReq):
        res = await ctx.claims.claim(body.symbol, body.kind, body.ref)
        return {"ok": True, **res.model_dump()}

    @app.get("/notify/stats")
    async def notify_stats():
        return {"ok": True, "notifier": ctx.queue.notifier.name, "queued": ctx.queue.size, **ctx.queue.stats}

    @app.get("/")
    async def root():
        return PlainTextResponse("ok")

    return app
