from __future__ import annotations
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker
from typing import Any, List, Dict, Iterable, Optional, Tuple
import json

from tickbridge.api.errors import StorageRequired
from tickbridge.common.models import (
    AccountStatus, Candle, ClaimRecord, CooldownState, Execution, Signal, SignalStatus,
)

# Portable between PostgreSQL (asyncpg) and SQLite (aiosqlite): one statement per execute.
SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS candles (
      symbol TEXT NOT NULL,
      tf TEXT NOT NULL,
      start_ms BIGINT NOT NULL,
      end_ms BIGINT NOT NULL,
      open DOUBLE PRECISION NOT NULL,
      high DOUBLE PRECISION NOT NULL,
      low DOUBLE PRECISION NOT NULL,
      close DOUBLE PRECISION NOT NULL,
      last_tick_ms BIGINT NOT NULL,
      gap BOOLEAN NOT NULL DEFAULT FALSE,
      seeded BOOLEAN NOT NULL DEFAULT FALSE,
      PRIMARY KEY (symbol, tf, start_ms)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS signals (
      id TEXT PRIMARY KEY,
      symbol TEXT NOT NULL,
      direction TEXT NOT NULL,
      stop_loss DOUBLE PRECISION NOT NULL,
      take_profits TEXT NOT NULL,
      risk_pct DOUBLE PRECISION NOT NULL,
      comment TEXT NOT NULL DEFAULT '',
      status TEXT NOT NULL,
      created_at_ms BIGINT NOT NULL,
      executed_at_ms BIGINT,
      closed_at_ms BIGINT,
      outcome TEXT,
      result TEXT,
      chat_id TEXT,
      message_id BIGINT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_signals_pending ON signals(symbol, status, created_at_ms)",
    """
    CREATE TABLE IF NOT EXISTS executions (
      signal_id TEXT PRIMARY KEY,
      ticket TEXT,
      fill_price DOUBLE PRECISION,
      filled_at_ms BIGINT NOT NULL,
      confirmed BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS cooldowns (
      symbol TEXT PRIMARY KEY,
      active BOOLEAN NOT NULL DEFAULT FALSE,
      until_ms BIGINT,
      reason TEXT,
      last_executed_ms BIGINT,
      updated_at_ms BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_status (
      symbol TEXT NOT NULL,
      account TEXT NOT NULL,
      has_position BOOLEAN NOT NULL,
      reported_at_ms BIGINT NOT NULL,
      PRIMARY KEY (symbol, account)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS claims (
      symbol TEXT NOT NULL,
      kind TEXT NOT NULL,
      ref_bucket_ms BIGINT NOT NULL,
      created_at_ms BIGINT NOT NULL,
      token TEXT NOT NULL,
      PRIMARY KEY (symbol, kind, ref_bucket_ms)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
      ts_ms BIGINT NOT NULL,
      level TEXT NOT NULL,
      source TEXT NOT NULL,
      type TEXT NOT NULL,
      payload TEXT NOT NULL
    )
    """,
]

_SIGNAL_COLS = ("id, symbol, direction, stop_loss, take_profits, risk_pct, comment, status, "
                "created_at_ms, executed_at_ms, closed_at_ms, outcome, result, chat_id, message_id")


# ---------- row helpers ----------
def _candle(m: Dict[str, Any]) -> Candle:
    return Candle(
        symbol=m["symbol"], interval=m["tf"],
        start_ms=int(m["start_ms"]), end_ms=int(m["end_ms"]),
        open=float(m["open"]), high=float(m["high"]), low=float(m["low"]), close=float(m["close"]),
        last_tick_ms=int(m["last_tick_ms"]), gap=bool(m["gap"]), seeded=bool(m["seeded"]),
    )


def _signal(m: Dict[str, Any]) -> Signal:
    m = dict(m)
    m["take_profits"] = json.loads(m["take_profits"])
    m["stop_loss"] = float(m["stop_loss"])
    m["risk_pct"] = float(m["risk_pct"])
    m["status"] = SignalStatus(m["status"])
    return Signal(**m)


def _cooldown(m: Dict[str, Any]) -> CooldownState:
    m = dict(m)
    m["active"] = bool(m["active"])
    return CooldownState(**m)


class Storage:
    """Persistence capability. Core code calls it unconditionally; NullStorage makes it a no-op."""
    kind = "memory"

    async def init(self) -> None: ...
    async def close(self) -> None: ...

    # candles
    async def upsert_candles(self, rows: Iterable[Candle]) -> None: ...
    async def load_candles(self, symbol: str, interval: str, since_ms: Optional[int] = None,
                           until_ms: Optional[int] = None, limit: int = 5000) -> List[Candle]:
        return []
    async def candle_symbols(self) -> List[str]:
        return []

    # signals
    async def insert_signal(self, sig: Signal) -> Tuple[Signal, bool]:
        raise StorageRequired({"op": "create"})
    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        raise StorageRequired({"op": "get"})
    async def next_signal(self, symbol: str, since_ms: int) -> Optional[Signal]:
        raise StorageRequired({"op": "next"})
    async def transition_signal(self, signal_id: str, dst: SignalStatus, sources: Iterable[SignalStatus],
                                fields: Dict[str, Any]) -> bool:
        raise StorageRequired({"op": "transition"})
    async def set_signal_message(self, signal_id: str, chat_id: str, message_id: int) -> None:
        raise StorageRequired({"op": "message"})
    async def upsert_execution(self, ex: Execution) -> None:
        raise StorageRequired({"op": "execution"})
    async def get_execution(self, signal_id: str) -> Optional[Execution]:
        raise StorageRequired({"op": "execution"})

    # guard state
    async def upsert_cooldown(self, st: CooldownState) -> None: ...
    async def touch_last_executed(self, symbol: str, ts_ms: int) -> None: ...
    async def get_cooldown(self, symbol: str) -> Optional[CooldownState]:
        return None
    async def upsert_status(self, st: AccountStatus) -> None: ...
    async def get_status(self, symbol: str, account: str) -> Optional[AccountStatus]:
        return None

    # claims / events
    async def claim(self, rec: ClaimRecord) -> Optional[Tuple[int, str]]:
        return None
    async def insert_event(self, level: str, source: str, type_: str, payload: Dict[str, Any], ts_ms: int) -> None: ...


class NullStorage(Storage):
    """No database configured: best-effort writes vanish, signals need a real store."""


class SqlStorage(Storage):
    def __init__(self, dsn: str):
        self.dsn = dsn
        self.kind = "sqlite" if dsn.startswith("sqlite") else "postgres"
        self._engine: AsyncEngine = create_async_engine(dsn, echo=False, pool_pre_ping=True)
        self._sessionmaker = sessionmaker(self._engine, expire_on_commit=False, class_=AsyncSession)

    def session(self) -> AsyncSession:
        return self._sessionmaker()

    async def init(self) -> None:
        async with self.session() as s:
            for ddl in SCHEMA:
                await s.execute(text(ddl))
            await s.commit()

    async def close(self) -> None:
        await self._engine.dispose()

    # ---------- CANDLES ----------
    async def upsert_candles(self, rows: Iterable[Candle]) -> None:
        rows = list(rows)
        if not rows:
            return
        q = text("""
            INSERT INTO candles (symbol, tf, start_ms, end_ms, open, high, low, close, last_tick_ms, gap, seeded)
            VALUES (:symbol, :tf, :start_ms, :end_ms, :open, :high, :low, :close, :last_tick_ms, :gap, :seeded)
            ON CONFLICT (symbol, tf, start_ms) DO UPDATE SET
              end_ms=EXCLUDED.end_ms, open=EXCLUDED.open, high=EXCLUDED.high, low=EXCLUDED.low,
              close=EXCLUDED.close, last_tick_ms=EXCLUDED.last_tick_ms,
              gap=EXCLUDED.gap, seeded=EXCLUDED.seeded
        """)
        params = [{
            "symbol": c.symbol, "tf": c.interval, "start_ms": c.start_ms, "end_ms": c.end_ms,
            "open": c.open, "high": c.high, "low": c.low, "close": c.close,
            "last_tick_ms": c.last_tick_ms, "gap": c.gap, "seeded": c.seeded,
        } for c in rows]
        async with self.session() as s:
            await s.execute(q, params)
            await s.commit()

    async def load_candles(self, symbol: str, interval: str, since_ms: Optional[int] = None,
                           until_ms: Optional[int] = None, limit: int = 5000) -> List[Candle]:
        where = ["symbol=:sym", "tf=:tf"]
        params: Dict[str, Any] = {"sym": symbol, "tf": interval, "lim": int(limit)}
        if since_ms is not None:
            where.append("start_ms >= :since")
            params["since"] = int(since_ms)
        if until_ms is not None:
            where.append("start_ms <= :until")
            params["until"] = int(until_ms)
        # newest N, returned oldest-first
        q = text(f"""
            SELECT symbol, tf, start_ms, end_ms, open, high, low, close, last_tick_ms, gap, seeded
            FROM candles
            WHERE {" AND ".join(where)}
            ORDER BY start_ms DESC
            LIMIT :lim
        """)
        async with self.session() as s:
            res = await s.execute(q, params)
            out = [_candle(dict(r._mapping)) for r in res.fetchall()]
        out.reverse()
        return out

    async def candle_symbols(self) -> List[str]:
        async with self.session() as s:
            res = await s.execute(text("SELECT DISTINCT symbol FROM candles ORDER BY symbol"))
            return [r[0] for r in res.fetchall()]

    # ---------- SIGNALS ----------
    async def insert_signal(self, sig: Signal) -> Tuple[Signal, bool]:
        """Idempotent on id: a retried create returns the existing row and created=False."""
        q = text("""
            INSERT INTO signals (id, symbol, direction, stop_loss, take_profits, risk_pct, comment, status, created_at_ms)
            VALUES (:id, :symbol, :direction, :sl, :tps, :risk, :comment, :status, :created)
            ON CONFLICT (id) DO NOTHING
        """)
        async with self.session() as s:
            res = await s.execute(q, {
                "id": sig.id, "symbol": sig.symbol, "direction": sig.direction, "sl": sig.stop_loss,
                "tps": json.dumps(sig.take_profits), "risk": sig.risk_pct, "comment": sig.comment,
                "status": sig.status.value, "created": sig.created_at_ms,
            })
            created = (res.rowcount or 0) > 0
            await s.commit()
        stored = await self.get_signal(sig.id)
        return (stored or sig), created

    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        async with self.session() as s:
            res = await s.execute(text(f"SELECT {_SIGNAL_COLS} FROM signals WHERE id=:id"), {"id": signal_id})
            row = res.fetchone()
        return _signal(row._mapping) if row else None

    async def next_signal(self, symbol: str, since_ms: int) -> Optional[Signal]:
        q = text(f"""
            SELECT {_SIGNAL_COLS}
            FROM signals
            WHERE symbol=:s AND status=:st AND created_at_ms >= :since
            ORDER BY created_at_ms ASC, id ASC
            LIMIT 1
        """)
        async with self.session() as s:
            res = await s.execute(q, {"s": symbol, "st": SignalStatus.NEW.value, "since": int(since_ms)})
            row = res.fetchone()
        return _signal(row._mapping) if row else None

    async def transition_signal(self, signal_id: str, dst: SignalStatus, sources: Iterable[SignalStatus],
                                fields: Dict[str, Any]) -> bool:
        """Single conditional UPDATE, so concurrent reports cannot move a signal backwards."""
        sources = list(sources)
        sets = ["status=:dst"] + [f"{k}=:f_{k}" for k in fields]
        src_ph = ", ".join(f":src{i}" for i in range(len(sources)))
        params: Dict[str, Any] = {"id": signal_id, "dst": dst.value}
        params.update({f"src{i}": st.value for i, st in enumerate(sources)})
        params.update({f"f_{k}": v for k, v in fields.items()})
        q = text(f"UPDATE signals SET {', '.join(sets)} WHERE id=:id AND status IN ({src_ph})")
        async with self.session() as s:
            res = await s.execute(q, params)
            await s.commit()
            return (res.rowcount or 0) > 0

    async def set_signal_message(self, signal_id: str, chat_id: str, message_id: int) -> None:
        async with self.session() as s:
            await s.execute(text("UPDATE signals SET chat_id=:c, message_id=:m WHERE id=:id"),
                            {"c": str(chat_id), "m": int(message_id), "id": signal_id})
            await s.commit()

    async def upsert_execution(self, ex: Execution) -> None:
        q = text("""
            INSERT INTO executions (signal_id, ticket, fill_price, filled_at_ms, confirmed)
            VALUES (:sid, :ticket, :px, :ts, :ok)
            ON CONFLICT (signal_id) DO UPDATE SET
              ticket=EXCLUDED.ticket, fill_price=EXCLUDED.fill_price,
              filled_at_ms=EXCLUDED.filled_at_ms, confirmed=EXCLUDED.confirmed
        """)
        async with self.session() as s:
            await s.execute(q, {"sid": ex.signal_id, "ticket": ex.ticket, "px": ex.fill_price,
                                "ts": ex.filled_at_ms, "ok": ex.confirmed})
            await s.commit()

    async def get_execution(self, signal_id: str) -> Optional[Execution]:
        async with self.session() as s:
            res = await s.execute(text("""
                SELECT signal_id, ticket, fill_price, filled_at_ms, confirmed
                FROM executions WHERE signal_id=:sid
            """), {"sid": signal_id})
            row = res.fetchone()
        if not row:
            return None
        m = dict(row._mapping)
        m["confirmed"] = bool(m["confirmed"])
        return Execution(**m)

    # ---------- COOLDOWN / STATUS ----------
    async def upsert_cooldown(self, st: CooldownState) -> None:
        q = text("""
            INSERT INTO cooldowns (symbol, active, until_ms, reason, last_executed_ms, updated_at_ms)
            VALUES (:s, :a, :u, :r, :le, :ts)
            ON CONFLICT (symbol) DO UPDATE SET
              active=EXCLUDED.active, until_ms=EXCLUDED.until_ms, reason=EXCLUDED.reason,
              updated_at_ms=EXCLUDED.updated_at_ms
        """)
        async with self.session() as s:
            await s.execute(q, {"s": st.symbol, "a": st.active, "u": st.until_ms, "r": st.reason,
                                "le": st.last_executed_ms, "ts": st.updated_at_ms})
            await s.commit()

    async def touch_last_executed(self, symbol: str, ts_ms: int) -> None:
        q = text("""
            INSERT INTO cooldowns (symbol, active, last_executed_ms, updated_at_ms)
            VALUES (:s, :a, :le, :le)
            ON CONFLICT (symbol) DO UPDATE SET
              last_executed_ms=EXCLUDED.last_executed_ms, updated_at_ms=EXCLUDED.updated_at_ms
        """)
        async with self.session() as s:
            await s.execute(q, {"s": symbol, "a": False, "le": int(ts_ms)})
            await s.commit()

    async def get_cooldown(self, symbol: str) -> Optional[CooldownState]:
        async with self.session() as s:
            res = await s.execute(text("""
                SELECT symbol, active, until_ms, reason, last_executed_ms, updated_at_ms
                FROM cooldowns WHERE symbol=:s
            """), {"s": symbol})
            row = res.fetchone()
        return _cooldown(row._mapping) if row else None

    async def upsert_status(self, st: AccountStatus) -> None:
        q = text("""
            INSERT INTO account_status (symbol, account, has_position, reported_at_ms)
            VALUES (:s, :acc, :pos, :ts)
            ON CONFLICT (symbol, account) DO UPDATE SET
              has_position=EXCLUDED.has_position, reported_at_ms=EXCLUDED.reported_at_ms
        """)
        async with self.session() as s:
            await s.execute(q, {"s": st.symbol, "acc": st.account, "pos": st.has_position, "ts": st.reported_at_ms})
            await s.commit()

    async def get_status(self, symbol: str, account: str) -> Optional[AccountStatus]:
        async with self.session() as s:
            res = await s.execute(text("""
                SELECT symbol, account, has_position, reported_at_ms
                FROM account_status WHERE symbol=:s AND account=:acc
            """), {"s": symbol, "acc": account})
            row = res.fetchone()
        if not row:
            return None
        m = dict(row._mapping)
        m["has_position"] = bool(m["has_position"])
        return AccountStatus(**m)

    # ---------- CLAIMS / EVENTS ----------
    async def claim(self, rec: ClaimRecord) -> Optional[Tuple[int, str]]:
        """Insert-if-absent then read back; the primary key decides the winner."""
        async with self.session() as s:
            await s.execute(text("""
                INSERT INTO claims (symbol, kind, ref_bucket_ms, created_at_ms, token)
                VALUES (:s, :k, :r, :ts, :tok)
                ON CONFLICT (symbol, kind, ref_bucket_ms) DO NOTHING
            """), {"s": rec.symbol, "k": rec.kind, "r": rec.ref_bucket_ms, "ts": rec.created_at_ms, "tok": rec.token})
            await s.commit()
            res = await s.execute(text("""
                SELECT created_at_ms, token FROM claims
                WHERE symbol=:s AND kind=:k AND ref_bucket_ms=:r
            """), {"s": rec.symbol, "k": rec.kind, "r": rec.ref_bucket_ms})
            row = res.fetchone()
        return (int(row[0]), str(row[1])) if row else None

    async def insert_event(self, level: str, source: str, type_: str, payload: Dict[str, Any], ts_ms: int) -> None:
        q = text("""
            INSERT INTO events (ts_ms, level, source, type, payload)
            VALUES (:ts, :lvl, :src, :typ, :pl)
        """)
        async with self.session() as s:
            await s.execute(q, {"ts": ts_ms, "lvl": level, "src": source, "typ": type_,
                                "pl": json.dumps(payload, default=str)})
            await s.commit()


def build_storage(dsn: Optional[str]) -> Storage:
    return SqlStorage(dsn) if dsn else NullStorage()
