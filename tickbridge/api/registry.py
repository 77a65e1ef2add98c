# tickbridge/api/registry.py
from __future__ import annotations
import math
import uuid
from typing import Any, Iterable, List, Optional, Tuple, Union

from tickbridge.api.db import Storage
from tickbridge.api.errors import BridgeError, IllegalTransition, NotFound, StorageRequired, ValidationFailed
from tickbridge.api.guards import AdmissionRequest, AdmissionState, SignalAdmissionGate
from tickbridge.api.notify import NotificationQueue, fmt_closed, fmt_recap, fmt_signal
from tickbridge.common.clock import ClockSource, VenueTime
from tickbridge.common.logging import get_logger
from tickbridge.common.models import Execution, Signal, SignalStatus, can_transition

log = get_logger("tickbridge.signals")

DIRECTIONS = ("BUY", "SELL")


def parse_take_profits(raw: Union[str, Iterable[Any], None]) -> List[float]:
    """'2010.5, 2015' or [2010.5, 2015] -> [2010.5, 2015.0]; raises ValueError on junk."""
    if raw is None:
        return []
    parts = raw.split(",") if isinstance(raw, str) else list(raw)
    out: List[float] = []
    for p in parts:
        if isinstance(p, str):
            p = p.strip()
            if not p:
                continue
        out.append(float(p))
    return out


def _positive(x: Any) -> Optional[float]:
    try:
        v = float(x)
    except (TypeError, ValueError):
        return None
    return v if math.isfinite(v) and v > 0 else None


class SignalRegistry:
    """
    Lifecycle new -> executed -> closed. Transitions are checked against the
    table in models.TRANSITIONS and applied with a conditional UPDATE.
    """

    def __init__(self, storage: Storage, gate: SignalAdmissionGate, state: AdmissionState,
                 queue: NotificationQueue, venue: VenueTime, clock: ClockSource,
                 symbols: Iterable[str], id_min_len: int = 8):
        self.storage = storage
        self.gate = gate
        self.state = state
        self.queue = queue
        self.venue = venue
        self.clock = clock
        self.symbols = {s.upper() for s in symbols}
        self.id_min_len = int(id_min_len)

    async def _store(self, coro):
        try:
            return await coro
        except BridgeError:
            raise
        except Exception as e:  # noqa: BLE001
            log.error("signal storage failure: %r", e)
            raise StorageRequired({"error": str(e)})

    # ---------- create ----------
    def validate(self, symbol: Any, direction: Any, stop_loss: Any, take_profits: Any,
                 risk_pct: Any = None, comment: Any = "", id: Optional[str] = None) -> AdmissionRequest:
        sym = str(symbol or "").strip().upper()
        if not sym or sym not in self.symbols:
            raise ValidationFailed("symbol_not_allowed", {"symbol": sym, "allowed": sorted(self.symbols)})
        side = str(direction or "").strip().upper()
        if side not in DIRECTIONS:
            raise ValidationFailed("bad_direction", {"direction": direction})
        sl = _positive(stop_loss)
        if sl is None:
            raise ValidationFailed("bad_sl", {"stop_loss": stop_loss})
        try:
            tps = parse_take_profits(take_profits)
        except (TypeError, ValueError):
            raise ValidationFailed("bad_tp", {"take_profits": take_profits})
        if not tps or any(_positive(tp) is None for tp in tps):
            raise ValidationFailed("bad_tp", {"take_profits": take_profits})
        try:
            risk = float(risk_pct) if risk_pct not in (None, "") else None
        except (TypeError, ValueError):
            raise ValidationFailed("bad_risk", {"risk_pct": risk_pct})
        sid = str(id).strip() if id else ""
        return AdmissionRequest(
            symbol=sym, direction=side, stop_loss=sl, take_profits=tps, risk_pct=risk,
            comment=str(comment or "").strip(), id=sid if len(sid) >= self.id_min_len else None,
        )

    async def create(self, symbol: Any, direction: Any, stop_loss: Any, take_profits: Any,
                     risk_pct: Any = None, comment: Any = "", id: Optional[str] = None) -> Signal:
        req = self.validate(symbol, direction, stop_loss, take_profits, risk_pct, comment, id)
        if req.id:
            existing = await self._store(self.storage.get_signal(req.id))
            if existing is not None:
                log.info("signal create retried for existing id %s", existing.id)
                return existing
        now = self.clock.now_ms()
        req = await self.gate.admit(req, now)

        sig = Signal(
            id=req.id or uuid.uuid4().hex, symbol=req.symbol, direction=req.direction,
            stop_loss=req.stop_loss, take_profits=req.take_profits, risk_pct=req.risk_pct,
            comment=req.comment, status=SignalStatus.NEW, created_at_ms=now,
        )
        stored, created = await self._store(self.storage.insert_signal(sig))
        if created:
            log.info("signal created %s %s %s sl=%s tps=%s risk=%s", stored.id, stored.symbol,
                     stored.direction, stored.stop_loss, stored.take_profits, stored.risk_pct)
            self.queue.enqueue(f"announce:{stored.id}", lambda: self._announce(stored))
        else:
            log.info("signal create retried for existing id %s", stored.id)
        return stored

    async def _announce(self, sig: Signal) -> None:
        ref = await self.queue.notifier.send_message(fmt_signal(sig, self.venue))
        if ref and ref.get("message_id") is not None:
            await self.storage.set_signal_message(sig.id, ref["chat_id"], ref["message_id"])

    # ---------- read ----------
    async def get(self, signal_id: str) -> Signal:
        sig = await self._store(self.storage.get_signal(signal_id))
        if sig is None:
            raise NotFound("signal_not_found", {"id": signal_id})
        return sig

    async def next(self, symbol: str, since_ms: int = 0) -> Optional[Signal]:
        """Oldest pending signal for symbol created at/after since_ms. No state change."""
        return await self._store(self.storage.next_signal(str(symbol).upper(), int(since_ms or 0)))

    # ---------- transitions ----------
    def _check(self, sig: Signal, dst: SignalStatus) -> None:
        if not can_transition(sig.status, dst):
            raise IllegalTransition("illegal_transition", {
                "id": sig.id, "from": sig.status.value, "to": dst.value,
            })

    async def mark_executed(self, signal_id: str, ticket: Any = None, fill_price: Any = None,
                            confirmed: bool = False, filled_at_ms: Optional[int] = None) -> Tuple[Signal, Execution]:
        sig = await self.get(signal_id)
        self._check(sig, SignalStatus.EXECUTED)
        now = self.clock.now_ms()

        ex = Execution(
            signal_id=sig.id,
            ticket=str(ticket) if ticket not in (None, "") else None,
            fill_price=_positive(fill_price),
            filled_at_ms=int(filled_at_ms or now),
            confirmed=bool(confirmed),
        )
        await self._store(self.storage.upsert_execution(ex))
        ok = await self._store(self.storage.transition_signal(
            sig.id, SignalStatus.EXECUTED, [SignalStatus.NEW, SignalStatus.EXECUTED],
            {"executed_at_ms": ex.filled_at_ms},
        ))
        if not ok:
            self._check(await self.get(signal_id), SignalStatus.EXECUTED)

        if ex.confirmed:
            await self.state.touch_last_executed(sig.symbol, now)
        log.info("signal %s executed ticket=%s px=%s confirmed=%s", sig.id, ex.ticket, ex.fill_price, ex.confirmed)
        return await self.get(signal_id), ex

    async def mark_closed(self, signal_id: str, outcome: Any = None, result: Any = None,
                          closed_at_ms: Optional[int] = None) -> Signal:
        sig = await self.get(signal_id)
        if sig.status == SignalStatus.CLOSED:
            return sig
        self._check(sig, SignalStatus.CLOSED)

        ok = await self._store(self.storage.transition_signal(
            sig.id, SignalStatus.CLOSED, [SignalStatus.EXECUTED], {
                "closed_at_ms": int(closed_at_ms or self.clock.now_ms()),
                "outcome": str(outcome) if outcome is not None else None,
                "result": str(result) if result is not None else None,
            },
        ))
        closed = await self.get(signal_id)
        if not ok:
            # a concurrent close got there first
            if closed.status == SignalStatus.CLOSED:
                return closed
            self._check(closed, SignalStatus.CLOSED)

        log.info("signal %s closed outcome=%s result=%s", closed.id, closed.outcome, closed.result)
        if closed.message_id is not None and closed.chat_id:
            self.queue.enqueue(f"edit:{closed.id}", lambda: self.queue.notifier.edit_message(
                closed.chat_id, closed.message_id, fmt_closed(closed, self.venue)))
        self.queue.enqueue(f"recap:{closed.id}", lambda: self.queue.notifier.send_message(fmt_recap(closed)))
        return closed
