# tickbridge/api/guards.py
"""
Admission gate for new signals.

Guards run in a fixed order against a snapshot of persisted state and stop at
the first block:

  1. MarketWindowGuard       daily close window + weekend
  2. PrimaryAccountLockGuard primary EA account holds a position (fresh report only)
  3. CooldownGuard           explicit cooldown, else last confirmed execution + duration
  4. RiskCapGuard            never blocks, clamps risk_pct

Guards are pure: all I/O happens in AdmissionState before the chain runs.
"""
from __future__ import annotations
import math
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from tickbridge.api.db import Storage
from tickbridge.api.errors import Blocked
from tickbridge.common.clock import VenueTime
from tickbridge.common.logging import get_logger
from tickbridge.common.models import AccountStatus, CooldownState

log = get_logger("tickbridge.guards")


class GuardResult(BaseModel):
    blocked: bool = False
    reason: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


ALLOW = GuardResult()


class AdmissionRequest(BaseModel):
    symbol: str
    direction: str
    stop_loss: float
    take_profits: List[float]
    risk_pct: Optional[float] = None
    comment: str = ""
    id: Optional[str] = None


class AdmissionContext:
    def __init__(self, request: AdmissionRequest, now_ms: int, local: datetime,
                 status: Optional[AccountStatus] = None, cooldown: Optional[CooldownState] = None):
        self.request = request
        self.symbol = request.symbol
        self.now_ms = now_ms
        self.local = local
        self.status = status
        self.cooldown = cooldown


class Guard:
    name = "guard"

    def check(self, ctx: AdmissionContext) -> GuardResult:
        raise NotImplementedError


def _hhmm_to_s(v: str) -> int:
    hh, mm = v.split(":")
    return int(hh) * 3600 + int(mm) * 60


class MarketWindowGuard(Guard):
    """Blocks inside [close, open) every day, and from Friday close until Monday open."""
    name = "market_window"

    def __init__(self, close: str = "23:00", open_: str = "00:10", weekend: bool = True):
        self.close = close
        self.open = open_
        self.close_s = _hhmm_to_s(close)
        self.open_s = _hhmm_to_s(open_)
        self.weekend = weekend

    def _in_daily_window(self, tod: int) -> bool:
        if self.close_s > self.open_s:  # wraps midnight
            return tod >= self.close_s or tod < self.open_s
        return self.close_s <= tod < self.open_s

    def is_blocked(self, local: datetime) -> bool:
        tod = local.hour * 3600 + local.minute * 60 + local.second
        if self._in_daily_window(tod):
            return True
        if not self.weekend:
            return False
        wd = local.weekday()  # lundi=0
        if wd == 4 and tod >= self.close_s:
            return True
        if wd in (5, 6):
            return True
        if wd == 0 and tod < self.open_s:
            return True
        return False

    def check(self, ctx: AdmissionContext) -> GuardResult:
        if not self.is_blocked(ctx.local):
            return ALLOW
        return GuardResult(blocked=True, reason="market_blocked", details={
            "local_time": ctx.local.strftime("%a %H:%M:%S"),
            "window": f"{self.close}-{self.open}",
        })


class PrimaryAccountLockGuard(Guard):
    """Fail-open: no primary account, no report, or a stale report never blocks."""
    name = "primary_account_lock"

    def __init__(self, primary_account: Optional[str], max_age_ms: int):
        self.primary_account = primary_account or None
        self.max_age_ms = int(max_age_ms)

    def check(self, ctx: AdmissionContext) -> GuardResult:
        st = ctx.status
        if not self.primary_account or st is None:
            return ALLOW
        age = max(0, ctx.now_ms - st.reported_at_ms)
        if age > self.max_age_ms or not st.has_position:
            return ALLOW
        return GuardResult(blocked=True, reason="ea_has_open_position", details={
            "account": st.account, "age_ms": age,
        })


def cooldown_remaining(st: Optional[CooldownState], now_ms: int, duration_ms: int) -> Tuple[int, Optional[int], Optional[str]]:
    """(remaining_ms, until_ms, source). Explicit active record wins over last execution."""
    if st is None:
        return 0, None, None
    if st.active and st.until_ms is not None and st.until_ms > now_ms:
        return st.until_ms - now_ms, st.until_ms, st.reason or "manual"
    if st.last_executed_ms is not None:
        until = st.last_executed_ms + duration_ms
        if until > now_ms:
            return until - now_ms, until, "execution"
    return 0, None, None


class CooldownGuard(Guard):
    name = "cooldown"

    def __init__(self, duration_ms: int):
        self.duration_ms = int(duration_ms)

    def check(self, ctx: AdmissionContext) -> GuardResult:
        remaining, until, source = cooldown_remaining(ctx.cooldown, ctx.now_ms, self.duration_ms)
        if remaining <= 0:
            return ALLOW
        return GuardResult(blocked=True, reason="ea_cooldown_active", details={
            "remaining_ms": remaining, "until_ms": until, "cooldown_reason": source,
        })


class RiskCapGuard(Guard):
    name = "risk_cap"

    def __init__(self, cap_pct: float):
        self.cap_pct = float(cap_pct)

    def check(self, ctx: AdmissionContext) -> GuardResult:
        risk = ctx.request.risk_pct
        if risk is None or not math.isfinite(risk) or risk <= 0:
            ctx.request.risk_pct = self.cap_pct
        else:
            ctx.request.risk_pct = min(risk, self.cap_pct)
        return ALLOW


class GuardChain:
    def __init__(self, guards: List[Guard]):
        self.guards = list(guards)

    def evaluate(self, ctx: AdmissionContext) -> GuardResult:
        for g in self.guards:
            res = g.check(ctx)
            if res.blocked:
                log.info("%s blocked by %s: %s %s", ctx.symbol, g.name, res.reason, res.details)
                return res
        return ALLOW


class AdmissionState:
    """
    Per-symbol cooldown and primary-account status. Memory is the fallback,
    storage (when configured) is read first so every instance sees the same state.
    """

    def __init__(self, storage: Storage, primary_account: Optional[str] = None):
        self.storage = storage
        self.primary_account = primary_account or None
        self._cooldowns: Dict[str, CooldownState] = {}
        self._status: Dict[Tuple[str, str], AccountStatus] = {}

    # ---------- cooldown ----------
    async def cooldown(self, symbol: str) -> Optional[CooldownState]:
        try:
            st = await self.storage.get_cooldown(symbol)
        except Exception as e:  # noqa: BLE001
            log.warning("cooldown read fell back to memory: %r", e)
            st = None
        return st or self._cooldowns.get(symbol)

    async def set_cooldown(self, symbol: str, active: bool, until_ms: Optional[int], reason: Optional[str],
                           now_ms: int) -> CooldownState:
        prev = self._cooldowns.get(symbol)
        st = CooldownState(
            symbol=symbol, active=bool(active), until_ms=until_ms if active else None,
            reason=reason, last_executed_ms=prev.last_executed_ms if prev else None,
            updated_at_ms=now_ms,
        )
        self._cooldowns[symbol] = st
        try:
            await self.storage.upsert_cooldown(st)
        except Exception as e:  # noqa: BLE001
            log.warning("cooldown write kept in memory only: %r", e)
        return st

    async def touch_last_executed(self, symbol: str, ts_ms: int) -> None:
        prev = self._cooldowns.get(symbol)
        if prev:
            self._cooldowns[symbol] = prev.model_copy(update={"last_executed_ms": ts_ms, "updated_at_ms": ts_ms})
        else:
            self._cooldowns[symbol] = CooldownState(symbol=symbol, last_executed_ms=ts_ms, updated_at_ms=ts_ms)
        try:
            await self.storage.touch_last_executed(symbol, ts_ms)
        except Exception as e:  # noqa: BLE001
            log.warning("last_executed write kept in memory only: %r", e)

    # ---------- primary account status ----------
    async def report_status(self, symbol: str, account: str, has_position: bool, now_ms: int) -> AccountStatus:
        st = AccountStatus(symbol=symbol, account=str(account), has_position=bool(has_position), reported_at_ms=now_ms)
        self._status[(symbol, st.account)] = st
        try:
            await self.storage.upsert_status(st)
        except Exception as e:  # noqa: BLE001
            log.warning("status write kept in memory only: %r", e)
        return st

    async def status(self, symbol: str, account: Optional[str] = None) -> Optional[AccountStatus]:
        account = account or self.primary_account
        if not account:
            return None
        try:
            st = await self.storage.get_status(symbol, account)
        except Exception as e:  # noqa: BLE001
            log.warning("status read fell back to memory: %r", e)
            st = None
        return st or self._status.get((symbol, account))


def default_chain(settings) -> GuardChain:
    return GuardChain([
        MarketWindowGuard(settings.market_close, settings.market_open, settings.weekend_block),
        PrimaryAccountLockGuard(settings.primary_account, settings.status_max_age_s * 1000),
        CooldownGuard(int(settings.cooldown_minutes * 60_000)),
        RiskCapGuard(settings.risk_cap_pct),
    ])


class SignalAdmissionGate:
    def __init__(self, chain: GuardChain, state: AdmissionState, venue: VenueTime):
        self.chain = chain
        self.state = state
        self.venue = venue

    async def context(self, request: AdmissionRequest, now_ms: int) -> AdmissionContext:
        return AdmissionContext(
            request=request, now_ms=now_ms, local=self.venue.local(now_ms),
            status=await self.state.status(request.symbol),
            cooldown=await self.state.cooldown(request.symbol),
        )

    async def admit(self, request: AdmissionRequest, now_ms: int) -> AdmissionRequest:
        """Returns the (risk-clamped) request, or raises Blocked with the first guard's reason."""
        ctx = await self.context(request, now_ms)
        res = self.chain.evaluate(ctx)
        if res.blocked:
            raise Blocked(res.reason or "blocked", res.details)
        return ctx.request
