from __future__ import annotations
from enum import Enum
from pydantic import BaseModel, Field
from typing import Optional, Literal, List, Dict

INTERVAL_MS: Dict[str, int] = {
    "1m": 60_000,
    "5m": 300_000,
    "15m": 900_000,
    "30m": 1_800_000,
    "1h": 3_600_000,
    "4h": 14_400_000,
}

Direction = Literal["BUY", "SELL"]


class Tick(BaseModel):
    symbol: str
    bid: float
    ask: float
    ts: int  # ms epoch
    raw_time: Optional[str] = None
    raw_ts: Optional[str] = None
    used_server_time: bool = False

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2.0


class Candle(BaseModel):
    symbol: str
    interval: str
    start_ms: int
    end_ms: int
    open: float
    high: float
    low: float
    close: float
    last_tick_ms: int
    gap: bool = False
    seeded: bool = False


class CandleSeries:
    """Current (open) candle + finalized history for one (symbol, interval)."""

    def __init__(self, symbol: str, interval: str):
        self.symbol = symbol
        self.interval = interval
        self.current: Optional[Candle] = None
        self.history: List[Candle] = []

    def all(self) -> List[Candle]:
        return self.history + [self.current] if self.current else list(self.history)


class SignalStatus(str, Enum):
    NEW = "new"
    EXECUTED = "executed"
    CLOSED = "closed"


# self transitions are idempotent re-reports
TRANSITIONS: Dict[SignalStatus, frozenset] = {
    SignalStatus.NEW: frozenset({SignalStatus.EXECUTED}),
    SignalStatus.EXECUTED: frozenset({SignalStatus.EXECUTED, SignalStatus.CLOSED}),
    SignalStatus.CLOSED: frozenset({SignalStatus.CLOSED}),
}


def can_transition(src: SignalStatus, dst: SignalStatus) -> bool:
    return dst in TRANSITIONS[src]


class Signal(BaseModel):
    id: str
    symbol: str
    direction: Direction
    stop_loss: float = Field(gt=0)
    take_profits: List[float] = Field(min_length=1)
    risk_pct: float
    comment: str = ""
    status: SignalStatus = SignalStatus.NEW
    created_at_ms: int
    executed_at_ms: Optional[int] = None
    closed_at_ms: Optional[int] = None
    outcome: Optional[str] = None
    result: Optional[str] = None
    # announcement reference, used to edit the message on close
    chat_id: Optional[str] = None
    message_id: Optional[int] = None


class Execution(BaseModel):
    signal_id: str
    ticket: Optional[str] = None
    fill_price: Optional[float] = None
    filled_at_ms: int
    confirmed: bool = False


class CooldownState(BaseModel):
    symbol: str
    active: bool = False
    until_ms: Optional[int] = None
    reason: Optional[str] = None
    last_executed_ms: Optional[int] = None
    updated_at_ms: int = 0


class AccountStatus(BaseModel):
    symbol: str
    account: str
    has_position: bool
    reported_at_ms: int


class ClaimRecord(BaseModel):
    symbol: str
    kind: str
    ref_bucket_ms: int
    created_at_ms: int
    token: str
