# tickbridge/api/config.py
from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from tickbridge.common.models import INTERVAL_MS

CONFIG_PATH = os.environ.get("CONFIG_PATH", "/app/config/app.yaml")

# env var -> settings key
ENV_KEYS = {
    "DATABASE_URL": "database_url",
    "REDIS_URL": "redis_url",
    "SIGNAL_SECRET": "signal_secret",
    "TELEGRAM_BOT_TOKEN": "telegram_bot_token",
    "TELEGRAM_CHAT_ID": "telegram_chat_id",
    "VENUE_TZ": "venue_tz",
    "PRIMARY_ACCOUNT": "primary_account",
    "COOLDOWN_MINUTES": "cooldown_minutes",
    "RISK_CAP_PCT": "risk_cap_pct",
}


class Settings(BaseModel):
    env: str = "dev"
    symbols: List[str] = Field(default_factory=lambda: ["XAUUSD"])
    intervals: List[str] = Field(default_factory=lambda: ["1m", "5m", "15m"])

    # candles
    history_cap: int = 4000
    query_floor: int = 200
    query_ceiling: int = 5000
    max_tick_drift_ms: int = 5 * 60 * 1000

    # admission
    venue_tz: str = "Europe/Amsterdam"
    market_close: str = "23:00"
    market_open: str = "00:10"
    weekend_block: bool = True
    primary_account: Optional[str] = None
    status_max_age_s: int = 180
    cooldown_minutes: float = 30
    risk_cap_pct: float = 1.0
    signal_id_min_len: int = 8

    # outbound
    notify_retries: int = 3
    notify_backoff_s: float = 1.0
    telegram_bot_token: str = ""
    telegram_chat_id: str = ""

    # infra
    database_url: str = ""
    redis_url: str = ""
    signal_secret: str = ""

    @field_validator("symbols")
    @classmethod
    def _upper(cls, v: List[str]) -> List[str]:
        return [s.strip().upper() for s in v if s and s.strip()]

    @field_validator("intervals")
    @classmethod
    def _known(cls, v: List[str]) -> List[str]:
        bad = [i for i in v if i not in INTERVAL_MS]
        if bad:
            raise ValueError(f"unsupported intervals: {bad}")
        return v

    @field_validator("market_close", "market_open", mode="before")
    @classmethod
    def _hhmm(cls, v: Any) -> str:
        # unquoted 23:00 in YAML 1.1 comes back as an int
        if isinstance(v, int):
            v = f"{v // 60}:{v % 60}"
        hh, mm = str(v).split(":")
        if not (0 <= int(hh) < 24 and 0 <= int(mm) < 60):
            raise ValueError(f"bad HH:MM {v!r}")
        return f"{int(hh):02d}:{int(mm):02d}"


def load_settings(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """YAML file (if present) then env overrides for the keys in ENV_KEYS."""
    environ = os.environ if environ is None else environ
    raw: Dict[str, Any] = {}
    p = Path(path or CONFIG_PATH)
    if p.is_file():
        with open(p, "r") as f:
            raw = yaml.safe_load(f) or {}
    for env_key, key in ENV_KEYS.items():
        val = environ.get(env_key)
        if val is not None and val.strip() != "":
            raw[key] = val.strip()
    return Settings(**raw)
