from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import pytest

from tickbridge.api.config import Settings
from tickbridge.api.context import ServiceContext
from tickbridge.api.db import NullStorage, SqlStorage
from tickbridge.api.notify import Notifier
from tickbridge.common.clock import FixedClock

VENUE = "Europe/Amsterdam"


def local_ms(y: int, mo: int, d: int, h: int = 0, mi: int = 0, s: int = 0) -> int:
    return int(datetime(y, mo, d, h, mi, s, tzinfo=ZoneInfo(VENUE)).timestamp() * 1000)


# 2024-01-09 is a Tuesday
TUESDAY_NOON = local_ms(2024, 1, 9, 12, 0, 0)


class RecordingNotifier(Notifier):
    name = "recording"

    def __init__(self, fail_times: int = 0):
        self.sent: List[str] = []
        self.edits: List[tuple] = []
        self.fail_times = fail_times
        self._next_id = 100

    async def send_message(self, text: str) -> Optional[Dict[str, Any]]:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise RuntimeError("chat down")
        self.sent.append(text)
        self._next_id += 1
        return {"chat_id": "chat-1", "message_id": self._next_id}

    async def edit_message(self, chat_id: str, message_id: int, text: str) -> None:
        self.edits.append((chat_id, message_id, text))


@pytest.fixture
def settings() -> Settings:
    return Settings(
        symbols=["XAUUSD"], intervals=["1m", "5m", "15m"], venue_tz=VENUE,
        history_cap=50, cooldown_minutes=30, risk_cap_pct=1.0,
        primary_account="1001", status_max_age_s=180,
        notify_retries=1, notify_backoff_s=0.0,
    )


@pytest.fixture
def db_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'bridge.db'}"


@pytest.fixture
def make_ctx(settings, db_url):
    """Build a context inside the running loop; durable=False gives the no-database mode."""

    async def _make(durable: bool = True, now_ms: int = TUESDAY_NOON, notifier: Optional[Notifier] = None,
                    **overrides) -> ServiceContext:
        cfg = settings.model_copy(update=overrides) if overrides else settings
        storage = SqlStorage(db_url) if durable else NullStorage()
        ctx = ServiceContext(cfg, storage=storage, clock=FixedClock(now_ms),
                             notifier=notifier or RecordingNotifier())
        await storage.init()
        return ctx

    return _make
