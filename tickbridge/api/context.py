# tickbridge/api/context.py
from __future__ import annotations
from typing import Any, Dict, Optional

from tickbridge.api.candle_store import CandleStore
from tickbridge.api.claims import DedupeClaim
from tickbridge.api.config import Settings
from tickbridge.api.db import Storage, build_storage
from tickbridge.api.guards import AdmissionState, SignalAdmissionGate, default_chain
from tickbridge.api.notify import NotificationQueue, Notifier, build_notifier
from tickbridge.api.registry import SignalRegistry
from tickbridge.api.tasks import BackgroundWriter
from tickbridge.api.ticks import TickBoard
from tickbridge.common.clock import ClockSource, VenueTime
from tickbridge.common.logging import get_logger
from tickbridge.common.models import Tick

log = get_logger("tickbridge.context")


class ServiceContext:
    """Everything stateful, built once at startup and handed to the routes."""

    def __init__(self, settings: Settings, storage: Optional[Storage] = None,
                 clock: Optional[ClockSource] = None, notifier: Optional[Notifier] = None):
        self.settings = settings
        self.clock = clock or ClockSource()
        self.venue = VenueTime(settings.venue_tz)
        self.storage = storage or build_storage(settings.database_url)
        self.writer = BackgroundWriter()

        self.candles = CandleStore(
            self.storage, self.writer, settings.intervals, cap=settings.history_cap,
            query_floor=settings.query_floor, query_ceiling=settings.query_ceiling,
        )
        self.ticks = TickBoard(self.writer, settings.redis_url)

        self.state = AdmissionState(self.storage, settings.primary_account)
        self.gate = SignalAdmissionGate(default_chain(settings), self.state, self.venue)
        self.queue = NotificationQueue(
            notifier or build_notifier(settings), retries=settings.notify_retries,
            backoff_s=settings.notify_backoff_s, on_failure=self._record_notify_failure,
        )
        self.registry = SignalRegistry(
            self.storage, self.gate, self.state, self.queue, self.venue, self.clock,
            settings.symbols, id_min_len=settings.signal_id_min_len,
        )
        self.claims = DedupeClaim(self.storage, self.clock)

    async def _record_notify_failure(self, label: str, error: str) -> None:
        await self.storage.insert_event("ERROR", "notify", "notify_failed",
                                        {"task": label, "error": error}, self.clock.now_ms())

    async def start(self) -> None:
        try:
            await self.storage.init()
        except Exception as e:  # noqa: BLE001
            log.error("storage init failed (%s), running on memory until it recovers: %r", self.storage.kind, e)
        await self.candles.warm_start()
        self.queue.start()
        log.info("tickbridge started: persistence=%s symbols=%s intervals=%s notifier=%s",
                 self.storage.kind, self.settings.symbols, self.settings.intervals, self.queue.notifier.name)

    async def stop(self) -> None:
        await self.queue.stop()
        await self.writer.drain()
        await self.ticks.close()
        await self.storage.close()

    def ingest(self, tick: Tick) -> Dict[str, Any]:
        """Latest tick + mid price into every configured interval."""
        self.ticks.put(tick)
        finished = self.candles.ingest(tick.symbol, tick.mid, tick.ts)
        return {itv: len(rows) for itv, rows in finished.items()}
