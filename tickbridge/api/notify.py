# tickbridge/api/notify.py
from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from tickbridge.common.clock import VenueTime
from tickbridge.common.logging import get_logger
from tickbridge.common.models import Signal

log = get_logger("tickbridge.notify")

TELEGRAM_API = "https://api.telegram.org"


class Notifier:
    """Console fallback when no chat channel is configured."""
    name = "log"

    async def send_message(self, text: str) -> Optional[Dict[str, Any]]:
        log.info("[notify] %s", text)
        return None

    async def edit_message(self, chat_id: str, message_id: int, text: str) -> None:
        log.info("[notify] edit %s/%s: %s", chat_id, message_id, text)


class TelegramNotifier(Notifier):
    name = "telegram"

    def __init__(self, token: str, chat_id: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.token = token
        self.chat_id = str(chat_id)
        self.timeout = timeout
        self._transport = transport

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{TELEGRAM_API}/bot{self.token}/{method}"
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as cli:
            r = await cli.post(url, json=payload)
            if r.status_code == 429:
                try:
                    retry = float(r.json().get("parameters", {}).get("retry_after", 1.5))
                except Exception:  # noqa: BLE001
                    retry = 1.5
                log.warning("[tg] 429 rate limited, retry_after=%ss", retry)
                await asyncio.sleep(retry)
                r = await cli.post(url, json=payload)
            if r.status_code >= 400:
                raise RuntimeError(f"[tg] HTTP {r.status_code}: {r.text}")
            return r.json().get("result") or {}

    async def send_message(self, text: str) -> Optional[Dict[str, Any]]:
        res = await self._call("sendMessage", {
            "chat_id": self.chat_id, "text": text, "disable_web_page_preview": True,
        })
        return {"chat_id": self.chat_id, "message_id": res.get("message_id")}

    async def edit_message(self, chat_id: str, message_id: int, text: str) -> None:
        await self._call("editMessageText", {"chat_id": chat_id, "message_id": message_id, "text": text})


def build_notifier(settings) -> Notifier:
    if settings.telegram_bot_token and settings.telegram_chat_id:
        return TelegramNotifier(settings.telegram_bot_token, settings.telegram_chat_id)
    return Notifier()


# ---------- message texts ----------
def fmt_signal(sig: Signal, venue: VenueTime) -> str:
    tps = "\n".join(f"TP{i}: {tp:g}" for i, tp in enumerate(sig.take_profits, 1))
    lines = [
        f"{sig.symbol} {sig.direction}",
        f"SL: {sig.stop_loss:g}",
        tps,
        f"Risk: {sig.risk_pct:g}%",
        f"{venue.fmt(sig.created_at_ms, '%d-%m %H:%M')}",
    ]
    if sig.comment:
        lines.append(sig.comment)
    return "\n".join(lines)


def fmt_closed(sig: Signal, venue: VenueTime) -> str:
    closed = venue.fmt(sig.closed_at_ms, "%d-%m %H:%M") if sig.closed_at_ms else "-"
    return f"{fmt_signal(sig, venue)}\n\nCLOSED {closed}: {sig.outcome or '-'} {sig.result or ''}".rstrip()


def fmt_recap(sig: Signal) -> str:
    return f"{sig.symbol} {sig.direction} closed: {sig.outcome or '-'} {sig.result or ''}".rstrip()


# ---------- queue ----------
class NotifyTask:
    def __init__(self, label: str, fn: Callable[[], Awaitable[Any]]):
        self.label = label
        self.fn = fn
        self.attempts = 0


class NotificationQueue:
    """
    Outbound side effects, decoupled from the state transitions that enqueue them.
    Each task is retried with exponential backoff; a task that exhausts its
    retries is counted and handed to on_failure (e.g. an events row).
    """

    def __init__(self, notifier: Notifier, retries: int = 3, backoff_s: float = 1.0,
                 on_failure: Optional[Callable[[str, str], Awaitable[None]]] = None):
        self.notifier = notifier
        self.retries = max(0, int(retries))
        self.backoff_s = float(backoff_s)
        self.on_failure = on_failure
        self._q: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None
        self.stats: Dict[str, Any] = {"enqueued": 0, "sent": 0, "retried": 0, "failed": 0, "last_error": None}

    def enqueue(self, label: str, fn: Callable[[], Awaitable[Any]]) -> None:
        self._q.put_nowait(NotifyTask(label, fn))
        self.stats["enqueued"] += 1

    @property
    def size(self) -> int:
        return self._q.qsize()

    async def _run(self, task: NotifyTask) -> None:
        while True:
            task.attempts += 1
            try:
                await task.fn()
                self.stats["sent"] += 1
                return
            except Exception as e:  # noqa: BLE001
                err = f"{task.label}: {e!r}"
                if task.attempts > self.retries:
                    self.stats["failed"] += 1
                    self.stats["last_error"] = err
                    log.error("notify task gave up after %d attempts: %s", task.attempts, err)
                    if self.on_failure:
                        try:
                            await self.on_failure(task.label, err)
                        except Exception as e2:  # noqa: BLE001
                            log.warning("notify failure bookkeeping failed: %r", e2)
                    return
                self.stats["retried"] += 1
                await asyncio.sleep(self.backoff_s * (2 ** (task.attempts - 1)))

    async def _loop(self) -> None:
        while True:
            task = await self._q.get()
            try:
                await self._run(task)
            finally:
                self._q.task_done()

    def start(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        if self._worker:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def drain(self) -> None:
        """Run everything queued now (tests, shutdown)."""
        if self._worker and not self._worker.done():
            await self._q.join()
            return
        while not self._q.empty():
            task = self._q.get_nowait()
            try:
                await self._run(task)
            finally:
                self._q.task_done()
