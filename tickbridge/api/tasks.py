# tickbridge/api/tasks.py
from __future__ import annotations
import asyncio
from typing import Any, Awaitable, Callable, Set

from tickbridge.common.logging import get_logger

log = get_logger("tickbridge.tasks")


class BackgroundWriter:
    """
    Fire-and-forget runner for best-effort durable writes.
    Failures are logged and counted, never raised to the caller.
    """

    def __init__(self):
        self._pending: Set[asyncio.Task] = set()
        self.failures = 0
        self.last_error: str | None = None

    def submit(self, label: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # pas de loop (scripts, tests sync): on exécute tout de suite
            asyncio.run(self._guarded(label, fn, *args))
            return
        task = loop.create_task(self._guarded(label, fn, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _guarded(self, label: str, fn: Callable[..., Awaitable[Any]], *args: Any) -> None:
        try:
            await fn(*args)
        except Exception as e:  # noqa: BLE001
            self.failures += 1
            self.last_error = f"{label}: {e!r}"
            log.warning("background write %s failed: %r", label, e)

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
