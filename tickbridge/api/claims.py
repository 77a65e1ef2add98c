# tickbridge/api/claims.py
from __future__ import annotations
import uuid
from typing import Dict, Tuple

from pydantic import BaseModel

from tickbridge.api.db import Storage
from tickbridge.api.errors import StorageRequired, ValidationFailed
from tickbridge.common.clock import ClockSource
from tickbridge.common.logging import get_logger
from tickbridge.common.models import ClaimRecord

log = get_logger("tickbridge.claims")


class ClaimResult(BaseModel):
    notify: bool
    symbol: str
    kind: str
    ref_bucket_ms: int
    created_at_ms: int
    durable: bool


class DedupeClaim:
    """
    Once-per-key primitive: the first insert at (symbol, kind, ref_bucket_ms)
    wins, every later attempt reads back someone else's row and gets notify=False.
    Cross-instance safety comes only from the storage primary key; without a
    database the in-process map gives the same answer for a single instance.
    """

    def __init__(self, storage: Storage, clock: ClockSource):
        self.storage = storage
        self.clock = clock
        self._local: Dict[Tuple[str, str, int], Tuple[int, str]] = {}

    async def claim(self, symbol: str, kind: str, ref_bucket_ms: int) -> ClaimResult:
        symbol = str(symbol or "").strip().upper()
        kind = str(kind or "").strip()
        if not symbol or not kind:
            raise ValidationFailed("bad_claim", {"symbol": symbol, "kind": kind})
        try:
            ref = int(ref_bucket_ms)
        except (TypeError, ValueError):
            raise ValidationFailed("bad_ref", {"ref_bucket_ms": ref_bucket_ms})

        attempt = ClaimRecord(symbol=symbol, kind=kind, ref_bucket_ms=ref,
                              created_at_ms=self.clock.now_ms(), token=uuid.uuid4().hex)
        durable = True
        try:
            stored = await self.storage.claim(attempt)
        except Exception as e:  # noqa: BLE001
            # a memory fallback here could hand out a second win
            log.error("claim %s/%s/%s failed: %r", symbol, kind, ref, e)
            raise StorageRequired({"op": "claim", "error": str(e)})
        if stored is None:
            durable = False
            stored = self._local.setdefault((symbol, kind, ref), (attempt.created_at_ms, attempt.token))

        notify = stored == (attempt.created_at_ms, attempt.token)
        if notify:
            log.info("claim won %s/%s/%s", symbol, kind, ref)
        return ClaimResult(notify=notify, symbol=symbol, kind=kind, ref_bucket_ms=ref,
                           created_at_ms=stored[0], durable=durable)
