from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text

from tickbridge.api.errors import Blocked, IllegalTransition, NotFound, StorageRequired, ValidationFailed
from tickbridge.api.registry import parse_take_profits
from tickbridge.common.models import SignalStatus

from conftest import TUESDAY_NOON, RecordingNotifier, local_ms


def test_parse_take_profits():
    assert parse_take_profits("2010.5, 2015,,2020 ") == [2010.5, 2015.0, 2020.0]
    assert parse_take_profits([1, "2"]) == [1.0, 2.0]
    assert parse_take_profits(None) == []
    with pytest.raises(ValueError):
        parse_take_profits("2010,abc")


@pytest.mark.parametrize("kwargs, reason", [
    (dict(symbol="EURUSD"), "symbol_not_allowed"),
    (dict(direction="HOLD"), "bad_direction"),
    (dict(stop_loss=0), "bad_sl"),
    (dict(stop_loss="x"), "bad_sl"),
    (dict(take_profits=""), "bad_tp"),
    (dict(take_profits="2010,-5"), "bad_tp"),
    (dict(take_profits="2010,zz"), "bad_tp"),
])
def test_create_validation_errors(make_ctx, kwargs, reason):
    base = dict(symbol="XAUUSD", direction="BUY", stop_loss=1990, take_profits="2010,2020")
    base.update(kwargs)

    async def scenario():
        ctx = await make_ctx()
        try:
            with pytest.raises(ValidationFailed) as exc:
                await ctx.registry.create(**base)
            assert exc.value.reason == reason
            assert await ctx.registry.next("XAUUSD", 0) is None
        finally:
            await ctx.storage.close()

    asyncio.run(scenario())


def test_create_poll_execute_close_lifecycle(make_ctx):
    notifier = RecordingNotifier()

    async def scenario():
        ctx = await make_ctx(notifier=notifier)
        reg = ctx.registry
        sig = await reg.create("xauusd", "buy", 1990, "2010, 2020", risk_pct=4, comment="breakout")
        assert sig.status == SignalStatus.NEW
        assert sig.symbol == "XAUUSD" and sig.direction == "BUY"
        assert sig.take_profits == [2010.0, 2020.0]
        assert sig.risk_pct == 1.0

        await ctx.queue.drain()
        announced = await reg.get(sig.id)
        assert announced.message_id is not None and announced.chat_id == "chat-1"

        polled = await reg.next("XAUUSD", TUESDAY_NOON)
        assert polled.id == sig.id
        assert await reg.next("XAUUSD", TUESDAY_NOON + 1) is None

        executed, ex = await reg.mark_executed(sig.id, ticket=555, fill_price=1999.5, confirmed=True)
        assert executed.status == SignalStatus.EXECUTED
        assert ex.ticket == "555" and ex.confirmed
        assert await reg.next("XAUUSD", 0) is None

        closed = await reg.mark_closed(sig.id, outcome="TP1", result="+150")
        assert closed.status == SignalStatus.CLOSED
        assert closed.outcome == "TP1" and closed.result == "+150"
        await ctx.queue.drain()
        assert notifier.edits and notifier.edits[0][1] == announced.message_id
        assert any("TP1" in m for m in notifier.sent)

        # closed is terminal
        with pytest.raises(IllegalTransition):
            await reg.mark_executed(sig.id, confirmed=True)
        again = await reg.mark_closed(sig.id, outcome="SL")
        assert again.outcome == "TP1"
        assert (await reg.get(sig.id)).status == SignalStatus.CLOSED
        await ctx.storage.close()

    asyncio.run(scenario())


def test_close_before_execution_is_rejected(make_ctx):
    async def scenario():
        ctx = await make_ctx()
        sig = await ctx.registry.create("XAUUSD", "SELL", 2020, "2000")
        with pytest.raises(IllegalTransition) as exc:
            await ctx.registry.mark_closed(sig.id, outcome="SL")
        assert exc.value.details["from"] == "new"
        await ctx.storage.close()

    asyncio.run(scenario())


def test_only_confirmed_execution_starts_cooldown(make_ctx):
    async def scenario():
        ctx = await make_ctx()
        reg = ctx.registry
        first = await reg.create("XAUUSD", "BUY", 1990, "2010")
        await reg.mark_executed(first.id, ticket="1", confirmed=False)
        # unconfirmed: a second signal is still admitted
        second = await reg.create("XAUUSD", "BUY", 1990, "2010")

        await reg.mark_executed(second.id, ticket="2", confirmed=True)
        with pytest.raises(Blocked) as exc:
            await reg.create("XAUUSD", "BUY", 1990, "2010")
        assert exc.value.reason == "ea_cooldown_active"
        assert exc.value.details["remaining_ms"] == 30 * 60_000

        ctx.clock.advance(30 * 60_000)
        third = await reg.create("XAUUSD", "BUY", 1990, "2010")
        assert third.status == SignalStatus.NEW
        await ctx.storage.close()

    asyncio.run(scenario())


def test_execution_report_is_idempotent(make_ctx):
    async def scenario():
        ctx = await make_ctx()
        sig = await ctx.registry.create("XAUUSD", "BUY", 1990, "2010")
        await ctx.registry.mark_executed(sig.id, ticket="1", fill_price=2000, confirmed=False)
        await ctx.registry.mark_executed(sig.id, ticket="1", fill_price=2001, confirmed=True)
        ex = await ctx.storage.get_execution(sig.id)
        assert ex.fill_price == 2001 and ex.confirmed
        assert (await ctx.registry.get(sig.id)).status == SignalStatus.EXECUTED
        await ctx.storage.close()

    asyncio.run(scenario())


def test_caller_supplied_id_makes_create_retry_safe(make_ctx):
    notifier = RecordingNotifier()

    async def scenario():
        ctx = await make_ctx(notifier=notifier)
        a = await ctx.registry.create("XAUUSD", "BUY", 1990, "2010", id="alert-20240109-1200")
        b = await ctx.registry.create("XAUUSD", "BUY", 1990, "2010", id="alert-20240109-1200")
        short = await ctx.registry.create("XAUUSD", "BUY", 1990, "2010", id="x1")
        await ctx.queue.drain()
        assert a.id == b.id == "alert-20240109-1200"
        assert short.id != "x1" and len(short.id) == 32
        assert len(notifier.sent) == 2
        await ctx.storage.close()

    asyncio.run(scenario())


def test_retried_create_returns_stored_signal_past_the_guards(make_ctx):
    notifier = RecordingNotifier()

    async def scenario():
        ctx = await make_ctx(notifier=notifier)
        reg = ctx.registry
        first = await reg.create("XAUUSD", "BUY", 1990, "2010", id="alert-20240109-1200")
        await reg.mark_executed(first.id, ticket="7", confirmed=True)

        # cooldown is now active, the retry must still get the stored row
        again = await reg.create("XAUUSD", "BUY", 1990, "2010", id="alert-20240109-1200")
        assert again.id == first.id and again.status == SignalStatus.EXECUTED
        with pytest.raises(Blocked):
            await reg.create("XAUUSD", "BUY", 1990, "2010", id="alert-20240109-1215")

        ctx.clock.advance(11 * 3_600_000)  # 23:00, market window closed
        late = await reg.create("XAUUSD", "BUY", 1990, "2010", id="alert-20240109-1200")
        assert late.id == first.id
        await ctx.queue.drain()
        assert len(notifier.sent) == 1
        await ctx.storage.close()

    asyncio.run(scenario())


def test_market_closed_blocks_creation(make_ctx):
    async def scenario():
        ctx = await make_ctx(now_ms=local_ms(2024, 1, 13, 12, 0, 0))
        with pytest.raises(Blocked) as exc:
            await ctx.registry.create("XAUUSD", "BUY", 1990, "2010")
        assert exc.value.reason == "market_blocked"
        await ctx.storage.close()

    asyncio.run(scenario())


def test_without_database_signals_need_storage(make_ctx):
    async def scenario():
        ctx = await make_ctx(durable=False)
        with pytest.raises(StorageRequired) as exc:
            await ctx.registry.create("XAUUSD", "BUY", 1990, "2010")
        assert exc.value.reason == "storage_required"
        with pytest.raises(StorageRequired):
            await ctx.registry.next("XAUUSD", 0)
        assert ctx.queue.size == 0

    asyncio.run(scenario())


def test_unknown_signal(make_ctx):
    async def scenario():
        ctx = await make_ctx()
        with pytest.raises(NotFound):
            await ctx.registry.mark_executed("nope", confirmed=True)
        await ctx.storage.close()

    asyncio.run(scenario())


def test_notification_failure_never_fails_close(make_ctx):
    notifier = RecordingNotifier()

    async def scenario():
        ctx = await make_ctx(notifier=notifier)
        sig = await ctx.registry.create("XAUUSD", "BUY", 1990, "2010")
        await ctx.queue.drain()
        await ctx.registry.mark_executed(sig.id, confirmed=True)
        notifier.fail_times = 10
        closed = await ctx.registry.mark_closed(sig.id, outcome="SL", result="-100")
        await ctx.queue.drain()
        assert closed.status == SignalStatus.CLOSED
        assert ctx.queue.stats["failed"] == 1
        assert ctx.queue.stats["retried"] == 1
        async with ctx.storage.session() as s:
            rows = (await s.execute(text("SELECT source, type, payload FROM events"))).all()
        assert [(r[0], r[1]) for r in rows] == [("notify", "notify_failed")]
        assert "recap:" in rows[0][2]
        await ctx.storage.close()

    asyncio.run(scenario())
