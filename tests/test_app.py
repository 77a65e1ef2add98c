from __future__ import annotations

import json

import pytest
from fastapi.testclient import TestClient

from tickbridge.api.app import create_app
from tickbridge.api.context import ServiceContext
from tickbridge.api.db import NullStorage, SqlStorage
from tickbridge.common.clock import FixedClock

from conftest import TUESDAY_NOON, RecordingNotifier

MIN = 60_000
SECRET = "s3cret"


@pytest.fixture
def ctx(settings, db_url):
    cfg = settings.model_copy(update={"signal_secret": SECRET})
    return ServiceContext(cfg, storage=SqlStorage(db_url), clock=FixedClock(TUESDAY_NOON),
                          notifier=RecordingNotifier())


@pytest.fixture
def client(ctx):
    with TestClient(create_app(ctx=ctx)) as c:
        yield c


def _tick(client, bid, ask, ts):
    body = json.dumps({"symbol": "XAUUSD", "bid": bid, "ask": ask, "ts": ts}) + "\x00"
    return client.post("/price", content=body, headers={"Content-Type": "text/plain"})


def _signal(client, **kw):
    body = {"symbol": "XAUUSD", "direction": "BUY", "stop_loss": 1990, "take_profits": "2010,2020", "risk_pct": 0.5}
    body.update(kw)
    return client.post("/signal", json=body, headers={"X-Signal-Secret": SECRET})


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["persistence"] == "sqlite"


def test_tick_ingest_builds_candles(client, ctx):
    t0 = TUESDAY_NOON - TUESDAY_NOON % (15 * MIN)
    assert _tick(client, 9.9, 10.1, t0).text == "ok"
    ctx.clock.advance(2 * MIN)
    assert _tick(client, 11.9, 12.1, t0 + 2 * MIN).status_code == 200

    last = client.get("/price", params={"symbol": "XAUUSD"}).json()
    assert last["ok"] and last["mid"] == pytest.approx(12.0)
    assert last["used_server_time"] is False

    r = client.get("/candles", params={"symbol": "XAUUSD", "interval": "1m"}).json()
    assert r["count"] == 3
    assert [c["gap"] for c in r["candles"]] == [False, True, False]
    assert r["candles"][1]["close"] == pytest.approx(10.0)

    real = client.get("/candles", params={"symbol": "XAUUSD", "interval": "1m", "include_gap": "false"}).json()
    assert real["count"] == 2

    fifteen = client.get("/candles", params={"symbol": "XAUUSD", "interval": "15m"}).json()
    assert fifteen["count"] == 1 and fifteen["candles"][0]["high"] == pytest.approx(12.0)


def test_tick_rejections(client):
    assert client.post("/price", content="garbage").status_code == 400
    r = client.post("/price", content='{"symbol": "EURUSD", "bid": 1, "ask": 1.1}')
    assert r.status_code == 400 and r.json()["reason"] == "symbol_not_allowed"
    assert client.get("/candles", params={"symbol": "XAUUSD", "interval": "2m"}).json()["reason"] == "unsupported_interval"


def test_seed_endpoint(client):
    t0 = TUESDAY_NOON - 10 * MIN
    rows = [{"start": t0 + i * MIN, "open": 1, "high": 2, "low": 0.5, "close": 1.5} for i in range(3)]
    r = client.post("/candles/seed", json={"symbol": "XAUUSD", "interval": "1m", "candles": rows})
    assert r.json()["merged"] == 3
    got = client.get("/candles", params={"symbol": "XAUUSD", "interval": "1m", "hours": 1}).json()
    assert got["count"] == 3 and all(c["seeded"] for c in got["candles"])


def test_signal_lifecycle_over_http(client, ctx):
    assert _signal(client, secret=None).status_code == 200
    assert client.post("/signal", json={"symbol": "XAUUSD", "direction": "BUY"}).status_code == 401

    pending = client.get("/signal/next", params={"symbol": "XAUUSD", "since": TUESDAY_NOON}).json()["signal"]
    assert pending["status"] == "new" and pending["take_profits"] == [2010.0, 2020.0]

    r = client.post("/signal/executed", json={"signal_id": pending["id"], "ticket": 42, "fill_price": 2000.5, "confirmed": True})
    assert r.json()["signal"]["status"] == "executed"
    assert client.get("/signal/next", params={"symbol": "XAUUSD"}).json()["signal"] is None

    blocked = _signal(client)
    assert blocked.status_code == 409
    assert blocked.json()["reason"] == "ea_cooldown_active"

    cd = client.get("/ea/cooldown", params={"symbol": "XAUUSD"}).json()
    assert cd["active"] and cd["source"] == "execution" and cd["remaining_ms"] == 30 * MIN

    closed = client.post("/signal/closed", json={"signal_id": pending["id"], "outcome": "TP2", "result": "+300"})
    assert closed.json()["signal"]["status"] == "closed"
    again = client.post("/signal/executed", json={"signal_id": pending["id"], "confirmed": True})
    assert again.status_code == 409 and again.json()["reason"] == "illegal_transition"

    assert client.get(f"/signal/{pending['id']}").json()["signal"]["outcome"] == "TP2"
    assert client.get("/signal/missing-id").status_code == 404


def test_signal_validation_and_position_lock(client, ctx):
    r = _signal(client, take_profits="")
    assert r.status_code == 400 and r.json()["reason"] == "bad_tp"

    client.post("/ea/status", json={"symbol": "XAUUSD", "account": "1001", "has_position": True})
    st = client.get("/ea/status", params={"symbol": "XAUUSD"}).json()
    assert st["fresh"] and st["age_ms"] == 0
    assert _signal(client).json()["reason"] == "ea_has_open_position"

    ctx.clock.advance(181_000)
    assert not client.get("/ea/status", params={"symbol": "XAUUSD"}).json()["fresh"]
    assert _signal(client).status_code == 200


def test_explicit_cooldown(client, ctx):
    r = client.post("/ea/cooldown", json={"symbol": "XAUUSD", "minutes": 10, "reason": "news", "secret": SECRET})
    assert r.json()["cooldown"]["until_ms"] == TUESDAY_NOON + 10 * MIN
    res = _signal(client).json()
    assert res["reason"] == "ea_cooldown_active" and res["cooldown_reason"] == "news"

    assert client.post("/ea/cooldown", json={"symbol": "XAUUSD", "active": True, "secret": SECRET}).status_code == 400
    client.post("/ea/cooldown", json={"symbol": "XAUUSD", "active": False, "secret": SECRET})
    assert _signal(client).status_code == 200


def test_claim_endpoint(client):
    body = {"symbol": "XAUUSD", "kind": "daily_recap", "ref": 1_704_758_400_000}
    first = client.post("/claim", json=body).json()
    second = client.post("/claim", json=body).json()
    assert first["notify"] is True and second["notify"] is False
    assert first["durable"]


def test_memory_mode_reports_storage_required(settings):
    ctx = ServiceContext(settings, storage=NullStorage(), clock=FixedClock(TUESDAY_NOON), notifier=RecordingNotifier())
    with TestClient(create_app(ctx=ctx)) as client:
        assert client.get("/health").json()["persistence"] == "memory"
        r = _signal(client)
        assert r.status_code == 503 and r.json()["reason"] == "storage_required"
        assert _tick(client, 1.0, 2.0, TUESDAY_NOON).status_code == 200
        assert client.get("/candles", params={"symbol": "XAUUSD", "interval": "1m"}).json()["persistence"] == "memory"
        assert client.post("/claim", json={"symbol": "XAUUSD", "kind": "k", "ref": 1}).json()["notify"] is True
