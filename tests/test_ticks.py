from __future__ import annotations

import pytest

from tickbridge.api.errors import ValidationFailed
from tickbridge.api.ticks import first_json_object, parse_tick_body
from tickbridge.common.clock import parse_time_to_ms

NOW = 1_704_798_000_000
DRIFT = 5 * 60 * 1000


def test_parse_time_formats():
    assert parse_time_to_ms(1_704_798_000) == NOW
    assert parse_time_to_ms(NOW) == NOW
    assert parse_time_to_ms("1704798000") == NOW
    assert parse_time_to_ms("2024.01.09 11:00:00") == NOW
    assert parse_time_to_ms("2024-01-09T11:00:00Z") == NOW
    assert parse_time_to_ms("2024-01-09T12:00:00+01:00") == NOW
    assert parse_time_to_ms("yesterday") is None
    assert parse_time_to_ms("") is None
    assert parse_time_to_ms(None) is None


def test_first_json_object_strips_padding():
    assert first_json_object('\x00\x00{"a": 1}\x00') == '{"a": 1}'
    assert first_json_object(b'junk{"a": {"b": 2}}tail') == '{"a": {"b": 2}}'
    assert first_json_object("no json") is None


def test_client_time_used_when_close_to_server_time():
    body = '{"symbol": "xauusd", "bid": 2000.1, "ask": 2000.5, "time": "2024.01.09 11:01:00"}\x00'
    tick = parse_tick_body(body, NOW, DRIFT)
    assert tick.symbol == "XAUUSD"
    assert tick.ts == NOW + 60_000
    assert not tick.used_server_time
    assert tick.mid == pytest.approx(2000.3)


def test_far_client_time_falls_back_to_server_time():
    tick = parse_tick_body('{"symbol": "XAUUSD", "bid": 1, "ask": 2, "ts": 1000}', NOW, DRIFT)
    assert tick.ts == NOW
    assert tick.used_server_time
    assert tick.raw_ts == "1000"


def test_ts_field_wins_over_time():
    body = '{"symbol": "XAUUSD", "bid": 1, "ask": 2, "ts": %d, "time": "2024.01.09 11:03:00"}' % (NOW + 1000)
    assert parse_tick_body(body, NOW, DRIFT).ts == NOW + 1000


@pytest.mark.parametrize("body, reason", [
    ("hello", "bad"),
    ("{not json}", "bad_json"),
    ('{"symbol": "XAUUSD", "bid": 1}', "bad"),
    ('{"symbol": "XAUUSD", "bid": "x", "ask": 2}', "bad"),
    ('{"bid": 1, "ask": 2}', "bad"),
])
def test_bad_bodies(body, reason):
    with pytest.raises(ValidationFailed) as exc:
        parse_tick_body(body, NOW, DRIFT)
    assert exc.value.reason == reason


def test_ts_in_epoch_seconds_is_accepted():
    tick = parse_tick_body('{"symbol": "XAUUSD", "bid": 1, "ask": 2, "ts": %d}' % (NOW // 1000 + 30), NOW, DRIFT)
    assert tick.ts == NOW + 30_000
    assert not tick.used_server_time
