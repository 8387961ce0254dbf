# File: tests/test_message_schemas.py

import json

import pytest

from message_schemas import (
    CreateMatchRequest,
    FinalizeRequest,
    JoinCodeRequest,
    ProtocolError,
    TradeActionRequest,
    fill_payload,
    match_state_event,
    message_type,
    round4,
    trade_rejected_event,
)
from models import TradeAction, TradeRecord, ValidationError


def test_message_type_requires_object_with_type() -> None:
    assert message_type({"type": "ping"}) == "ping"
    with pytest.raises(ProtocolError):
        message_type(["ping"])
    with pytest.raises(ProtocolError):
        message_type({"type": ""})


def test_trade_action_parsing() -> None:
    request = TradeActionRequest.from_message(
        {
            "type": "trade_action",
            "matchId": "m1",
            "playerId": "alice",
            "action": "buy",
            "shares": 10,
            "week": 2,
            "price": 51.25,
            "pnl": 0,
            "equity": 100_000,
        }
    )
    assert request.action == TradeAction.BUY
    assert request.shares == 10
    assert request.week == 2
    assert request.price == 51.25


def test_hold_forces_zero_shares_and_missing_shares_default_to_zero() -> None:
    hold = TradeActionRequest.from_message(
        {"matchId": "m1", "playerId": "a", "action": "HOLD", "shares": 40, "week": 0}
    )
    assert hold.shares == 0

    buy = TradeActionRequest.from_message({"matchId": "m1", "playerId": "a", "action": "BUY", "week": 0})
    assert buy.shares == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"action": "SHORT"},
        {"week": 4},
        {"week": "1"},
        {"shares": -1},
        {"shares": 1.5},
        {"price": "cheap"},
        {"matchId": ""},
    ],
)
def test_trade_action_rejects_malformed_fields(overrides: dict) -> None:
    payload = {"matchId": "m1", "playerId": "a", "action": "BUY", "shares": 1, "week": 0}
    payload.update(overrides)
    with pytest.raises(ValidationError):
        TradeActionRequest.from_message(payload)


def test_create_and_join_code_requests() -> None:
    create = CreateMatchRequest.from_message({"userId": "u1", "username": "Alice", "solo": True})
    assert create.solo is True
    assert CreateMatchRequest.from_message({"userId": 42}).user_id == "42"

    join = JoinCodeRequest.from_message({"userId": "u2", "username": "Bob", "joinCode": "123456"})
    assert join.join_code == "123456"
    with pytest.raises(ProtocolError):
        JoinCodeRequest.from_message({"userId": "u2", "joinCode": "12345"})


def test_finalize_request_parses_trade_logs() -> None:
    request = FinalizeRequest.from_message(
        {
            "player1FinalEquity": 101_000,
            "player1Trades": [{"week": 0, "action": "BUY", "price": 50, "timestamp": 1, "shares": 10}],
            "notes": "gg",
        }
    )
    assert request.player1_final_equity == 101_000.0
    assert request.player1_trades == [TradeRecord(week=0, action=TradeAction.BUY, price=50.0, timestamp=1, shares=10)]
    assert request.player2_final_equity is None
    assert request.notes == "gg"

    with pytest.raises(ProtocolError):
        FinalizeRequest.from_message({"player1Trades": [{"week": 0, "action": "NOPE", "price": 1}]})


@pytest.mark.parametrize("value", [float("nan"), float("inf"), float("-inf"), 10**400])
def test_finalize_request_rejects_non_finite_equity(value) -> None:
    with pytest.raises(ProtocolError):
        FinalizeRequest.from_message({"player1FinalEquity": value})
    with pytest.raises(ProtocolError):
        FinalizeRequest.from_message({"player2FinalEquity": value})


def test_non_finite_values_from_json_text_are_rejected() -> None:
    payload = json.loads('{"player1FinalEquity": NaN, "player2FinalEquity": Infinity}')
    with pytest.raises(ProtocolError):
        FinalizeRequest.from_message(payload)

    nan_price = json.loads('{"player1Trades": [{"week": 0, "action": "BUY", "price": NaN, "shares": 1}]}')
    with pytest.raises(ProtocolError):
        FinalizeRequest.from_message(nan_price)

    inf_pnl = json.loads('{"player1Trades": [{"week": 1, "action": "SELL", "price": 10, "shares": 1, "pnl": Infinity}]}')
    with pytest.raises(ProtocolError):
        FinalizeRequest.from_message(inf_pnl)


def test_event_builders() -> None:
    snapshot = {"currentWeek": 1, "phase": "decision", "endTime": 5, "isRunning": True}
    assert match_state_event("m1", snapshot) == {"type": "match_state", "matchId": "m1", **snapshot}

    record = TradeRecord(week=1, action=TradeAction.SELL, price=10.123456, timestamp=7, shares=3, pnl=1.00004)
    fill = fill_payload("m1", "alice", record, 99_999.99999, -3)
    assert fill["price"] == 10.1235
    assert fill["pnl"] == 1.0
    assert fill["positionShares"] == -3

    rejected = trade_rejected_event("phase_closed", "closed")
    assert rejected == {"type": "trade_rejected", "reason": "phase_closed", "message": "closed"}


def test_round4_normalizes_negative_zero() -> None:
    assert round4(-0.00001) == 0.0
    assert str(round4(-0.00001)) == "0.0"
