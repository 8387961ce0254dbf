# File: message_schemas.py

from __future__ import annotations

import math
from dataclasses import dataclass
from time import time_ns
from typing import Any

from models import (
    TOTAL_WEEKS,
    TradeAction,
    TradeRecord,
    ValidationError,
    parse_action,
    parse_share_count,
    parse_week,
)


class ProtocolError(ValidationError):
    """Raised when an inbound/outbound message violates the schema."""


def utc_ms() -> int:
    return time_ns() // 1_000_000


def round4(value: float) -> float:
    rounded = round(float(value), 4)
    if rounded == 0:
        return 0.0
    return rounded


def _require_string(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if isinstance(value, int) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str) or not value.strip():
        raise ProtocolError(f"'{key}' must be a non-empty string")
    return value.strip()


def _optional_string(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProtocolError(f"'{key}' must be a string when provided")
    return value


def _optional_number(payload: dict[str, Any], key: str) -> float | None:
    value = payload.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"'{key}' must be numeric when provided")
    try:
        number = float(value)
    except OverflowError as exc:
        raise ProtocolError(f"'{key}' is out of range") from exc
    if not math.isfinite(number):
        raise ProtocolError(f"'{key}' must be a finite number")
    return number


def _optional_trades(payload: dict[str, Any], key: str) -> list[TradeRecord] | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, list):
        raise ProtocolError(f"'{key}' must be a list when provided")
    trades: list[TradeRecord] = []
    for raw in value:
        if not isinstance(raw, dict):
            raise ProtocolError(f"'{key}' entries must be objects")
        try:
            trade = TradeRecord.from_dict(raw)
        except (TypeError, ValueError, OverflowError) as exc:
            raise ProtocolError(f"'{key}' entry is invalid: {exc}") from exc
        if trade.pnl is not None and not math.isfinite(trade.pnl):
            raise ProtocolError(f"'{key}' entry has a non-finite pnl")
        trades.append(trade)
    return trades


def message_type(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise ProtocolError("message must be a JSON object")
    msg_type = payload.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ProtocolError("'type' must be a non-empty string")
    return msg_type


@dataclass(frozen=True, slots=True)
class CreateMatchRequest:
    user_id: str
    username: str
    solo: bool = False

    @staticmethod
    def from_message(payload: dict[str, Any]) -> "CreateMatchRequest":
        user_id = _require_string(payload, "userId")
        username = _optional_string(payload, "username") or f"player-{user_id[:6]}"
        solo = payload.get("solo", False)
        if not isinstance(solo, bool):
            raise ProtocolError("'solo' must be a boolean when provided")
        return CreateMatchRequest(user_id=user_id, username=username, solo=solo)


@dataclass(frozen=True, slots=True)
class JoinCodeRequest:
    user_id: str
    username: str
    join_code: str

    @staticmethod
    def from_message(payload: dict[str, Any]) -> "JoinCodeRequest":
        user_id = _require_string(payload, "userId")
        username = _optional_string(payload, "username") or f"player-{user_id[:6]}"
        join_code = _require_string(payload, "joinCode")
        if len(join_code) != 6 or not join_code.isdigit():
            raise ProtocolError("'joinCode' must be a 6-digit code")
        return JoinCodeRequest(user_id=user_id, username=username, join_code=join_code)


@dataclass(frozen=True, slots=True)
class JoinMatchRequest:
    match_id: str
    user_id: str

    @staticmethod
    def from_message(payload: dict[str, Any]) -> "JoinMatchRequest":
        return JoinMatchRequest(
            match_id=_require_string(payload, "matchId"),
            user_id=_require_string(payload, "userId"),
        )


@dataclass(frozen=True, slots=True)
class MatchRefRequest:
    match_id: str

    @staticmethod
    def from_message(payload: dict[str, Any]) -> "MatchRefRequest":
        return MatchRefRequest(match_id=_require_string(payload, "matchId"))


@dataclass(frozen=True, slots=True)
class TradeActionRequest:
    match_id: str
    player_id: str
    action: TradeAction
    week: int
    shares: int = 0
    # Client-computed figures are carried for logging only; the server reprices.
    price: float | None = None
    pnl: float | None = None
    equity: float | None = None

    @staticmethod
    def from_message(payload: dict[str, Any], total_weeks: int = TOTAL_WEEKS) -> "TradeActionRequest":
        match_id = _require_string(payload, "matchId")
        player_id = _require_string(payload, "playerId")
        action = parse_action(payload.get("action"))
        week = parse_week(payload.get("week"), total_weeks)
        raw_shares = payload.get("shares")
        # BUY/SELL of zero shares is a logged no-op, like HOLD.
        shares = 0 if raw_shares is None else parse_share_count(raw_shares)
        return TradeActionRequest(
            match_id=match_id,
            player_id=player_id,
            action=action,
            week=week,
            shares=shares if action != TradeAction.HOLD else 0,
            price=_optional_number(payload, "price"),
            pnl=_optional_number(payload, "pnl"),
            equity=_optional_number(payload, "equity"),
        )


@dataclass(frozen=True, slots=True)
class FinalizeRequest:
    player1_final_equity: float | None = None
    player2_final_equity: float | None = None
    player1_trades: list[TradeRecord] | None = None
    player2_trades: list[TradeRecord] | None = None
    notes: str | None = None

    @staticmethod
    def from_message(payload: dict[str, Any]) -> "FinalizeRequest":
        return FinalizeRequest(
            player1_final_equity=_optional_number(payload, "player1FinalEquity"),
            player2_final_equity=_optional_number(payload, "player2FinalEquity"),
            player1_trades=_optional_trades(payload, "player1Trades"),
            player2_trades=_optional_trades(payload, "player2Trades"),
            notes=_optional_string(payload, "notes"),
        )


@dataclass(frozen=True, slots=True)
class NoteRequest:
    match_id: str
    user_id: str
    note: str

    @staticmethod
    def from_message(payload: dict[str, Any]) -> "NoteRequest":
        note = payload.get("note")
        if not isinstance(note, str):
            raise ProtocolError("'note' must be a string")
        return NoteRequest(
            match_id=_require_string(payload, "matchId"),
            user_id=_require_string(payload, "userId"),
            note=note,
        )


def user_ref(payload: dict[str, Any]) -> str:
    return _require_string(payload, "userId")


def match_state_event(match_id: str, snapshot: dict[str, Any]) -> dict[str, Any]:
    return {"type": "match_state", "matchId": match_id, **snapshot}


def player_joined_event(match_id: str, user_id: str, player_count: int) -> dict[str, Any]:
    return {
        "type": "player_joined",
        "matchId": match_id,
        "userId": user_id,
        "playerCount": player_count,
    }


def match_ready_event(match_id: str) -> dict[str, Any]:
    return {"type": "match_ready", "matchId": match_id, "start": True}


def fill_payload(
    match_id: str,
    player_id: str,
    record: TradeRecord,
    equity: float,
    position_shares: int,
) -> dict[str, Any]:
    return {
        "matchId": match_id,
        "playerId": player_id,
        "action": record.action.value,
        "price": round4(record.price),
        "week": record.week,
        "pnl": None if record.pnl is None else round4(record.pnl),
        "shares": record.shares,
        "equity": round4(equity),
        "positionShares": position_shares,
        "timestamp": record.timestamp,
    }


def opponent_trade_event(fill: dict[str, Any]) -> dict[str, Any]:
    return {"type": "opponent_trade", **fill}


def trade_result_event(fill: dict[str, Any], ledger_snapshot: dict[str, Any]) -> dict[str, Any]:
    return {"type": "trade_result", **fill, "ledger": ledger_snapshot}


def spectator_trade_event(fill: dict[str, Any]) -> dict[str, Any]:
    return {"type": "trade", **fill}


def trade_rejected_event(reason: str, message: str, request: TradeActionRequest | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {"type": "trade_rejected", "reason": reason, "message": message}
    if request is not None:
        payload["order"] = {
            "matchId": request.match_id,
            "action": request.action.value,
            "week": request.week,
            "shares": request.shares,
        }
    return payload


def match_result_event(match_id: str, ledger_snapshot: dict[str, Any], trades: list[dict[str, Any]]) -> dict[str, Any]:
    return {"type": "match_result", "matchId": match_id, **ledger_snapshot, "trades": trades}


def error_event(code: str, message: str) -> dict[str, Any]:
    return {"type": "error", "code": code, "message": message}
