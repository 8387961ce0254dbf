# File: models.py

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any


STARTING_CASH = 100_000.0
TOTAL_WEEKS = 4
DAYS_PER_WEEK = 5


class DuelError(Exception):
    """Base class for domain errors surfaced to clients by `code`."""

    code = "duel_error"


class ValidationError(DuelError, ValueError):
    """Raised when an inbound value is malformed."""

    code = "invalid_message"


class InsufficientFunds(DuelError):
    code = "insufficient_funds"


class MarginExceeded(DuelError):
    code = "margin_exceeded"


class PhaseClosed(DuelError):
    code = "phase_closed"


class WeekMismatch(DuelError):
    code = "week_mismatch"


class DecisionAlreadyMade(DuelError):
    code = "decision_already_made"


class NotInMatch(DuelError):
    code = "not_in_match"


class MatchNotFound(DuelError):
    code = "match_unavailable"


class AlreadyStarted(DuelError):
    code = "match_unavailable"


class CannotJoinOwnMatch(DuelError):
    code = "cannot_join_own_match"


class MatchInProgress(DuelError):
    code = "match_in_progress"


class NotAuthorized(DuelError):
    code = "not_authorized"


class UpstreamUnavailable(DuelError):
    code = "upstream_unavailable"


class PersistenceError(DuelError):
    code = "persistence_failed"


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"


class RoundPhase(str, Enum):
    REVEAL = "reveal"
    DECISION = "decision"
    COMPLETED = "completed"


class MatchStatus(str, Enum):
    WAITING = "WAITING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"


@dataclass(frozen=True, slots=True)
class Position:
    """Open position; `shares` is never zero (flat is represented as None)."""

    shares: int
    entry_price: float
    current_price: float

    def __post_init__(self) -> None:
        if self.shares == 0:
            raise ValueError("a position must hold a non-zero share count")

    @property
    def is_long(self) -> bool:
        return self.shares > 0

    @property
    def is_short(self) -> bool:
        return self.shares < 0

    def marked(self, price: float) -> "Position":
        return Position(shares=self.shares, entry_price=self.entry_price, current_price=price)

    def to_dict(self) -> dict[str, Any]:
        return {
            "shares": self.shares,
            "entryPrice": self.entry_price,
            "currentPrice": self.current_price,
        }


@dataclass(frozen=True, slots=True)
class TradeRecord:
    week: int
    action: TradeAction
    price: float
    timestamp: int
    shares: int | None = None
    pnl: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "week": self.week,
            "action": self.action.value,
            "price": self.price,
            "timestamp": self.timestamp,
        }
        if self.shares is not None:
            payload["shares"] = self.shares
        if self.pnl is not None:
            payload["pnl"] = self.pnl
        return payload

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "TradeRecord":
        shares = raw.get("shares")
        pnl = raw.get("pnl")
        return TradeRecord(
            week=parse_week(raw.get("week")),
            action=parse_action(raw.get("action")),
            price=parse_price(raw.get("price")),
            timestamp=int(raw.get("timestamp", 0) or 0),
            shares=None if shares is None else parse_share_count(shares),
            pnl=None if pnl is None else float(pnl),
        )


def parse_action(raw: Any) -> TradeAction:
    if not isinstance(raw, str):
        raise ValidationError("field 'action' must be a string")
    try:
        return TradeAction(raw.upper())
    except ValueError as exc:
        raise ValidationError("field 'action' must be BUY, SELL or HOLD") from exc


def parse_share_count(raw: Any, field_name: str = "shares") -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError(f"field '{field_name}' must be an integer")
    if raw < 0:
        raise ValidationError(f"field '{field_name}' must be >= 0")
    return raw


def parse_week(raw: Any, total_weeks: int = TOTAL_WEEKS) -> int:
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise ValidationError("field 'week' must be an integer")
    if not 0 <= raw < total_weeks:
        raise ValidationError(f"field 'week' must be between 0 and {total_weeks - 1}")
    return raw


def parse_price(raw: Any, field_name: str = "price") -> float:
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ValidationError(f"field '{field_name}' must be numeric")
    try:
        price = float(raw)
    except OverflowError as exc:
        raise ValidationError(f"field '{field_name}' is out of range") from exc
    if not math.isfinite(price) or price <= 0:
        raise ValidationError(f"field '{field_name}' must be a finite number > 0")
    return price
