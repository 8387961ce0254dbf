# File: positions.py

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from message_schemas import round4, utc_ms
from models import (
    STARTING_CASH,
    DecisionAlreadyMade,
    Position,
    TradeAction,
    TradeRecord,
    ValidationError,
)
from risk_manager import RiskManager


_DEFAULT_RISK = RiskManager()


@dataclass(frozen=True, slots=True)
class TradeOutcome:
    cash: float
    position: Position | None
    realized_pnl: float
    closed_shares: int = 0

    @property
    def closes_position(self) -> bool:
        return self.closed_shares > 0


def compute_equity(cash: float, position: Position | None, mark_price: float | None = None) -> float:
    if position is None:
        return cash
    price = position.current_price if mark_price is None else mark_price
    return cash + position.shares * price


def unrealized_pnl(position: Position | None, mark_price: float | None = None) -> float:
    if position is None:
        return 0.0
    price = position.current_price if mark_price is None else mark_price
    return (price - position.entry_price) * position.shares


def apply_trade(
    action: TradeAction,
    price: float,
    shares: int,
    cash: float,
    position: Position | None,
    risk: RiskManager | None = None,
) -> TradeOutcome:
    """
    Price one BUY/SELL/HOLD decision against a cash account.

    Opposite-side fills close first and realize PnL at the average entry;
    any size beyond the open quantity flips the position and opens the new
    side at `price`. The trade is all-or-nothing: when the opening leg
    fails the cash or margin check, nothing is applied.
    """
    if price <= 0:
        raise ValidationError("price must be > 0")
    if isinstance(shares, bool) or not isinstance(shares, int) or shares < 0:
        raise ValidationError("shares must be a non-negative integer")

    risk = risk or _DEFAULT_RISK
    marked = position.marked(price) if position is not None else None

    if action == TradeAction.HOLD or shares == 0:
        return TradeOutcome(cash=cash, position=marked, realized_pnl=0.0)

    if action == TradeAction.BUY:
        return _buy(price, shares, cash, marked, risk)
    return _sell(price, shares, cash, marked, risk)


def _buy(price: float, shares: int, cash: float, position: Position | None, risk: RiskManager) -> TradeOutcome:
    if position is None or position.is_long:
        cost = shares * price
        risk.check_buy(cash, cost)
        return TradeOutcome(
            cash=cash - cost,
            position=_extend(position, shares, price),
            realized_pnl=0.0,
        )

    # Covering a short.
    short_abs = -position.shares
    cover = min(shares, short_abs)
    realized = (position.entry_price - price) * cover
    cash_after_cover = cash - cover * price

    if shares < short_abs:
        remaining = Position(shares=position.shares + shares, entry_price=position.entry_price, current_price=price)
        return TradeOutcome(cash=cash_after_cover, position=remaining, realized_pnl=realized, closed_shares=cover)
    if shares == short_abs:
        return TradeOutcome(cash=cash_after_cover, position=None, realized_pnl=realized, closed_shares=cover)

    # Flip short -> long; the long leg is paid from what is left after covering.
    long_qty = shares - short_abs
    cost = long_qty * price
    risk.check_buy(cash_after_cover, cost)
    return TradeOutcome(
        cash=cash_after_cover - cost,
        position=Position(shares=long_qty, entry_price=price, current_price=price),
        realized_pnl=realized,
        closed_shares=cover,
    )


def _sell(price: float, shares: int, cash: float, position: Position | None, risk: RiskManager) -> TradeOutcome:
    if position is None or position.is_short:
        current_short = 0 if position is None else -position.shares
        risk.check_short(cash, (current_short + shares) * price)
        return TradeOutcome(
            cash=cash + shares * price,
            position=_extend(position, -shares, price),
            realized_pnl=0.0,
        )

    # Reducing a long.
    long_qty = position.shares
    close = min(shares, long_qty)
    realized = (price - position.entry_price) * close
    cash_after_close = cash + close * price

    if shares < long_qty:
        remaining = Position(shares=long_qty - shares, entry_price=position.entry_price, current_price=price)
        return TradeOutcome(cash=cash_after_close, position=remaining, realized_pnl=realized, closed_shares=close)
    if shares == long_qty:
        return TradeOutcome(cash=cash_after_close, position=None, realized_pnl=realized, closed_shares=close)

    # Flip long -> short.
    short_qty = shares - long_qty
    risk.check_short(cash_after_close, short_qty * price)
    return TradeOutcome(
        cash=cash_after_close + short_qty * price,
        position=Position(shares=-short_qty, entry_price=price, current_price=price),
        realized_pnl=realized,
        closed_shares=close,
    )


def _extend(position: Position | None, signed_qty: int, price: float) -> Position:
    if position is None:
        return Position(shares=signed_qty, entry_price=price, current_price=price)
    # Same-side add: size-weighted average entry.
    old_abs = abs(position.shares)
    add_abs = abs(signed_qty)
    weighted_avg = (old_abs * position.entry_price + add_abs * price) / (old_abs + add_abs)
    return Position(shares=position.shares + signed_qty, entry_price=weighted_avg, current_price=price)


@dataclass(slots=True)
class PlayerLedger:
    """Server-side account for one player in one match."""

    player_id: str
    cash: float = STARTING_CASH
    starting_cash: float = STARTING_CASH
    position: Position | None = None
    realized_pnl: float = 0.0
    trades: list[TradeRecord] = field(default_factory=list)
    decided_weeks: set[int] = field(default_factory=set)
    settled: bool = False

    @classmethod
    def open(cls, player_id: str, starting_cash: float = STARTING_CASH) -> "PlayerLedger":
        return cls(player_id=player_id, cash=starting_cash, starting_cash=starting_cash)

    def decide(
        self,
        week: int,
        action: TradeAction,
        price: float,
        shares: int,
        risk: RiskManager | None = None,
        timestamp: int | None = None,
    ) -> tuple[TradeRecord, TradeOutcome]:
        if week in self.decided_weeks:
            raise DecisionAlreadyMade(f"week {week} already has a decision from {self.player_id}")

        outcome = apply_trade(action, price, shares, self.cash, self.position, risk=risk)
        is_fill = action != TradeAction.HOLD and shares > 0
        record = TradeRecord(
            week=week,
            action=action,
            price=price,
            timestamp=utc_ms() if timestamp is None else timestamp,
            shares=shares if is_fill else None,
            pnl=outcome.realized_pnl if outcome.closes_position else None,
        )

        self.cash = outcome.cash
        self.position = outcome.position
        self.realized_pnl += outcome.realized_pnl
        self.trades.append(record)
        self.decided_weeks.add(week)
        return record, outcome

    def mark(self, price: float) -> None:
        if self.position is not None:
            self.position = self.position.marked(price)

    def equity(self, mark_price: float | None = None) -> float:
        return compute_equity(self.cash, self.position, mark_price)

    def settle(self, week: int, price: float, timestamp: int | None = None) -> TradeRecord | None:
        """
        Close any open position at the final price and log the implicit close.
        """
        if self.settled:
            return None
        self.settled = True
        if self.position is None:
            return None

        close_action = TradeAction.SELL if self.position.is_long else TradeAction.BUY
        qty = abs(self.position.shares)
        outcome = apply_trade(close_action, price, qty, self.cash, self.position)
        record = TradeRecord(
            week=week,
            action=close_action,
            price=price,
            timestamp=utc_ms() if timestamp is None else timestamp,
            shares=qty,
            pnl=outcome.realized_pnl,
        )
        self.cash = outcome.cash
        self.position = outcome.position
        self.realized_pnl += outcome.realized_pnl
        self.trades.append(record)
        return record

    def snapshot(self, mark_price: float | None = None) -> dict[str, Any]:
        equity = self.equity(mark_price)
        return {
            "playerId": self.player_id,
            "cash": round4(self.cash),
            "position": None if self.position is None else self.position.to_dict(),
            "realizedPnL": round4(self.realized_pnl),
            "unrealizedPnL": round4(unrealized_pnl(self.position, mark_price)),
            "equity": round4(equity),
            "pnl": round4(equity - self.starting_cash),
        }

    def trade_log(self) -> list[dict[str, Any]]:
        return [trade.to_dict() for trade in self.trades]
