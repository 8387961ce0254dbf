# File: bot_strategies.py

from __future__ import annotations

import importlib
import random
from dataclasses import dataclass
from typing import Callable, Protocol

from models import TradeAction


@dataclass(frozen=True, slots=True)
class StrategyContext:
    player_id: str
    week: int
    price: float
    price_history: tuple[float, ...]
    cash: float
    position_shares: int = 0
    entry_price: float = 0.0
    equity: float = 0.0


@dataclass(frozen=True, slots=True)
class Decision:
    action: TradeAction
    shares: int = 0

    def to_message(self, match_id: str, player_id: str, week: int, price: float) -> dict[str, object]:
        return {
            "type": "trade_action",
            "matchId": match_id,
            "playerId": player_id,
            "action": self.action.value,
            "shares": self.shares,
            "week": week,
            "price": price,
        }


HOLD = Decision(action=TradeAction.HOLD)


class Strategy(Protocol):
    """Strategy interface used by bot_client."""

    def next_decision(self, context: StrategyContext) -> Decision:
        """Return this week's decision; HOLD when there is nothing to do."""


def parse_strategy_params(pairs: list[str]) -> dict[str, str]:
    params: dict[str, str] = {}
    for raw in pairs:
        if "=" not in raw:
            raise ValueError(f"invalid strategy param '{raw}', expected key=value")
        key, value = raw.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError(f"invalid strategy param '{raw}', empty key")
        params[key] = value.strip()
    return params


def affordable_shares(cash: float, price: float, fraction: float) -> int:
    if price <= 0 or cash <= 0:
        return 0
    return int((cash * fraction) // price)


class HoldStrategy:
    def __init__(self, *, player_id: str, rng: random.Random, params: dict[str, str]) -> None:
        self._player_id = player_id

    def next_decision(self, context: StrategyContext) -> Decision:
        return HOLD


class RandomStrategy:
    """Baseline: a coin flip between BUY, SELL and HOLD each week."""

    def __init__(self, *, player_id: str, rng: random.Random, params: dict[str, str]) -> None:
        self._player_id = player_id
        self._rng = rng
        self._fraction = min(1.0, max(0.01, float(params.get("fraction", "0.25"))))
        self._hold_prob = min(1.0, max(0.0, float(params.get("hold_prob", "0.3"))))

    def next_decision(self, context: StrategyContext) -> Decision:
        if self._rng.random() < self._hold_prob:
            return HOLD
        action = TradeAction.BUY if self._rng.random() < 0.5 else TradeAction.SELL
        shares = affordable_shares(context.cash, context.price, self._fraction)
        if shares <= 0:
            return HOLD
        return Decision(action=action, shares=shares)


class MomentumStrategy:
    """
    Follows the last weekly move.

    Goes long after an up week and short after a down week, reversing an
    opposite position in one trade. Stays put when already on the right side.
    """

    def __init__(self, *, player_id: str, rng: random.Random, params: dict[str, str]) -> None:
        self._player_id = player_id
        self._fraction = min(1.0, max(0.01, float(params.get("fraction", "0.5"))))
        self._threshold = max(0.0, float(params.get("threshold", "0.0")))

    def next_decision(self, context: StrategyContext) -> Decision:
        if len(context.price_history) < 2:
            return HOLD
        previous, latest = context.price_history[-2], context.price_history[-1]
        if previous <= 0:
            return HOLD
        change = (latest - previous) / previous
        if abs(change) <= self._threshold:
            return HOLD

        size = affordable_shares(context.equity or context.cash, context.price, self._fraction)
        if size <= 0:
            return HOLD

        if change > 0:
            if context.position_shares > 0:
                return HOLD
            # Cover any short, then open the long.
            return Decision(action=TradeAction.BUY, shares=size + max(0, -context.position_shares))
        if context.position_shares < 0:
            return HOLD
        return Decision(action=TradeAction.SELL, shares=size + max(0, context.position_shares))


BUILTIN_STRATEGIES: dict[str, Callable[[str, random.Random, dict[str, str]], Strategy]] = {
    "hold": lambda player_id, rng, params: HoldStrategy(player_id=player_id, rng=rng, params=params),
    "random": lambda player_id, rng, params: RandomStrategy(player_id=player_id, rng=rng, params=params),
    "momentum": lambda player_id, rng, params: MomentumStrategy(player_id=player_id, rng=rng, params=params),
}


def load_strategy(strategy_spec: str, *, player_id: str, rng: random.Random, params: dict[str, str]) -> Strategy:
    """
    Load built-in strategy by name or custom strategy by module path.

    `strategy_spec` formats:
    - built-in: `hold`, `random`, `momentum`
    - custom: `your_module:YourStrategyClass`

    Custom class must provide:
    `__init__(self, player_id: str, rng: random.Random, params: dict[str, str])`
    and `next_decision(self, context: StrategyContext) -> Decision`.
    """

    builtin = BUILTIN_STRATEGIES.get(strategy_spec.lower())
    if builtin is not None:
        return builtin(player_id, rng, params)

    if ":" not in strategy_spec:
        valid = ", ".join(sorted(BUILTIN_STRATEGIES))
        raise ValueError(f"unknown strategy '{strategy_spec}'. built-ins: {valid} or use module:Class")

    module_name, class_name = strategy_spec.split(":", 1)
    module_name = module_name.strip()
    class_name = class_name.strip()
    if not module_name or not class_name:
        raise ValueError("custom strategy format must be module:Class")

    module = importlib.import_module(module_name)
    strategy_cls = getattr(module, class_name, None)
    if strategy_cls is None:
        raise ValueError(f"custom strategy class '{class_name}' not found in '{module_name}'")

    instance = strategy_cls(player_id=player_id, rng=rng, params=params)
    if not hasattr(instance, "next_decision"):
        raise ValueError("custom strategy must implement next_decision(context)")
    return instance
