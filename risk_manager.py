# File: risk_manager.py

from __future__ import annotations

from dataclasses import dataclass

from models import InsufficientFunds, MarginExceeded


MAX_SHORT_LEVERAGE = 1.0


@dataclass(frozen=True, slots=True)
class RiskConfig:
    max_short_leverage: float = MAX_SHORT_LEVERAGE

    def __post_init__(self) -> None:
        if self.max_short_leverage <= 0:
            raise ValueError("max_short_leverage must be > 0")


class RiskManager:
    """
    Pure pre-trade validator for the duel's cash account.

    Longs must be paid for in full from cash. Shorts are capped so the
    absolute notional of the whole short never exceeds cash times the
    configured leverage. Nothing here mutates state.
    """

    def __init__(self, config: RiskConfig | None = None) -> None:
        self._config = config or RiskConfig()

    @property
    def max_short_leverage(self) -> float:
        return self._config.max_short_leverage

    def check_buy(self, cash: float, cost: float) -> None:
        if cost > cash:
            raise InsufficientFunds(f"cost {cost:.2f} exceeds available cash {cash:.2f}")

    def check_short(self, cash: float, short_notional: float) -> None:
        limit = cash * self._config.max_short_leverage
        if short_notional > limit:
            raise MarginExceeded(
                f"short notional {short_notional:.2f} exceeds margin limit {limit:.2f}"
            )
