# File: bot_client.py

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
import signal
from dataclasses import dataclass, field
from typing import Any

import websockets
from websockets.exceptions import ConnectionClosed

from bot_strategies import StrategyContext, load_strategy, parse_strategy_params
from message_schemas import round4
from models import STARTING_CASH
from scenarios import Scenario

LOGGER = logging.getLogger("bot_client")


@dataclass(slots=True)
class LocalDuelState:
    match_id: str | None = None
    join_code: str | None = None
    week_prices: list[float] = field(default_factory=list)
    cash: float = STARTING_CASH
    position_shares: int = 0
    entry_price: float = 0.0
    equity: float = STARTING_CASH
    decided_weeks: set[int] = field(default_factory=set)
    last_rejection_reason: str | None = None
    final_equity: float | None = None

    def load_match(self, match: dict[str, Any]) -> None:
        self.match_id = str(match["id"])
        self.join_code = match.get("joinCode")
        scenario = Scenario.from_dict(match["scenario"])
        self.week_prices = scenario.week_prices()
        self.cash = float(match.get("startingCash", STARTING_CASH))
        self.equity = self.cash

    def apply_ledger(self, ledger: dict[str, Any]) -> None:
        self.cash = float(ledger.get("cash", self.cash))
        self.equity = float(ledger.get("equity", self.equity))
        position = ledger.get("position")
        if isinstance(position, dict):
            self.position_shares = int(position.get("shares", 0))
            self.entry_price = float(position.get("entryPrice", 0.0))
        else:
            self.position_shares = 0
            self.entry_price = 0.0


class DuelBotClient:
    """
    Headless duel player speaking the public websocket protocol.

    Modes:
    - `create`: open a two-player match and wait for an opponent.
    - `solo`: open a solo match and play it immediately.
    - `join`: join a waiting match by its 6-digit code.
    """

    def __init__(
        self,
        *,
        uri: str,
        user_id: str,
        username: str | None = None,
        mode: str = "solo",
        join_code: str | None = None,
        strategy: str = "momentum",
        strategy_params: dict[str, str] | None = None,
        seed: int = 7,
    ) -> None:
        if mode not in ("create", "solo", "join"):
            raise ValueError("mode must be create, solo or join")
        if mode == "join" and not join_code:
            raise ValueError("join mode needs a join code")
        self._uri = uri
        self._user_id = user_id
        self._username = username or user_id
        self._mode = mode
        self._join_code = join_code
        self._rng = random.Random(seed)
        self._state = LocalDuelState()
        self._strategy = load_strategy(
            strategy,
            player_id=user_id,
            rng=self._rng,
            params=strategy_params or {},
        )
        self._shutdown = asyncio.Event()

    @property
    def state(self) -> LocalDuelState:
        return self._state

    async def run(self) -> None:
        LOGGER.info("connecting to %s as %s (%s)", self._uri, self._user_id, self._mode)
        try:
            async with websockets.connect(self._uri) as websocket:
                consumer = asyncio.create_task(self._consume(websocket), name="bot-consumer")
                stopper = asyncio.create_task(self._shutdown.wait(), name="bot-shutdown")
                done, pending = await asyncio.wait({consumer, stopper}, return_when=asyncio.FIRST_COMPLETED)
                for task in pending:
                    task.cancel()
                if consumer in done:
                    exc = consumer.exception()
                    if exc is not None:
                        raise exc
        except ConnectionClosed:
            LOGGER.warning("connection closed before the match finished")

    async def _consume(self, websocket: Any) -> None:
        async for raw in websocket:
            payload = json.loads(raw)
            if not isinstance(payload, dict):
                continue
            for reply in self.handle_message(payload):
                await websocket.send(json.dumps(reply))
            if self._shutdown.is_set():
                return

    def handle_message(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        """Update local state from one server message and return the replies to send."""
        msg_type = payload.get("type")

        if msg_type == "welcome":
            return [self._opening_request()]

        if msg_type in ("match_created", "match_joined"):
            self._state.load_match(payload["match"])
            if msg_type == "match_created" and self._mode == "create":
                LOGGER.info("match %s waiting for an opponent, join code %s", self._state.match_id, self._state.join_code)
            return [{"type": "join_match", "matchId": self._state.match_id, "userId": self._user_id}]

        if msg_type == "match_state":
            return self._on_match_state(payload)

        if msg_type == "trade_result":
            ledger = payload.get("ledger")
            if isinstance(ledger, dict):
                self._state.apply_ledger(ledger)
            LOGGER.info(
                "week %s %s %s @ %s -> equity %s",
                payload.get("week"),
                payload.get("action"),
                payload.get("shares"),
                payload.get("price"),
                payload.get("equity"),
            )
        elif msg_type == "opponent_trade":
            LOGGER.info("opponent %s %s %s", payload.get("playerId"), payload.get("action"), payload.get("shares"))
        elif msg_type == "trade_rejected":
            self._state.last_rejection_reason = str(payload.get("reason", "unknown"))
            LOGGER.warning("trade rejected: %s", payload.get("message"))
        elif msg_type == "match_result":
            if payload.get("playerId") == self._user_id:
                self._state.final_equity = float(payload.get("equity", self._state.equity))
                LOGGER.info("final equity %s (pnl %s)", payload.get("equity"), payload.get("pnl"))
        elif msg_type == "match_updated":
            match = payload.get("match") or {}
            if match.get("status") == "COMPLETED":
                LOGGER.info("match %s completed, winner=%s", match.get("id"), match.get("winner"))
                self.shutdown()
        elif msg_type == "error":
            LOGGER.warning("server error %s: %s", payload.get("code"), payload.get("message"))
            if self._state.match_id is None:
                self.shutdown()
        return []

    def _opening_request(self) -> dict[str, Any]:
        if self._mode == "join":
            return {
                "type": "join_code",
                "userId": self._user_id,
                "username": self._username,
                "joinCode": self._join_code,
            }
        return {
            "type": "create_match",
            "userId": self._user_id,
            "username": self._username,
            "solo": self._mode == "solo",
        }

    def _on_match_state(self, payload: dict[str, Any]) -> list[dict[str, Any]]:
        week = payload.get("currentWeek")
        if payload.get("phase") != "decision" or not isinstance(week, int):
            return []
        if week in self._state.decided_weeks or self._state.match_id is None:
            return []
        if not 0 <= week < len(self._state.week_prices):
            return []

        price = self._state.week_prices[week]
        context = StrategyContext(
            player_id=self._user_id,
            week=week,
            price=price,
            price_history=tuple(self._state.week_prices[: week + 1]),
            cash=round4(self._state.cash),
            position_shares=self._state.position_shares,
            entry_price=round4(self._state.entry_price),
            equity=round4(self._state.cash + self._state.position_shares * price),
        )
        decision = self._strategy.next_decision(context)
        self._state.decided_weeks.add(week)
        return [decision.to_message(self._state.match_id, self._user_id, week, price)]

    def shutdown(self) -> None:
        self._shutdown.set()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trading duel bot player")
    parser.add_argument("--uri", type=str, default="ws://127.0.0.1:8765")
    parser.add_argument("--user-id", type=str, required=True)
    parser.add_argument("--username", type=str, default=None)
    parser.add_argument("--mode", type=str, choices=("create", "solo", "join"), default="solo")
    parser.add_argument("--join-code", type=str, default=None)
    parser.add_argument(
        "--strategy",
        type=str,
        default="momentum",
        help="built-in: hold|random|momentum or custom module:Class",
    )
    parser.add_argument(
        "--strategy-param",
        action="append",
        default=[],
        help="strategy parameter in key=value format; repeat for multiple params",
    )
    parser.add_argument("--seed", type=int, default=7)
    parser.add_argument("--log-level", type=str, default="INFO")
    return parser.parse_args(argv)


async def _main_async(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    bot = DuelBotClient(
        uri=args.uri,
        user_id=args.user_id,
        username=args.username,
        mode=args.mode,
        join_code=args.join_code,
        strategy=args.strategy,
        strategy_params=parse_strategy_params(args.strategy_param),
        seed=args.seed,
    )

    loop = asyncio.get_running_loop()
    for sig_name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, sig_name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, bot.shutdown)
        except (NotImplementedError, RuntimeError):
            pass

    await bot.run()


def main(argv: list[str] | None = None) -> None:
    try:
        asyncio.run(_main_async(argv))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
