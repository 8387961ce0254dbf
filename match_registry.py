# File: match_registry.py

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from message_schemas import (
    TradeActionRequest,
    fill_payload,
    match_ready_event,
    match_result_event,
    match_state_event,
    opponent_trade_event,
    player_joined_event,
    spectator_trade_event,
    trade_result_event,
    utc_ms,
)
from models import (
    STARTING_CASH,
    MatchNotFound,
    NotInMatch,
    PhaseClosed,
    RoundPhase,
    WeekMismatch,
)
from positions import PlayerLedger
from risk_manager import RiskManager
from round_clock import ClockConfig, RoundClock

LOGGER = logging.getLogger("match_registry")

SESSION_TTL_SECONDS = 600.0
RETIRED_CAPACITY = 4096

SendFn = Callable[[Any, dict[str, Any]], Awaitable[bool]]
EventSink = Callable[[dict[str, Any]], None]
CompletionCallback = Callable[["MatchSession"], Awaitable[None] | None]


@dataclass(slots=True)
class MatchSession:
    """Live, in-memory state of one match room."""

    match_id: str
    clock: RoundClock
    required_players: int
    week_prices: list[float]
    starting_cash: float = STARTING_CASH
    members: dict[str, Any] = field(default_factory=dict)
    watchers: dict[Any, None] = field(default_factory=dict)
    ledgers: dict[str, PlayerLedger] = field(default_factory=dict)
    task: asyncio.Task[None] | None = None
    created_at: float = 0.0
    last_activity: float = 0.0

    @property
    def is_started(self) -> bool:
        return self.clock.is_running or self.clock.is_completed

    @property
    def player_count(self) -> int:
        return len(self.members)

    def ledger_for(self, player_id: str) -> PlayerLedger:
        ledger = self.ledgers.get(player_id)
        if ledger is None:
            ledger = PlayerLedger.open(player_id, self.starting_cash)
            self.ledgers[player_id] = ledger
        return ledger

    def recipients(self) -> list[Any]:
        seen: set[int] = set()
        out: list[Any] = []
        for player_id in sorted(self.members):
            connection = self.members[player_id]
            if id(connection) not in seen:
                seen.add(id(connection))
                out.append(connection)
        for connection in self.watchers:
            if id(connection) not in seen:
                seen.add(id(connection))
                out.append(connection)
        return out


class MatchSessionRegistry:
    """
    Process-wide table of live match rooms.

    Entries are created on first join, driven by one clock task each,
    discarded when their clock completes and reaped when they sit idle
    past the TTL without ever starting. Completed ids are remembered in a
    bounded set so a late rejoin cannot restart a finished match.
    """

    def __init__(
        self,
        *,
        send: SendFn,
        clock_config: ClockConfig | None = None,
        risk: RiskManager | None = None,
        on_complete: CompletionCallback | None = None,
        time_ms: Callable[[], int] = utc_ms,
        monotonic: Callable[[], float] = time.monotonic,
        session_ttl: float = SESSION_TTL_SECONDS,
        retired_capacity: int = RETIRED_CAPACITY,
    ) -> None:
        if session_ttl <= 0:
            raise ValueError("session_ttl must be > 0")
        self._send = send
        self._clock_config = clock_config or ClockConfig()
        self._risk = risk or RiskManager()
        self._on_complete = on_complete
        self._time_ms = time_ms
        self._monotonic = monotonic
        self._session_ttl = float(session_ttl)
        self._sessions: dict[str, MatchSession] = {}
        self._retired: set[str] = set()
        self._retired_order: deque[str] = deque()
        self._retired_capacity = max(1, retired_capacity)
        self._sinks: list[EventSink] = []

    @property
    def clock_config(self) -> ClockConfig:
        return self._clock_config

    def add_event_sink(self, sink: EventSink) -> None:
        self._sinks.append(sink)

    def get(self, match_id: str) -> MatchSession | None:
        return self._sessions.get(match_id)

    def is_live(self, match_id: str) -> bool:
        session = self._sessions.get(match_id)
        return session is not None and session.clock.is_running

    def is_retired(self, match_id: str) -> bool:
        return match_id in self._retired

    def snapshot(self, match_id: str) -> dict[str, Any] | None:
        session = self._sessions.get(match_id)
        if session is None:
            return None
        return session.clock.snapshot()

    def active_match_ids(self) -> list[str]:
        return list(self._sessions)

    async def join(
        self,
        match_id: str,
        player_id: str,
        connection: Any,
        *,
        required_players: int,
        week_prices: list[float],
        starting_cash: float = STARTING_CASH,
    ) -> MatchSession:
        if match_id in self._retired:
            raise MatchNotFound(f"match {match_id} has already finished")
        if len(week_prices) < self._clock_config.total_weeks:
            raise ValueError("week_prices must cover every week of the match")

        session = self._sessions.get(match_id)
        if session is None:
            now = self._monotonic()
            session = MatchSession(
                match_id=match_id,
                clock=RoundClock(self._clock_config),
                required_players=required_players,
                week_prices=list(week_prices),
                starting_cash=starting_cash,
                created_at=now,
                last_activity=now,
            )
            self._sessions[match_id] = session
            LOGGER.info("session %s opened (required_players=%s)", match_id, required_players)

        session.members[player_id] = connection
        session.watchers.pop(connection, None)
        session.ledger_for(player_id)
        session.last_activity = self._monotonic()

        await self._broadcast(session, player_joined_event(match_id, player_id, session.player_count))

        if not session.is_started and session.player_count >= session.required_players:
            snapshot = session.clock.start(self._time_ms())
            session.task = asyncio.create_task(self._run_clock(session), name=f"match-clock-{match_id}")
            LOGGER.info("match %s clock started", match_id)
            await self._broadcast(session, match_ready_event(match_id))
            await self._broadcast(session, match_state_event(match_id, snapshot))
        else:
            await self._send(connection, match_state_event(match_id, session.clock.snapshot()))
        return session

    async def watch(self, match_id: str, connection: Any) -> MatchSession:
        session = self._sessions.get(match_id)
        if session is None:
            raise MatchNotFound(f"match {match_id} is not live")
        session.watchers[connection] = None
        await self._send(connection, match_state_event(match_id, session.clock.snapshot()))
        return session

    def leave(self, match_id: str, player_id: str) -> bool:
        session = self._sessions.get(match_id)
        if session is None or player_id not in session.members:
            return False
        del session.members[player_id]
        session.last_activity = self._monotonic()
        LOGGER.info("player %s left match %s (remaining=%s)", player_id, match_id, session.player_count)
        return True

    def leave_connection(self, match_id: str, connection: Any) -> list[str]:
        session = self._sessions.get(match_id)
        if session is None:
            return []
        session.watchers.pop(connection, None)
        player_ids = [pid for pid, conn in session.members.items() if conn is connection]
        for player_id in player_ids:
            self.leave(match_id, player_id)
        return player_ids

    def disconnect(self, connection: Any) -> None:
        for match_id in list(self._sessions):
            self.leave_connection(match_id, connection)

    async def submit_trade(self, request: TradeActionRequest, connection: Any | None = None) -> dict[str, Any]:
        """
        Price, validate and apply one trade, then relay the fill.

        Raises a DuelError subclass when the trade is rejected; the ledger
        is untouched in that case.
        """
        session = self._sessions.get(request.match_id)
        if session is None:
            if request.match_id in self._retired:
                raise PhaseClosed(f"match {request.match_id} has finished")
            raise MatchNotFound(f"match {request.match_id} is not live")

        member = session.members.get(request.player_id)
        if member is None or (connection is not None and member is not connection):
            raise NotInMatch(f"{request.player_id} is not in match {request.match_id}")

        now_ms = self._time_ms()
        clock = session.clock
        if not clock.is_trading_open(now_ms):
            raise PhaseClosed(f"trading is closed during phase {clock.phase.value}")
        if request.week != clock.current_week:
            raise WeekMismatch(f"week {request.week} is not the current week {clock.current_week}")

        price = session.week_prices[clock.current_week]
        if request.price is not None and abs(request.price - price) > 1e-9:
            LOGGER.debug(
                "match %s player %s sent price %s; server price is %s",
                request.match_id,
                request.player_id,
                request.price,
                price,
            )

        ledger = session.ledger_for(request.player_id)
        record, _ = ledger.decide(
            clock.current_week,
            request.action,
            price,
            request.shares,
            risk=self._risk,
            timestamp=now_ms,
        )
        session.last_activity = self._monotonic()

        position_shares = 0 if ledger.position is None else ledger.position.shares
        fill = fill_payload(request.match_id, request.player_id, record, ledger.equity(price), position_shares)
        LOGGER.debug(
            "match %s week %s %s %s x%s @ %s",
            request.match_id,
            record.week,
            request.player_id,
            record.action.value,
            record.shares or 0,
            price,
        )

        await self._send(member, trade_result_event(fill, ledger.snapshot(price)))
        for player_id, peer in list(session.members.items()):
            if player_id != request.player_id and peer is not member:
                await self._send(peer, opponent_trade_event(fill))
        spectator_event = spectator_trade_event(fill)
        for watcher in list(session.watchers):
            await self._send(watcher, spectator_event)
        self._emit(spectator_event)
        return fill

    async def publish(self, match_id: str, event: dict[str, Any]) -> bool:
        session = self._sessions.get(match_id)
        if session is None:
            return False
        await self._broadcast(session, event)
        return True

    def reap_stale(self, now: float | None = None) -> list[str]:
        """Drop never-started or finished-but-lingering sessions idle past the TTL."""
        now = self._monotonic() if now is None else now
        reaped: list[str] = []
        for match_id, session in list(self._sessions.items()):
            idle = now - session.last_activity
            if idle < self._session_ttl:
                continue
            task_done = session.task is not None and session.task.done()
            if not session.is_started or task_done:
                del self._sessions[match_id]
                reaped.append(match_id)
        if reaped:
            LOGGER.info("reaped %s idle session(s): %s", len(reaped), ", ".join(reaped))
        return reaped

    async def run_reaper(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.reap_stale()

    async def shutdown(self) -> None:
        tasks = [session.task for session in self._sessions.values() if session.task is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._sessions.clear()

    async def _run_clock(self, session: MatchSession) -> None:
        clock = session.clock
        while clock.is_running:
            await asyncio.sleep(clock.current_phase_duration)
            snapshot = clock.advance(self._time_ms())
            if clock.phase == RoundPhase.DECISION:
                price = session.week_prices[clock.current_week]
                for ledger in session.ledgers.values():
                    ledger.mark(price)
            LOGGER.debug("match %s -> week %s %s", session.match_id, snapshot["currentWeek"], snapshot["phase"])
            await self._broadcast(session, match_state_event(session.match_id, snapshot))

        try:
            await self._settle(session)
            if self._on_complete is not None:
                result = self._on_complete(session)
                if inspect.isawaitable(result):
                    await result
        except Exception:
            LOGGER.exception("completing match %s failed", session.match_id)
        finally:
            self._retire(session.match_id)

    async def _settle(self, session: MatchSession) -> None:
        final_week = self._clock_config.total_weeks - 1
        final_price = session.week_prices[final_week]
        now_ms = self._time_ms()
        for player_id in sorted(session.ledgers):
            ledger = session.ledgers[player_id]
            close = ledger.settle(final_week, final_price, timestamp=now_ms)
            if close is not None:
                fill = fill_payload(session.match_id, player_id, close, ledger.equity(final_price), 0)
                self._emit(spectator_trade_event(fill))
            event = match_result_event(session.match_id, ledger.snapshot(final_price), ledger.trade_log())
            await self._broadcast(session, event)
            self._emit(event)
            LOGGER.info(
                "match %s settled %s equity=%s",
                session.match_id,
                player_id,
                event["equity"],
            )

    def _retire(self, match_id: str) -> None:
        self._sessions.pop(match_id, None)
        if match_id in self._retired:
            return
        self._retired.add(match_id)
        self._retired_order.append(match_id)
        while len(self._retired_order) > self._retired_capacity:
            self._retired.discard(self._retired_order.popleft())
        LOGGER.info("match %s retired", match_id)

    def _emit(self, event: dict[str, Any]) -> None:
        for sink in self._sinks:
            sink(event)

    async def _broadcast(self, session: MatchSession, event: dict[str, Any]) -> None:
        recipients = session.recipients()
        if not recipients:
            return
        alive_flags = await asyncio.gather(*(self._send(connection, event) for connection in recipients))
        for connection, is_alive in zip(recipients, alive_flags):
            if is_alive:
                continue
            session.watchers.pop(connection, None)
            for player_id in [pid for pid, conn in session.members.items() if conn is connection]:
                del session.members[player_id]
                LOGGER.info("pruned closed connection for %s in match %s", player_id, session.match_id)
