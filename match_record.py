# File: match_record.py

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from message_schemas import FinalizeRequest, utc_ms
from models import (
    STARTING_CASH,
    AlreadyStarted,
    CannotJoinOwnMatch,
    MatchNotFound,
    MatchStatus,
    NotAuthorized,
    PersistenceError,
    TradeRecord,
)
from scenarios import Scenario

if TYPE_CHECKING:
    from match_store import MatchStore, StatsStore
    from scenarios import ScenarioProvider

LOGGER = logging.getLogger("match_service")

JOIN_CODE_ATTEMPTS = 50


@dataclass(slots=True)
class PlayerSlot:
    user_id: str
    username: str
    final_equity: float = STARTING_CASH
    final_pnl: float = 0.0
    is_finished: bool = False
    trades: list[TradeRecord] = field(default_factory=list)

    def finish(self, final_equity: float, trades: list[TradeRecord] | None, starting_cash: float) -> None:
        self.final_equity = float(final_equity)
        self.final_pnl = self.final_equity - starting_cash
        self.is_finished = True
        if trades is not None:
            self.trades = list(trades)

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "finalEquity": self.final_equity,
            "finalPnL": self.final_pnl,
            "isFinished": self.is_finished,
            "trades": [trade.to_dict() for trade in self.trades],
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "PlayerSlot":
        return PlayerSlot(
            user_id=str(raw["userId"]),
            username=str(raw.get("username", "")),
            final_equity=float(raw.get("finalEquity", STARTING_CASH)),
            final_pnl=float(raw.get("finalPnL", 0.0)),
            is_finished=bool(raw.get("isFinished", False)),
            trades=[TradeRecord.from_dict(row) for row in raw.get("trades", [])],
        )


@dataclass(slots=True)
class MatchRecord:
    match_id: str
    player1: PlayerSlot
    scenario: Scenario
    join_code: str
    status: MatchStatus = MatchStatus.WAITING
    player2: PlayerSlot | None = None
    solo: bool = False
    winner: str | None = None
    notes: str | None = None
    starting_cash: float = STARTING_CASH
    created_at: int = 0
    version: int = 0

    def slots(self) -> list[PlayerSlot]:
        return [slot for slot in (self.player1, self.player2) if slot is not None]

    def is_participant(self, user_id: str) -> bool:
        return any(slot.user_id == user_id for slot in self.slots())

    def slot_for(self, user_id: str) -> PlayerSlot | None:
        for slot in self.slots():
            if slot.user_id == user_id:
                return slot
        return None

    @property
    def required_players(self) -> int:
        return 1 if self.solo else 2

    def all_present_finished(self) -> bool:
        # An empty player-2 slot counts as finished.
        player2_done = self.player2 is None or self.player2.is_finished
        return self.player1.is_finished and player2_done

    def determine_winner(self) -> str | None:
        # An empty player-2 slot loses to any result.
        if self.player2 is None:
            return self.player1.user_id
        if self.player1.final_equity > self.player2.final_equity:
            return self.player1.user_id
        if self.player2.final_equity > self.player1.final_equity:
            return self.player2.user_id
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.match_id,
            "player1": self.player1.to_dict(),
            "player2": None if self.player2 is None else self.player2.to_dict(),
            "scenario": self.scenario.to_dict(),
            "stockTicker": self.scenario.ticker,
            "stockDate": self.scenario.start_date,
            "status": self.status.value,
            "joinCode": self.join_code,
            "solo": self.solo,
            "winner": self.winner,
            "notes": self.notes,
            "startingCash": self.starting_cash,
            "createdAt": self.created_at,
            "version": self.version,
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "MatchRecord":
        player2 = raw.get("player2")
        return MatchRecord(
            match_id=str(raw["id"]),
            player1=PlayerSlot.from_dict(raw["player1"]),
            player2=None if player2 is None else PlayerSlot.from_dict(player2),
            scenario=Scenario.from_dict(raw["scenario"]),
            join_code=str(raw["joinCode"]),
            status=MatchStatus(raw.get("status", MatchStatus.WAITING.value)),
            solo=bool(raw.get("solo", False)),
            winner=raw.get("winner"),
            notes=raw.get("notes"),
            starting_cash=float(raw.get("startingCash", STARTING_CASH)),
            created_at=int(raw.get("createdAt", 0)),
            version=int(raw.get("version", 0)),
        )


@dataclass(slots=True)
class UserStats:
    user_id: str
    username: str = ""
    total_matches: int = 0
    wins: int = 0
    losses: int = 0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0

    def record_result(self, final_pnl: float, winner: str | None) -> None:
        self.total_matches += 1
        self.total_pnl += final_pnl
        self.avg_pnl = self.total_pnl / self.total_matches
        # A draw counts as neither.
        if winner is None:
            return
        if winner == self.user_id:
            self.wins += 1
        else:
            self.losses += 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "userId": self.user_id,
            "username": self.username,
            "totalMatches": self.total_matches,
            "wins": self.wins,
            "losses": self.losses,
            "totalPnL": self.total_pnl,
            "avgPnL": self.avg_pnl,
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "UserStats":
        return UserStats(
            user_id=str(raw["userId"]),
            username=str(raw.get("username", "")),
            total_matches=int(raw.get("totalMatches", 0)),
            wins=int(raw.get("wins", 0)),
            losses=int(raw.get("losses", 0)),
            total_pnl=float(raw.get("totalPnL", 0.0)),
            avg_pnl=float(raw.get("avgPnL", 0.0)),
        )


def generate_join_code() -> str:
    return str(100_000 + secrets.randbelow(900_000))


class MatchService:
    """
    Durable two-player match lifecycle.

    Every read-modify-write on a match runs under that match's lock, so two
    "player finished" reports cannot race past each other and complete or
    credit stats twice.
    """

    def __init__(
        self,
        *,
        store: MatchStore,
        stats: StatsStore,
        scenarios: ScenarioProvider,
        starting_cash: float = STARTING_CASH,
    ) -> None:
        self._store = store
        self._stats = stats
        self._scenarios = scenarios
        self._starting_cash = starting_cash
        self._locks: dict[str, asyncio.Lock] = {}
        self._create_lock = asyncio.Lock()

    def _lock_for(self, match_id: str) -> asyncio.Lock:
        lock = self._locks.get(match_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[match_id] = lock
        return lock

    def _forget_lock(self, record: MatchRecord) -> None:
        # Completed matches only take notes, which need no cross-request ordering.
        if record.status == MatchStatus.COMPLETED:
            self._locks.pop(record.match_id, None)

    async def create_match(self, user_id: str, username: str, *, solo: bool = False) -> MatchRecord:
        scenario = await self._scenarios.generate()

        async with self._create_lock:
            join_code = await self._unique_join_code()
            record = MatchRecord(
                match_id=uuid.uuid4().hex,
                player1=PlayerSlot(user_id=user_id, username=username, final_equity=self._starting_cash),
                scenario=scenario,
                join_code=join_code,
                status=MatchStatus.IN_PROGRESS if solo else MatchStatus.WAITING,
                solo=solo,
                starting_cash=self._starting_cash,
                created_at=utc_ms(),
            )
            await self._save(record)

        LOGGER.info(
            "match %s created by %s (ticker=%s solo=%s code=%s)",
            record.match_id,
            user_id,
            scenario.ticker,
            solo,
            join_code,
        )
        return record

    async def join_by_code(self, join_code: str, user_id: str, username: str) -> MatchRecord:
        candidate = await self._store.find_by_join_code(join_code)
        if candidate is None:
            raise MatchNotFound(f"no match with join code {join_code}")

        async with self._lock_for(candidate.match_id):
            record = await self._store.get(candidate.match_id)
            if record is None:
                raise MatchNotFound(f"no match with join code {join_code}")
            if record.status != MatchStatus.WAITING:
                self._forget_lock(record)
                raise AlreadyStarted(f"match {record.match_id} already started")
            if record.player1.user_id == user_id:
                raise CannotJoinOwnMatch("you cannot join your own match")

            record.player2 = PlayerSlot(user_id=user_id, username=username, final_equity=record.starting_cash)
            record.status = MatchStatus.IN_PROGRESS
            await self._save(record)

        LOGGER.info("match %s joined by %s", record.match_id, user_id)
        return record

    async def get_match(self, match_id: str) -> MatchRecord:
        record = await self._store.get(match_id)
        if record is None:
            raise MatchNotFound(f"match {match_id} not found")
        return record

    async def history(self, user_id: str) -> list[MatchRecord]:
        records = await self._store.list_for_user(user_id)
        return sorted(records, key=lambda record: record.created_at, reverse=True)

    async def finalize(self, match_id: str, user_id: str, request: FinalizeRequest) -> MatchRecord:
        """
        Record the caller's own result.

        Figures sent for the other slot are ignored; only the server's
        settlement (`record_settlement`) may finish both players at once.
        """
        async with self._lock_for(match_id):
            record = await self.get_match(match_id)
            self._require_participant(record, user_id)
            if record.status == MatchStatus.COMPLETED:
                LOGGER.info("match %s already completed; finalize from %s ignored", match_id, user_id)
                self._forget_lock(record)
                return record

            if record.player1.user_id == user_id:
                self._finish_slot(record, record.player1, request.player1_final_equity, request.player1_trades)
                ignored = request.player2_final_equity
            else:
                self._finish_slot(record, record.player2, request.player2_final_equity, request.player2_trades)
                ignored = request.player1_final_equity
            if ignored is not None:
                LOGGER.warning("match %s: %s reported the opponent's equity; ignored", match_id, user_id)
            return await self._complete_if_done(record, request.notes)

    async def record_settlement(self, match_id: str, request: FinalizeRequest) -> MatchRecord:
        """Finish every present slot from the server's own ledgers."""
        async with self._lock_for(match_id):
            record = await self.get_match(match_id)
            if record.status == MatchStatus.COMPLETED:
                self._forget_lock(record)
                return record
            self._finish_slot(record, record.player1, request.player1_final_equity, request.player1_trades)
            self._finish_slot(record, record.player2, request.player2_final_equity, request.player2_trades)
            return await self._complete_if_done(record, request.notes)

    def _finish_slot(
        self,
        record: MatchRecord,
        slot: PlayerSlot | None,
        final_equity: float | None,
        trades: list[TradeRecord] | None,
    ) -> None:
        if slot is None or final_equity is None:
            return
        slot.finish(final_equity, trades, record.starting_cash)
        LOGGER.info("match %s %s finished equity=%s", record.match_id, slot.user_id, slot.final_equity)

    async def _complete_if_done(self, record: MatchRecord, notes: str | None) -> MatchRecord:
        if notes:
            record.notes = notes

        completed_now = record.all_present_finished()
        if completed_now:
            record.status = MatchStatus.COMPLETED
            record.winner = record.determine_winner()
            LOGGER.info("match %s completed winner=%s", record.match_id, record.winner)

        await self._save(record)

        if completed_now:
            await self._apply_stats(record)
            self._forget_lock(record)
        return record

    async def add_note(self, match_id: str, user_id: str, note: str) -> MatchRecord:
        async with self._lock_for(match_id):
            record = await self.get_match(match_id)
            self._require_participant(record, user_id)
            record.notes = note
            await self._save(record)
            self._forget_lock(record)
            return record

    async def delete_match(self, match_id: str, user_id: str) -> None:
        async with self._lock_for(match_id):
            record = await self.get_match(match_id)
            self._require_participant(record, user_id)
            await self._store.delete(match_id)
        self._locks.pop(match_id, None)
        LOGGER.info("match %s deleted by %s", match_id, user_id)

    async def get_stats(self, user_id: str) -> UserStats | None:
        return await self._stats.get(user_id)

    @staticmethod
    def _require_participant(record: MatchRecord, user_id: str) -> None:
        if not record.is_participant(user_id):
            raise NotAuthorized(f"{user_id} is not a participant of match {record.match_id}")

    async def _unique_join_code(self) -> str:
        for _ in range(JOIN_CODE_ATTEMPTS):
            code = generate_join_code()
            existing = await self._store.find_by_join_code(code)
            if existing is None or existing.status != MatchStatus.WAITING:
                return code
        raise PersistenceError("could not allocate a unique join code")

    async def _save(self, record: MatchRecord) -> None:
        record.version += 1
        try:
            await self._store.save(record)
        except PersistenceError:
            record.version -= 1
            LOGGER.exception("saving match %s failed", record.match_id)
            raise
        except OSError as exc:
            record.version -= 1
            LOGGER.exception("saving match %s failed", record.match_id)
            raise PersistenceError(f"could not save match {record.match_id}") from exc

    async def _apply_stats(self, record: MatchRecord) -> None:
        for slot in record.slots():
            stats = await self._stats.get(slot.user_id) or UserStats(user_id=slot.user_id)
            stats.username = slot.username
            stats.record_result(slot.final_pnl, record.winner)
            try:
                await self._stats.save(stats)
            except OSError:
                LOGGER.exception("saving stats for %s failed", slot.user_id)
                raise
            LOGGER.info(
                "stats updated for %s: matches=%s wins=%s losses=%s",
                slot.user_id,
                stats.total_matches,
                stats.wins,
                stats.losses,
            )
