# File: duel_server.py

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import signal
from typing import Any, Awaitable, Callable

import websockets
from websockets.exceptions import ConnectionClosed

from duel_config import DuelConfig, parse_duel_config
from exporter import CSVExporter
from match_record import MatchRecord, MatchService
from match_registry import MatchSession, MatchSessionRegistry
from match_store import JsonFileMatchStore, JsonFileStatsStore, MemoryMatchStore, MemoryStatsStore
from message_schemas import (
    CreateMatchRequest,
    FinalizeRequest,
    JoinCodeRequest,
    JoinMatchRequest,
    MatchRefRequest,
    NoteRequest,
    ProtocolError,
    TradeActionRequest,
    error_event,
    message_type,
    trade_rejected_event,
    user_ref,
    utc_ms,
)
from models import AlreadyStarted, DuelError, MatchInProgress, MatchStatus, NotAuthorized
from round_clock import ClockConfig
from scenarios import JsonScenarioProvider

LOGGER = logging.getLogger("duel_server")

Handler = Callable[[Any, dict[str, Any]], Awaitable[None]]


class DuelServer:
    """Websocket front door: match lifecycle requests plus live room traffic."""

    def __init__(
        self,
        *,
        service: MatchService,
        clock_config: ClockConfig | None = None,
        session_ttl: float | None = None,
        exporter: CSVExporter | None = None,
        time_ms: Callable[[], int] = utc_ms,
    ) -> None:
        self._service = service
        self._exporter = exporter
        registry_kwargs: dict[str, Any] = {}
        if session_ttl is not None:
            registry_kwargs["session_ttl"] = session_ttl
        self._registry = MatchSessionRegistry(
            send=self._send_event,
            clock_config=clock_config,
            on_complete=self._on_match_complete,
            time_ms=time_ms,
            **registry_kwargs,
        )
        if exporter is not None:
            self._registry.add_event_sink(exporter.handle_event)
        self._connections: dict[Any, int] = {}
        self._next_connection_id = 1
        self._shutdown = asyncio.Event()
        self._handlers: dict[str, Handler] = {
            "create_match": self._handle_create_match,
            "join_code": self._handle_join_code,
            "join_match": self._handle_join_match,
            "watch_match": self._handle_watch_match,
            "trade_action": self._handle_trade_action,
            "leave_match": self._handle_leave_match,
            "finalize_match": self._handle_finalize_match,
            "get_match": self._handle_get_match,
            "match_history": self._handle_match_history,
            "add_note": self._handle_add_note,
            "delete_match": self._handle_delete_match,
            "ping": self._handle_ping,
        }

    @classmethod
    def from_config(cls, config: DuelConfig) -> "DuelServer":
        if config.data_dir is not None:
            store: Any = JsonFileMatchStore(config.data_dir)
            stats: Any = JsonFileStatsStore(config.data_dir)
        else:
            store = MemoryMatchStore()
            stats = MemoryStatsStore()
        service = MatchService(
            store=store,
            stats=stats,
            scenarios=JsonScenarioProvider(config.scenarios),
            starting_cash=config.starting_cash,
        )
        exporter = None if config.export_dir is None else CSVExporter.in_directory(config.export_dir)
        return cls(
            service=service,
            clock_config=config.clock_config(),
            session_ttl=config.session_ttl,
            exporter=exporter,
        )

    @property
    def registry(self) -> MatchSessionRegistry:
        return self._registry

    @property
    def service(self) -> MatchService:
        return self._service

    async def handle_connection(self, websocket: Any) -> None:
        connection_id = self._next_connection_id
        self._next_connection_id += 1
        self._connections[websocket] = connection_id
        LOGGER.info("client %s connected: %s", connection_id, getattr(websocket, "remote_address", None))

        clock = self._registry.clock_config
        await self._send_event(
            websocket,
            {
                "type": "welcome",
                "connectionId": connection_id,
                "totalWeeks": clock.total_weeks,
                "roundDuration": clock.round_duration,
                "decisionDuration": clock.decision_duration,
            },
        )

        try:
            async for raw_message in websocket:
                await self._handle_raw_message(websocket, raw_message)
        except ConnectionClosed:
            pass
        finally:
            self._registry.disconnect(websocket)
            self._connections.pop(websocket, None)
            LOGGER.info("client %s disconnected", connection_id)

    async def _handle_raw_message(self, websocket: Any, raw_message: str | bytes) -> None:
        try:
            payload = json.loads(raw_message)
        except json.JSONDecodeError:
            await self._send_event(websocket, error_event("invalid_json", "message must be valid JSON"))
            return

        try:
            msg_type = message_type(payload)
            handler = self._handlers.get(msg_type)
            if handler is None:
                raise ProtocolError(f"unsupported message type {msg_type!r}")
            LOGGER.debug("recv %s from client %s", msg_type, self._connections.get(websocket))
            await handler(websocket, payload)
        except DuelError as exc:
            if isinstance(exc, (NotAuthorized, ProtocolError)):
                LOGGER.warning("rejected request from client %s: %s", self._connections.get(websocket), exc)
            await self._send_event(websocket, error_event(exc.code, str(exc)))

    async def _handle_create_match(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = CreateMatchRequest.from_message(payload)
        record = await self._service.create_match(request.user_id, request.username, solo=request.solo)
        await self._send_event(websocket, {"type": "match_created", "match": record.to_dict()})

    async def _handle_join_code(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = JoinCodeRequest.from_message(payload)
        record = await self._service.join_by_code(request.join_code, request.user_id, request.username)
        await self._send_event(websocket, {"type": "match_joined", "match": record.to_dict()})
        await self._registry.publish(record.match_id, {"type": "match_updated", "match": record.to_dict()})

    async def _handle_join_match(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = JoinMatchRequest.from_message(payload)
        record = await self._service.get_match(request.match_id)
        if not record.is_participant(request.user_id):
            raise NotAuthorized(f"{request.user_id} is not a participant of match {record.match_id}")
        if record.status == MatchStatus.COMPLETED:
            raise AlreadyStarted(f"match {record.match_id} is already completed")
        await self._registry.join(
            record.match_id,
            request.user_id,
            websocket,
            required_players=record.required_players,
            week_prices=record.scenario.week_prices(),
            starting_cash=record.starting_cash,
        )

    async def _handle_watch_match(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = MatchRefRequest.from_message(payload)
        await self._registry.watch(request.match_id, websocket)

    async def _handle_trade_action(self, websocket: Any, payload: dict[str, Any]) -> None:
        try:
            request = TradeActionRequest.from_message(payload, self._registry.clock_config.total_weeks)
        except DuelError as exc:
            await self._send_event(websocket, trade_rejected_event(exc.code, str(exc)))
            return

        try:
            await self._registry.submit_trade(request, websocket)
        except DuelError as exc:
            LOGGER.info("trade rejected for %s in %s: %s", request.player_id, request.match_id, exc)
            await self._send_event(websocket, trade_rejected_event(exc.code, str(exc), request))

    async def _handle_leave_match(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = MatchRefRequest.from_message(payload)
        self._registry.leave_connection(request.match_id, websocket)

    async def _handle_finalize_match(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = MatchRefRequest.from_message(payload)
        user_id = user_ref(payload)
        if self._registry.is_live(request.match_id):
            raise MatchInProgress(f"match {request.match_id} is still being played")
        if not self._registry.is_retired(request.match_id):
            # Results come from the server clock; an unplayed match has none to report.
            current = await self._service.get_match(request.match_id)
            if current.status != MatchStatus.COMPLETED:
                raise MatchInProgress(f"match {request.match_id} has not been played yet")
        record = await self._service.finalize(request.match_id, user_id, FinalizeRequest.from_message(payload))
        await self._send_event(websocket, {"type": "match_updated", "match": record.to_dict()})

    async def _handle_get_match(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = MatchRefRequest.from_message(payload)
        record = await self._service.get_match(request.match_id)
        await self._send_event(websocket, {"type": "match", "match": record.to_dict()})

    async def _handle_match_history(self, websocket: Any, payload: dict[str, Any]) -> None:
        user_id = user_ref(payload)
        records = await self._service.history(user_id)
        stats = await self._service.get_stats(user_id)
        await self._send_event(
            websocket,
            {
                "type": "match_history",
                "userId": user_id,
                "matches": [record.to_dict() for record in records],
                "stats": None if stats is None else stats.to_dict(),
            },
        )

    async def _handle_add_note(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = NoteRequest.from_message(payload)
        record = await self._service.add_note(request.match_id, request.user_id, request.note)
        await self._send_event(websocket, {"type": "match_updated", "match": record.to_dict()})

    async def _handle_delete_match(self, websocket: Any, payload: dict[str, Any]) -> None:
        request = JoinMatchRequest.from_message(payload)
        if self._registry.is_live(request.match_id):
            raise MatchInProgress(f"match {request.match_id} is still being played")
        await self._service.delete_match(request.match_id, request.user_id)
        await self._send_event(websocket, {"type": "match_deleted", "matchId": request.match_id})

    async def _handle_ping(self, websocket: Any, payload: dict[str, Any]) -> None:
        await self._send_event(websocket, {"type": "pong", "timestamp": utc_ms()})

    async def _on_match_complete(self, session: MatchSession) -> None:
        record = await self._service.get_match(session.match_id)
        request = FinalizeRequest(
            player1_final_equity=self._final_equity(session, record.player1.user_id, record),
            player1_trades=self._final_trades(session, record.player1.user_id),
            player2_final_equity=(
                None if record.player2 is None else self._final_equity(session, record.player2.user_id, record)
            ),
            player2_trades=None if record.player2 is None else self._final_trades(session, record.player2.user_id),
        )
        record = await self._service.record_settlement(session.match_id, request)
        LOGGER.info("match %s results persisted (winner=%s)", record.match_id, record.winner)
        await self._registry.publish(record.match_id, {"type": "match_updated", "match": record.to_dict()})

    @staticmethod
    def _final_equity(session: MatchSession, user_id: str, record: MatchRecord) -> float:
        ledger = session.ledgers.get(user_id)
        if ledger is None:
            return record.starting_cash
        return ledger.equity(session.week_prices[-1])

    @staticmethod
    def _final_trades(session: MatchSession, user_id: str) -> list[Any]:
        ledger = session.ledgers.get(user_id)
        return [] if ledger is None else list(ledger.trades)

    async def _send_event(self, websocket: Any, event: dict[str, Any]) -> bool:
        return await self._send_safe(websocket, json.dumps(event))

    @staticmethod
    async def _send_safe(websocket: Any, payload: str) -> bool:
        try:
            await websocket.send(payload)
            return True
        except ConnectionClosed:
            return False

    async def run(self, host: str, port: int, reap_interval: float = 30.0) -> None:
        LOGGER.info("starting duel server on ws://%s:%s", host, port)
        if self._exporter is not None:
            await self._exporter.start()
        reaper = asyncio.create_task(self._registry.run_reaper(reap_interval), name="duel-session-reaper")
        try:
            async with websockets.serve(self.handle_connection, host, port):
                await self._shutdown.wait()
        finally:
            reaper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reaper
            await self._registry.shutdown()
            if self._exporter is not None:
                await self._exporter.stop()
            LOGGER.info("duel server stopped")

    def shutdown(self) -> None:
        self._shutdown.set()


async def _main_async(argv: list[str] | None = None) -> None:
    config = parse_duel_config(argv)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    server = DuelServer.from_config(config)
    loop = asyncio.get_running_loop()

    for sig_name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, sig_name, None)
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, server.shutdown)
        except (NotImplementedError, RuntimeError):
            pass

    await server.run(config.host, config.port, config.reap_interval)


def main(argv: list[str] | None = None) -> None:
    try:
        asyncio.run(_main_async(argv))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
