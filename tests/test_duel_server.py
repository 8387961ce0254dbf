# File: tests/test_duel_server.py

import asyncio
import json
from typing import Any, Callable

from duel_server import DuelServer
from exporter import CSVExporter
from match_record import MatchService
from match_store import MemoryMatchStore, MemoryStatsStore
from round_clock import ClockConfig
from scenarios import Candle, Scenario, StaticScenarioProvider, split_candles_for_game


SLOW = ClockConfig(round_duration=60.0, decision_duration=30.0)
FAST = ClockConfig(round_duration=0.15, decision_duration=0.1)


class FakeWebSocket:
    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.remote_address = ("127.0.0.1", 0)
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()

    async def send(self, payload: str) -> None:
        self.sent.append(json.loads(payload))

    def push(self, message: Any) -> None:
        self._inbox.put_nowait(message if isinstance(message, str) or message is None else json.dumps(message))

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        return [event for event in self.sent if event["type"] == event_type]

    def __aiter__(self) -> "FakeWebSocket":
        return self

    async def __anext__(self) -> str:
        message = await self._inbox.get()
        if message is None:
            raise StopAsyncIteration
        return message


def _scenario() -> Scenario:
    # Game closes run 90..109, so the week prices are 94, 99, 104, 109.
    candles = [Candle(date=f"d{i:03d}", open=50.0, high=51.0, low=49.0, close=50.0 + i) for i in range(60)]
    context, game = split_candles_for_game(candles)
    return Scenario(scenario_id="s1", ticker="ACME", context_candles=context, game_candles=game)


def _server(clock: ClockConfig = SLOW, exporter: CSVExporter | None = None) -> DuelServer:
    service = MatchService(
        store=MemoryMatchStore(),
        stats=MemoryStatsStore(),
        scenarios=StaticScenarioProvider([_scenario()]),
    )
    return DuelServer(service=service, clock_config=clock, exporter=exporter)


async def _send(server: DuelServer, ws: FakeWebSocket, message: dict[str, Any]) -> dict[str, Any] | None:
    before = len(ws.sent)
    await server._handle_raw_message(ws, json.dumps(message))
    return ws.sent[-1] if len(ws.sent) > before else None


async def _wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def test_connection_welcome_ping_and_malformed_input() -> None:
    async def scenario() -> None:
        server = _server()
        ws = FakeWebSocket()
        ws.push({"type": "ping"})
        ws.push("{not json")
        ws.push({"type": "teleport"})
        ws.push({"no": "type"})
        ws.push(None)
        await server.handle_connection(ws)

        assert ws.sent[0]["type"] == "welcome"
        assert ws.sent[0]["totalWeeks"] == 4
        assert ws.sent[0]["decisionDuration"] == 30.0
        assert ws.sent[1]["type"] == "pong"
        assert ws.sent[2] == {"type": "error", "code": "invalid_json", "message": "message must be valid JSON"}
        assert ws.sent[3]["code"] == "invalid_message"
        assert ws.sent[4]["code"] == "invalid_message"

    asyncio.run(scenario())


def test_two_player_flow_until_live_match() -> None:
    async def scenario() -> None:
        server = _server()
        alice, bob = FakeWebSocket(), FakeWebSocket()

        created = await _send(server, alice, {"type": "create_match", "userId": "alice", "username": "Alice"})
        assert created["type"] == "match_created"
        match = created["match"]
        assert match["status"] == "WAITING"

        joined = await _send(server, bob, {"type": "join_code", "userId": "bob", "username": "Bob", "joinCode": match["joinCode"]})
        assert joined["type"] == "match_joined"
        assert joined["match"]["status"] == "IN_PROGRESS"

        again = await _send(server, bob, {"type": "join_code", "userId": "carol", "joinCode": match["joinCode"]})
        assert again == {"type": "error", "code": "match_unavailable", "message": again["message"]}

        await _send(server, alice, {"type": "join_match", "matchId": match["id"], "userId": "alice"})
        assert alice.of_type("match_ready") == []
        await _send(server, bob, {"type": "join_match", "matchId": match["id"], "userId": "bob"})
        assert len(alice.of_type("match_ready")) == 1
        assert len(bob.of_type("match_ready")) == 1
        assert server.registry.is_live(match["id"])

        rejected = await _send(
            server,
            alice,
            {"type": "trade_action", "matchId": match["id"], "playerId": "alice", "action": "BUY", "shares": 1, "week": 0},
        )
        assert rejected["type"] == "trade_rejected"
        assert rejected["reason"] == "phase_closed"
        assert rejected["order"]["action"] == "BUY"

        finalize = await _send(
            server,
            alice,
            {"type": "finalize_match", "matchId": match["id"], "userId": "alice", "player1FinalEquity": 1.0},
        )
        assert finalize["code"] == "match_in_progress"
        delete = await _send(server, alice, {"type": "delete_match", "matchId": match["id"], "userId": "alice"})
        assert delete["code"] == "match_in_progress"

        # A stranger can watch but cannot take a seat.
        stranger = FakeWebSocket()
        denied = await _send(server, stranger, {"type": "join_match", "matchId": match["id"], "userId": "mallory"})
        assert denied["code"] == "not_authorized"
        watched = await _send(server, stranger, {"type": "watch_match", "matchId": match["id"]})
        assert watched["type"] == "match_state"
        assert watched["isRunning"] is True

        await server.registry.shutdown()

    asyncio.run(scenario())


def test_malformed_trade_is_rejected_with_reason() -> None:
    async def scenario() -> None:
        server = _server()
        ws = FakeWebSocket()
        reply = await _send(
            server,
            ws,
            {"type": "trade_action", "matchId": "m1", "playerId": "a", "action": "SHORT", "shares": 1, "week": 0},
        )
        assert reply["type"] == "trade_rejected"
        assert reply["reason"] == "invalid_message"
        assert "order" not in reply

        missing = await _send(
            server,
            ws,
            {"type": "trade_action", "matchId": "m1", "playerId": "a", "action": "BUY", "shares": 1, "week": 0},
        )
        assert missing["reason"] == "match_unavailable"

    asyncio.run(scenario())


def test_solo_match_plays_out_and_is_persisted(tmp_path) -> None:
    async def scenario() -> None:
        exporter = CSVExporter.in_directory(tmp_path)
        server = _server(FAST, exporter)
        ws = FakeWebSocket()

        created = await _send(server, ws, {"type": "create_match", "userId": "alice", "username": "Alice", "solo": True})
        match_id = created["match"]["id"]
        assert created["match"]["status"] == "IN_PROGRESS"

        await _send(server, ws, {"type": "join_match", "matchId": match_id, "userId": "alice"})
        assert len(ws.of_type("match_ready")) == 1
        session = server.registry.get(match_id)

        await _wait_until(lambda: session.clock.phase.value == "decision")
        fill = await _send(
            server,
            ws,
            {"type": "trade_action", "matchId": match_id, "playerId": "alice", "action": "BUY", "shares": 100, "week": 0},
        )
        assert fill["type"] == "trade_result"
        assert fill["price"] == 94.0

        await _wait_until(lambda: server.registry.is_retired(match_id))

        # Bought 100 @ 94, closed at 109.
        updated = ws.of_type("match_updated")[-1]["match"]
        assert updated["status"] == "COMPLETED"
        assert updated["winner"] == "alice"
        assert updated["player1"]["finalEquity"] == 101_500.0
        assert [trade["action"] for trade in updated["player1"]["trades"]] == ["BUY", "SELL"]

        history = await _send(server, ws, {"type": "match_history", "userId": "alice"})
        assert [m["id"] for m in history["matches"]] == [match_id]
        assert history["stats"]["totalMatches"] == 1
        assert history["stats"]["totalPnL"] == 1_500.0

        # Finalize after the server already did it is a no-op.
        again = await _send(
            server,
            ws,
            {"type": "finalize_match", "matchId": match_id, "userId": "alice", "player1FinalEquity": 1.0},
        )
        assert again["match"]["player1"]["finalEquity"] == 101_500.0

        rejoin = await _send(server, ws, {"type": "join_match", "matchId": match_id, "userId": "alice"})
        assert rejoin["code"] == "match_unavailable"

        noted = await _send(server, ws, {"type": "add_note", "matchId": match_id, "userId": "alice", "note": "held too long"})
        assert noted["match"]["notes"] == "held too long"

        fetched = await _send(server, ws, {"type": "get_match", "matchId": match_id})
        assert fetched["type"] == "match"

        deleted = await _send(server, ws, {"type": "delete_match", "matchId": match_id, "userId": "alice"})
        assert deleted == {"type": "match_deleted", "matchId": match_id}
        gone = await _send(server, ws, {"type": "get_match", "matchId": match_id})
        assert gone["code"] == "match_unavailable"

        # BUY fill, implicit close and one result row.
        assert exporter.pending_rows == 3
        await exporter.flush()
        assert (tmp_path / "trades.csv").read_text(encoding="utf-8").count("\n") == 3
        assert (tmp_path / "match_results.csv").exists()

    asyncio.run(scenario())


def test_finalize_before_play_is_rejected_and_leaves_the_match_joinable() -> None:
    async def scenario() -> None:
        server = _server()
        alice, bob = FakeWebSocket(), FakeWebSocket()

        created = await _send(server, alice, {"type": "create_match", "userId": "alice", "username": "Alice"})
        match = created["match"]
        await _send(server, bob, {"type": "join_code", "userId": "bob", "username": "Bob", "joinCode": match["joinCode"]})

        forged = await _send(
            server,
            alice,
            {
                "type": "finalize_match",
                "matchId": match["id"],
                "userId": "alice",
                "player1FinalEquity": 1e9,
                "player2FinalEquity": 0,
            },
        )
        assert forged["code"] == "match_in_progress"

        fetched = await _send(server, alice, {"type": "get_match", "matchId": match["id"]})
        assert fetched["match"]["status"] == "IN_PROGRESS"
        assert fetched["match"]["winner"] is None
        assert fetched["match"]["player2"]["finalEquity"] == 100_000.0

        await _send(server, alice, {"type": "join_match", "matchId": match["id"], "userId": "alice"})
        await _send(server, bob, {"type": "join_match", "matchId": match["id"], "userId": "bob"})
        assert bob.of_type("error") == []
        assert len(bob.of_type("match_ready")) == 1
        assert server.registry.is_live(match["id"])

        await server.registry.shutdown()

    asyncio.run(scenario())
