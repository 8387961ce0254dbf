# File: tests/test_match_store.py

import asyncio
import json

from match_record import MatchRecord, PlayerSlot, UserStats
from match_store import JsonFileMatchStore, JsonFileStatsStore, MemoryMatchStore
from models import MatchStatus
from scenarios import Candle, Scenario


def _record(match_id: str, join_code: str, status: MatchStatus, created_at: int, player2: str | None = None) -> MatchRecord:
    game = [Candle(date=f"g{i}", open=10.0, high=11.0, low=9.0, close=10.0 + i) for i in range(20)]
    return MatchRecord(
        match_id=match_id,
        player1=PlayerSlot(user_id="alice", username="Alice"),
        player2=None if player2 is None else PlayerSlot(user_id=player2, username=player2.title()),
        scenario=Scenario(scenario_id="s", ticker="ACME", context_candles=[], game_candles=game),
        join_code=join_code,
        status=status,
        created_at=created_at,
    )


def test_memory_store_hands_out_copies() -> None:
    async def scenario() -> None:
        store = MemoryMatchStore()
        record = _record("m1", "123456", MatchStatus.WAITING, 1)
        await store.save(record)

        record.status = MatchStatus.COMPLETED
        loaded = await store.get("m1")
        assert loaded is not None and loaded.status == MatchStatus.WAITING

        loaded.notes = "mutated"
        again = await store.get("m1")
        assert again is not None and again.notes is None

    asyncio.run(scenario())


def test_join_code_lookup_prefers_waiting_match() -> None:
    async def scenario() -> None:
        store = MemoryMatchStore()
        await store.save(_record("old", "555555", MatchStatus.COMPLETED, 5, player2="bob"))
        await store.save(_record("new", "555555", MatchStatus.WAITING, 1))
        found = await store.find_by_join_code("555555")
        assert found is not None and found.match_id == "new"
        assert await store.find_by_join_code("999999") is None

    asyncio.run(scenario())


def test_json_file_store_round_trip(tmp_path) -> None:
    async def scenario() -> None:
        store = JsonFileMatchStore(tmp_path)
        await store.save(_record("m1", "111111", MatchStatus.WAITING, 1))
        await store.save(_record("m2", "222222", MatchStatus.IN_PROGRESS, 2, player2="bob"))

        loaded = await store.get("m2")
        assert loaded is not None
        assert loaded.player2 is not None and loaded.player2.user_id == "bob"

        on_disk = json.loads((tmp_path / "matches" / "m1.json").read_text(encoding="utf-8"))
        assert on_disk["joinCode"] == "111111"
        # No temp files left behind by the atomic write.
        assert sorted(p.name for p in (tmp_path / "matches").iterdir()) == ["m1.json", "m2.json"]

        assert [r.match_id for r in await store.list_for_user("bob")] == ["m2"]
        assert len(await store.list_for_user("alice")) == 2
        assert (await store.find_by_join_code("111111")).match_id == "m1"

        await store.delete("m1")
        assert await store.get("m1") is None
        assert await store.get("../escape") is None

    asyncio.run(scenario())


def test_json_file_store_skips_corrupt_documents(tmp_path) -> None:
    async def scenario() -> None:
        store = JsonFileMatchStore(tmp_path)
        await store.save(_record("good", "333333", MatchStatus.WAITING, 1))
        (tmp_path / "matches" / "bad.json").write_text("{not json", encoding="utf-8")
        records = await store.list_for_user("alice")
        assert [r.match_id for r in records] == ["good"]

    asyncio.run(scenario())


def test_json_stats_store(tmp_path) -> None:
    async def scenario() -> None:
        stats = JsonFileStatsStore(tmp_path)
        assert await stats.get("user@example.com") is None
        await stats.save(UserStats(user_id="user@example.com", username="U", total_matches=2, wins=1))
        loaded = await stats.get("user@example.com")
        assert loaded is not None
        assert (loaded.total_matches, loaded.wins) == (2, 1)

    asyncio.run(scenario())


def test_json_stats_store_keeps_lookalike_user_ids_apart(tmp_path) -> None:
    async def scenario() -> None:
        stats = JsonFileStatsStore(tmp_path)
        await stats.save(UserStats(user_id="a/b", username="slash", total_matches=5))
        assert await stats.get("a_b") is None
        assert (await stats.get("a/b")).total_matches == 5

        await stats.save(UserStats(user_id="a_b", username="underscore", total_matches=1))
        assert (await stats.get("a/b")).total_matches == 5
        assert (await stats.get("a_b")).total_matches == 1
        assert len(list((tmp_path / "users").iterdir())) == 2

    asyncio.run(scenario())
