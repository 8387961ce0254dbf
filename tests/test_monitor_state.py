# File: tests/test_monitor_state.py

from monitor_tui import MatchWatchState


def _state(week: int, phase: str, end_time: int, running: bool = True) -> dict:
    return {
        "type": "match_state",
        "matchId": "m1",
        "currentWeek": week,
        "phase": phase,
        "endTime": end_time,
        "isRunning": running,
    }


def test_state_snapshots_only_move_forward() -> None:
    state = MatchWatchState(match_id="m1")
    state.apply_event(_state(1, "decision", 5_000))
    assert (state.current_week, state.phase) == (1, "decision")

    # Stale replay after a reconnect.
    state.apply_event(_state(1, "reveal", 4_000))
    assert state.phase == "decision"

    state.apply_event(_state(3, "completed", 9_000, running=False))
    assert state.phase == "completed"
    assert state.seconds_left(0) == 0.0


def test_events_for_other_matches_are_ignored() -> None:
    state = MatchWatchState(match_id="m1")
    revision = state.revision
    state.apply_event({**_state(2, "reveal", 1_000), "matchId": "other"})
    state.apply_event({"no": "type"})
    assert state.revision == revision


def test_trades_results_and_completion() -> None:
    state = MatchWatchState(match_id="m1")
    state.apply_event({"type": "player_joined", "matchId": "m1", "userId": "alice", "playerCount": 1})
    state.apply_event(
        {
            "type": "trade",
            "matchId": "m1",
            "playerId": "alice",
            "action": "BUY",
            "week": 0,
            "shares": 100,
            "price": 10.0,
            "pnl": None,
            "equity": 100_000.0,
            "positionShares": 100,
            "timestamp": 1,
        }
    )
    state.apply_event(
        {
            "type": "trade",
            "matchId": "m1",
            "playerId": "bob",
            "action": "SELL",
            "week": 0,
            "shares": 50,
            "price": 10.0,
            "pnl": None,
            "equity": 100_000.0,
            "positionShares": -50,
            "timestamp": 2,
        }
    )
    assert [row.player_id for row in state.trades] == ["alice", "bob"]
    assert state.players["bob"].position == -50

    state.apply_event({"type": "match_result", "matchId": "m1", "playerId": "alice", "equity": 101_000.0, "pnl": 1_000.0})
    state.apply_event({"type": "match_result", "matchId": "m1", "playerId": "bob", "equity": 99_500.0, "pnl": -500.0})
    rows = state.player_rows()
    assert [row.player_id for row in rows] == ["alice", "bob"]
    assert rows[0].final is True and rows[0].position == 0

    state.apply_event({"type": "match_updated", "match": {"id": "m1", "status": "COMPLETED", "winner": "alice"}})
    assert state.winner == "alice"


def test_seconds_left_counts_down_while_running() -> None:
    state = MatchWatchState(match_id="m1")
    state.apply_event(_state(0, "reveal", 10_000))
    assert state.seconds_left(7_500) == 2.5
    assert state.seconds_left(20_000) == 0.0
