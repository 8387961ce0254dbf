# File: tests/test_exporter.py

import asyncio
import csv

from exporter import CSVExporter


def test_trade_and_result_rows_are_written_with_headers(tmp_path) -> None:
    exporter = CSVExporter.in_directory(tmp_path / "journal")
    exporter.handle_event(
        {
            "type": "trade",
            "timestamp": 1_700_000_000_000,
            "matchId": "m1",
            "playerId": "alice",
            "week": 2,
            "action": "SELL",
            "shares": 40,
            "price": 51.123456,
            "pnl": 12.5,
            "equity": 100_012.5,
        }
    )
    exporter.handle_event(
        {
            "type": "match_result",
            "matchId": "m1",
            "playerId": "alice",
            "cash": 100_012.5,
            "realizedPnL": 12.5,
            "equity": 100_012.5,
            "pnl": 12.5,
            "trades": [{}, {}],
        }
    )
    exporter.handle_event({"type": "match_state", "matchId": "m1"})
    assert exporter.pending_rows == 2

    asyncio.run(exporter.flush())
    assert exporter.pending_rows == 0

    with (tmp_path / "journal" / "trades.csv").open(newline="", encoding="utf-8") as handle:
        trades = list(csv.DictReader(handle))
    assert trades == [
        {
            "timestamp": "1700000000000",
            "match_id": "m1",
            "player_id": "alice",
            "week": "2",
            "action": "SELL",
            "shares": "40",
            "price": "51.1235",
            "pnl": "12.5",
            "equity": "100012.5",
        }
    ]

    with (tmp_path / "journal" / "match_results.csv").open(newline="", encoding="utf-8") as handle:
        results = list(csv.DictReader(handle))
    assert results[0]["trade_count"] == "2"
    assert results[0]["realized_pnl"] == "12.5"


def test_open_trades_leave_pnl_blank_and_header_is_written_once(tmp_path) -> None:
    exporter = CSVExporter(trades_path=tmp_path / "t.csv", results_path=tmp_path / "r.csv")
    event = {"type": "trade", "matchId": "m1", "playerId": "bob", "action": "HOLD", "price": 10, "pnl": None}

    async def run() -> None:
        exporter.handle_event(event)
        await exporter.flush()
        exporter.handle_event(event)
        await exporter.flush()

    asyncio.run(run())
    lines = (tmp_path / "t.csv").read_text(encoding="utf-8").splitlines()
    assert lines[0].startswith("timestamp,match_id")
    assert len(lines) == 3
    assert lines[1].split(",")[7] == ""
    assert not (tmp_path / "r.csv").exists()


def test_stop_flushes_remaining_rows(tmp_path) -> None:
    exporter = CSVExporter.in_directory(tmp_path, flush_interval_ms=60_000)

    async def run() -> None:
        await exporter.start()
        exporter.handle_event({"type": "trade", "matchId": "m1", "playerId": "a", "action": "BUY", "price": 1.0})
        await exporter.stop()

    asyncio.run(run())
    assert (tmp_path / "trades.csv").read_text(encoding="utf-8").count("m1") == 1
