# File: exporter.py

from __future__ import annotations

import asyncio
import contextlib
import csv
import logging
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from message_schemas import round4, utc_ms

LOGGER = logging.getLogger("csv_exporter")

TRADE_FIELDS: tuple[str, ...] = (
    "timestamp",
    "match_id",
    "player_id",
    "week",
    "action",
    "shares",
    "price",
    "pnl",
    "equity",
)
RESULT_FIELDS: tuple[str, ...] = (
    "timestamp",
    "match_id",
    "player_id",
    "cash",
    "realized_pnl",
    "equity",
    "pnl",
    "trade_count",
)


@dataclass(slots=True)
class _Journal:
    path: Path
    header: tuple[str, ...]
    pending: deque[tuple[Any, ...]] = field(default_factory=deque)

    def drain(self) -> list[tuple[Any, ...]]:
        rows = list(self.pending)
        self.pending.clear()
        return rows

    def append(self, rows: list[tuple[Any, ...]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        needs_header = not self.path.exists() or self.path.stat().st_size == 0
        with self.path.open("a", newline="", encoding="utf-8") as handle:
            writer = csv.writer(handle)
            if needs_header:
                writer.writerow(self.header)
            writer.writerows(rows)


class CSVExporter:
    """
    Append-only CSV journal of duel fills and final settlements.

    `handle_event()` is a synchronous registry event sink that only queues
    rows; a background task appends them to disk every `flush_interval_ms`.
    """

    TRADE_FIELDS = TRADE_FIELDS
    RESULT_FIELDS = RESULT_FIELDS

    def __init__(
        self,
        *,
        trades_path: str | Path = "trades.csv",
        results_path: str | Path = "match_results.csv",
        flush_interval_ms: int = 500,
    ) -> None:
        self._trades = _Journal(Path(trades_path), TRADE_FIELDS)
        self._results = _Journal(Path(results_path), RESULT_FIELDS)
        self._flush_interval_s = max(0.05, float(flush_interval_ms) / 1000.0)
        self._stop_event = asyncio.Event()
        self._flush_task: asyncio.Task[None] | None = None

    @classmethod
    def in_directory(cls, directory: str | Path, flush_interval_ms: int = 500) -> "CSVExporter":
        root = Path(directory)
        return cls(
            trades_path=root / "trades.csv",
            results_path=root / "match_results.csv",
            flush_interval_ms=flush_interval_ms,
        )

    @property
    def pending_rows(self) -> int:
        return len(self._trades.pending) + len(self._results.pending)

    def handle_event(self, event: dict[str, Any]) -> None:
        event_type = event.get("type")
        if event_type == "trade":
            self._trades.pending.append(self._trade_row(event))
        elif event_type == "match_result":
            self._results.pending.append(self._result_row(event))

    @staticmethod
    def _trade_row(event: dict[str, Any]) -> tuple[Any, ...]:
        pnl = event.get("pnl")
        return (
            _as_int(event.get("timestamp")),
            _as_text(event.get("matchId")),
            _as_text(event.get("playerId")),
            _as_int(event.get("week")),
            _as_text(event.get("action")),
            _as_int(event.get("shares")),
            _as_money(event.get("price")),
            "" if pnl is None else _as_money(pnl),
            _as_money(event.get("equity")),
        )

    @staticmethod
    def _result_row(event: dict[str, Any]) -> tuple[Any, ...]:
        trades = event.get("trades")
        return (
            utc_ms(),
            _as_text(event.get("matchId")),
            _as_text(event.get("playerId")),
            _as_money(event.get("cash")),
            _as_money(event.get("realizedPnL")),
            _as_money(event.get("equity")),
            _as_money(event.get("pnl")),
            len(trades) if isinstance(trades, list) else 0,
        )

    async def start(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._stop_event.clear()
        self._flush_task = asyncio.create_task(self._flush_loop(), name="csv-exporter-flush")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._flush_task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        try:
            await self.flush()
        except Exception:
            LOGGER.exception("final CSV flush failed during shutdown")

    async def flush(self) -> None:
        batches = [(journal, journal.drain()) for journal in (self._trades, self._results)]
        batches = [(journal, rows) for journal, rows in batches if rows]
        if not batches:
            return
        await asyncio.to_thread(self._write_batches, batches)
        LOGGER.debug("flushed %s", ", ".join(f"{len(rows)} row(s) to {journal.path.name}" for journal, rows in batches))

    @staticmethod
    def _write_batches(batches: list[tuple[_Journal, list[tuple[Any, ...]]]]) -> None:
        for journal, rows in batches:
            journal.append(rows)

    async def _flush_loop(self) -> None:
        while not self._stop_event.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._flush_interval_s)
            try:
                await self.flush()
            except Exception:
                LOGGER.exception("periodic CSV flush failed")


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _as_money(value: Any) -> float:
    try:
        return round4(float(value))
    except (TypeError, ValueError):
        return 0.0
