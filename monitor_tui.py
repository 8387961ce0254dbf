# File: monitor_tui.py

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

import websockets
from rich.text import Text
from textual.app import App, ComposeResult
from textual.binding import Binding
from textual.containers import Horizontal, Vertical
from textual.widgets import DataTable, RichLog, Static
from websockets.exceptions import ConnectionClosed

from message_schemas import round4
from models import STARTING_CASH


SERVER_URI = "ws://127.0.0.1:8765"
MAX_TRADES = 40
MAX_LOGS = 400
PHASE_ORDER = {"reveal": 0, "decision": 1, "completed": 2}


def fmt_time(ms: int | None) -> str:
    if ms is None:
        return "--:--:--"
    return datetime.fromtimestamp(ms / 1000.0).strftime("%H:%M:%S")


@dataclass(frozen=True, slots=True)
class TradeRow:
    timestamp: int
    player_id: str
    week: int
    action: str
    shares: int
    price: float
    pnl: float | None


@dataclass(slots=True)
class PlayerRow:
    player_id: str
    position: int = 0
    equity: float = STARTING_CASH
    pnl: float = 0.0
    trades: int = 0
    final: bool = False


@dataclass(slots=True)
class MatchWatchState:
    endpoint: str = SERVER_URI
    match_id: str = ""
    connected: bool = False
    status_text: str = "DISCONNECTED"
    status_error: str = ""
    current_week: int = 0
    phase: str = "-"
    end_time_ms: int | None = None
    is_running: bool = False
    winner: str | None = None
    trades: deque[TradeRow] = field(default_factory=lambda: deque(maxlen=MAX_TRADES))
    players: dict[str, PlayerRow] = field(default_factory=dict)
    logs: deque[str] = field(default_factory=lambda: deque(maxlen=MAX_LOGS))
    revision: int = 0

    def set_connected(self, connected: bool, *, message: str = "", error: str = "") -> None:
        self.connected = connected
        self.status_text = "CONNECTED" if connected else "DISCONNECTED"
        self.status_error = error
        if message:
            self.logs.append(message)
        self.revision += 1

    def _player(self, player_id: str) -> PlayerRow:
        row = self.players.get(player_id)
        if row is None:
            row = PlayerRow(player_id=player_id)
            self.players[player_id] = row
        return row

    def apply_event(self, payload: dict[str, Any]) -> None:
        event_type = payload.get("type")
        if not isinstance(event_type, str):
            return
        if payload.get("matchId") not in (None, self.match_id):
            return

        if event_type == "match_state":
            self._apply_state(payload)
        elif event_type == "trade":
            self._apply_trade(payload)
        elif event_type == "player_joined":
            player_id = str(payload.get("userId", ""))
            self._player(player_id)
            self.logs.append(f"{player_id} joined ({payload.get('playerCount')} in room)")
            self.revision += 1
        elif event_type == "match_result":
            self._apply_result(payload)
        elif event_type == "match_updated":
            match = payload.get("match") or {}
            if match.get("status") == "COMPLETED":
                self.winner = match.get("winner")
                self.logs.append(f"match completed, winner: {self.winner or 'draw'}")
                self.revision += 1
        elif event_type == "error":
            self.status_error = str(payload.get("message", ""))
            self.logs.append(f"error {payload.get('code')}: {self.status_error}")
            self.revision += 1

    def _apply_state(self, payload: dict[str, Any]) -> None:
        end_time = payload.get("endTime")
        week = payload.get("currentWeek")
        phase = payload.get("phase")
        if not isinstance(end_time, int) or not isinstance(week, int) or not isinstance(phase, str):
            return
        # Snapshots may arrive twice after a reconnect; keep the newest.
        incoming = (week, PHASE_ORDER.get(phase, 0), end_time)
        current = (self.current_week, PHASE_ORDER.get(self.phase, -1), self.end_time_ms or 0)
        if incoming < current:
            return
        self.current_week = week
        self.phase = phase
        self.end_time_ms = end_time
        self.is_running = bool(payload.get("isRunning"))
        self.revision += 1

    def _apply_trade(self, payload: dict[str, Any]) -> None:
        price = payload.get("price")
        if not isinstance(price, (int, float)):
            return
        player_id = str(payload.get("playerId", ""))
        pnl = payload.get("pnl")
        row = TradeRow(
            timestamp=int(payload.get("timestamp") or 0),
            player_id=player_id,
            week=int(payload.get("week") or 0),
            action=str(payload.get("action", "")),
            shares=int(payload.get("shares") or 0),
            price=round4(price),
            pnl=None if pnl is None else round4(pnl),
        )
        self.trades.append(row)
        player = self._player(player_id)
        player.trades += 1
        player.position = int(payload.get("positionShares") or 0)
        player.equity = round4(payload.get("equity", player.equity))
        player.pnl = round4(player.equity - STARTING_CASH)
        self.revision += 1

    def _apply_result(self, payload: dict[str, Any]) -> None:
        player = self._player(str(payload.get("playerId", "")))
        player.equity = round4(payload.get("equity", player.equity))
        player.pnl = round4(payload.get("pnl", player.equity - STARTING_CASH))
        player.position = 0
        player.final = True
        self.logs.append(f"{player.player_id} final equity {player.equity:,.2f}")
        self.revision += 1

    def seconds_left(self, now_ms: int) -> float:
        if self.end_time_ms is None or not self.is_running:
            return 0.0
        return max(0.0, (self.end_time_ms - now_ms) / 1000.0)

    def player_rows(self) -> list[PlayerRow]:
        return sorted(self.players.values(), key=lambda r: (-r.equity, r.player_id))


class TopBar(Static):
    def update_from_state(self, state: MatchWatchState) -> None:
        status_style = "bold green" if state.connected else "bold red"
        now_ms = int(datetime.now().timestamp() * 1000)
        content = Text("Trading Duel  ", style="bold #4fb0ff")
        content.append("Status: ", style="bold #8fa4b8")
        content.append(state.status_text, style=status_style)
        if state.status_error:
            content.append("  ")
            content.append(state.status_error[:120], style="italic #ffb4c0")
        content.append("\n")
        content.append("Match ", style="bold #8fa4b8")
        content.append(state.match_id[:12] or "-", style="bold #d8dde6")
        content.append("   Week ", style="bold #8fa4b8")
        content.append(str(state.current_week + 1), style="bold #d8dde6")
        content.append("   Phase ", style="bold #8fa4b8")
        phase_style = "bold green" if state.phase == "decision" else "bold #d8dde6"
        content.append(state.phase.upper(), style=phase_style)
        content.append("   Left ", style="bold #8fa4b8")
        content.append(f"{state.seconds_left(now_ms):.1f}s", style="bold #d8dde6")
        self.update(content)


class TradesWidget(DataTable):
    def on_mount(self) -> None:
        self.cursor_type = "row"
        self.zebra_stripes = True
        self.add_columns("Time", "Player", "Week", "Action", "Shares", "Price", "PnL")

    def update_from_state(self, state: MatchWatchState) -> None:
        self.clear()
        for trade in state.trades:
            style = "green" if trade.action == "BUY" else "red" if trade.action == "SELL" else "yellow"
            pnl = "-" if trade.pnl is None else Text(f"{trade.pnl:+,.2f}", style="green" if trade.pnl >= 0 else "red")
            self.add_row(
                fmt_time(trade.timestamp),
                trade.player_id,
                str(trade.week + 1),
                Text(trade.action, style=style),
                str(trade.shares),
                f"{trade.price:.4f}",
                pnl,
            )
        with contextlib.suppress(Exception):
            self.scroll_end(animate=False)


class PlayersWidget(DataTable):
    def on_mount(self) -> None:
        self.cursor_type = "row"
        self.zebra_stripes = True
        self.add_columns("Player", "Position", "Equity", "PnL", "Trades")

    def update_from_state(self, state: MatchWatchState) -> None:
        self.clear()
        for row in state.player_rows():
            name = Text(row.player_id, style="bold #d8dde6")
            if state.winner is not None and row.player_id == state.winner:
                name.append(" *", style="bold yellow")
            self.add_row(
                name,
                str(row.position),
                f"{row.equity:,.2f}",
                Text(f"{row.pnl:+,.2f}", style="green" if row.pnl >= 0 else "red"),
                str(row.trades),
                key=row.player_id,
            )


class DuelMonitorTUI(App):
    CSS = """
    Screen {
        background: #11151c;
        color: #dfe6ee;
    }

    .box {
        border: heavy #2f3e4f;
        background: #161c25;
        padding: 0 1;
    }

    .title {
        height: 1;
        color: #9fb3c8;
        text-style: bold;
    }

    #topbar {
        height: 4;
        margin: 0 1;
    }

    #players-box {
        height: 7;
        margin: 0 1;
    }

    #body {
        height: 1fr;
        margin: 0 1;
    }

    #trades-box {
        width: 2fr;
    }

    #log-box {
        width: 1fr;
        margin-left: 1;
    }
    """

    BINDINGS = [
        Binding("q", "quit", "Quit"),
        Binding("r", "reconnect", "Reconnect"),
    ]

    def __init__(self, *, endpoint: str, match_id: str, refresh_hz: float = 10.0) -> None:
        super().__init__()
        self._state = MatchWatchState(endpoint=endpoint, match_id=match_id)
        self._refresh_seconds = max(0.08, 1.0 / max(1.0, refresh_hz))
        self._rendered_revision = -1
        self._rendered_logs = 0
        self._closing = asyncio.Event()
        self._reconnect_requested = asyncio.Event()

    def compose(self) -> ComposeResult:
        yield TopBar(id="topbar", classes="box")
        with Vertical(id="players-box", classes="box"):
            yield Static("SCOREBOARD", classes="title")
            yield PlayersWidget(id="players")
        with Horizontal(id="body"):
            with Vertical(id="trades-box", classes="box"):
                yield Static("FILLS", classes="title")
                yield TradesWidget(id="trades")
            with Vertical(id="log-box", classes="box"):
                yield Static("EVENTS", classes="title")
                yield RichLog(id="log", wrap=True, markup=False)

    async def on_mount(self) -> None:
        # The countdown moves without new events.
        self.set_interval(self._refresh_seconds, self._render_state)
        self.run_worker(self._watch_forever(), exclusive=True)

    async def on_unmount(self) -> None:
        self._closing.set()

    def action_reconnect(self) -> None:
        self._reconnect_requested.set()

    def _render_state(self) -> None:
        state = self._state
        self.query_one(TopBar).update_from_state(state)
        if state.revision == self._rendered_revision:
            return
        self._rendered_revision = state.revision
        self.query_one(PlayersWidget).update_from_state(state)
        self.query_one(TradesWidget).update_from_state(state)

        log = self.query_one(RichLog)
        lines = list(state.logs)
        if self._rendered_logs > len(lines):
            log.clear()
            self._rendered_logs = 0
        for line in lines[self._rendered_logs :]:
            log.write(line)
        self._rendered_logs = len(lines)

    async def _watch_forever(self) -> None:
        delay = 1.0
        while not self._closing.is_set():
            self._state.set_connected(False, message=f"dialing {self._state.endpoint}")
            try:
                async with websockets.connect(self._state.endpoint, close_timeout=2) as ws:
                    await ws.send(json.dumps({"type": "watch_match", "matchId": self._state.match_id}))
                    self._state.set_connected(True, message=f"watching match {self._state.match_id}")
                    delay = 1.0
                    await self._pump(ws)
            except ConnectionClosed as exc:
                self._state.set_connected(False, error=str(exc), message="server closed the connection")
            except OSError as exc:
                self._state.set_connected(False, error=str(exc), message=f"cannot reach server: {exc}")

            if self._closing.is_set():
                return
            await asyncio.sleep(delay)
            delay = min(delay * 2.0, 8.0)

    async def _pump(self, ws: Any) -> None:
        while not self._closing.is_set():
            if self._reconnect_requested.is_set():
                self._reconnect_requested.clear()
                await ws.close()
                return
            try:
                raw = await asyncio.wait_for(ws.recv(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict):
                self._state.apply_event(payload)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Watch one trading duel live")
    parser.add_argument("match_id", help="match to watch")
    parser.add_argument("--uri", type=str, default=SERVER_URI)
    parser.add_argument("--refresh-hz", type=float, default=10.0)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    DuelMonitorTUI(endpoint=args.uri, match_id=args.match_id, refresh_hz=args.refresh_hz).run()


if __name__ == "__main__":
    main()
