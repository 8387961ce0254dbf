# File: scenarios.py

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from models import DAYS_PER_WEEK, TOTAL_WEEKS, UpstreamUnavailable


GAME_CANDLES = TOTAL_WEEKS * DAYS_PER_WEEK
MIN_SERIES_CANDLES = 50
MAX_CONTEXT_CANDLES = 60


@dataclass(frozen=True, slots=True)
class Candle:
    date: str
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "Candle":
        return Candle(
            date=str(raw["date"]),
            open=float(raw["open"]),
            high=float(raw["high"]),
            low=float(raw["low"]),
            close=float(raw["close"]),
            volume=float(raw.get("volume", 0.0) or 0.0),
        )


@dataclass(frozen=True, slots=True)
class NewsItem:
    week: int
    headline: str
    date: str = ""
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"week": self.week, "headline": self.headline, "date": self.date}
        if self.source is not None:
            payload["source"] = self.source
        return payload

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "NewsItem":
        return NewsItem(
            week=int(raw.get("week", 0)),
            headline=str(raw.get("headline", "")),
            date=str(raw.get("date", "")),
            source=raw.get("source"),
        )


@dataclass(frozen=True, slots=True)
class Scenario:
    scenario_id: str
    ticker: str
    context_candles: list[Candle]
    game_candles: list[Candle]
    news: list[NewsItem] = field(default_factory=list)
    description: str = ""
    difficulty: str = "medium"

    def __post_init__(self) -> None:
        if len(self.game_candles) != GAME_CANDLES:
            raise ValueError(f"a scenario needs exactly {GAME_CANDLES} game candles")

    @property
    def start_date(self) -> str:
        return self.game_candles[0].date

    @property
    def end_date(self) -> str:
        return self.game_candles[-1].date

    def week_candles(self, week: int) -> list[Candle]:
        start = week * DAYS_PER_WEEK
        return self.game_candles[start : start + DAYS_PER_WEEK]

    def week_price(self, week: int) -> float:
        """Decision price for a week: the close of its last trading day."""
        return self.week_candles(week)[-1].close

    def week_prices(self) -> list[float]:
        return [self.week_price(week) for week in range(TOTAL_WEEKS)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.scenario_id,
            "ticker": self.ticker,
            "startDate": self.start_date,
            "endDate": self.end_date,
            "contextCandles": [candle.to_dict() for candle in self.context_candles],
            "gameCandles": [candle.to_dict() for candle in self.game_candles],
            "news": [item.to_dict() for item in self.news],
            "description": self.description,
            "difficulty": self.difficulty,
        }

    @staticmethod
    def from_dict(raw: dict[str, Any]) -> "Scenario":
        return Scenario(
            scenario_id=str(raw["id"]),
            ticker=str(raw["ticker"]),
            context_candles=[Candle.from_dict(row) for row in raw.get("contextCandles", [])],
            game_candles=[Candle.from_dict(row) for row in raw.get("gameCandles", [])],
            news=[NewsItem.from_dict(row) for row in raw.get("news", [])],
            description=str(raw.get("description", "")),
            difficulty=str(raw.get("difficulty", "medium")),
        )


class ScenarioProvider(Protocol):
    """Collaborator yielding a fresh scenario for a new match."""

    async def generate(self) -> Scenario:
        """Return a scenario or raise UpstreamUnavailable."""


def split_candles_for_game(candles: list[Candle]) -> tuple[list[Candle], list[Candle]]:
    """Last 20 candles are played; up to 60 before them are shown as context."""
    if len(candles) < MIN_SERIES_CANDLES:
        raise UpstreamUnavailable(
            f"need at least {MIN_SERIES_CANDLES} candles, got {len(candles)}"
        )
    game = candles[-GAME_CANDLES:]
    context = candles[:-GAME_CANDLES][-MAX_CONTEXT_CANDLES:]
    return context, game


class JsonScenarioProvider:
    """
    Scenario library backed by a JSON file.

    The file holds a list of series objects:
    `{"ticker": str, "candles": [...], "news": [...], "description": str, "difficulty": str}`.
    """

    def __init__(self, path: str | Path, *, seed: int | None = None) -> None:
        self._path = Path(path)
        self._rng = random.Random(seed)
        self._counter = 0

    async def generate(self) -> Scenario:
        try:
            library = await asyncio.to_thread(self._load)
        except (OSError, json.JSONDecodeError) as exc:
            raise UpstreamUnavailable(f"scenario library unavailable: {exc}") from exc
        if not library:
            raise UpstreamUnavailable("scenario library is empty")

        entry = self._rng.choice(library)
        try:
            candles = [Candle.from_dict(row) for row in entry.get("candles", [])]
            news = [NewsItem.from_dict(row) for row in entry.get("news", [])]
            ticker = str(entry["ticker"])
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"malformed scenario entry: {exc}") from exc

        context, game = split_candles_for_game(candles)
        self._counter += 1
        return Scenario(
            scenario_id=f"{ticker}-{game[0].date}-{self._counter}",
            ticker=ticker,
            context_candles=context,
            game_candles=game,
            news=news,
            description=str(entry.get("description", f"Historical data for {ticker}")),
            difficulty=str(entry.get("difficulty", "medium")),
        )

    def _load(self) -> list[dict[str, Any]]:
        with self._path.open("r", encoding="utf-8") as handle:
            payload = json.load(handle)
        if not isinstance(payload, list):
            raise json.JSONDecodeError("scenario library must be a JSON list", "", 0)
        return [entry for entry in payload if isinstance(entry, dict)]


class StaticScenarioProvider:
    """Hands out prebuilt scenarios in rotation."""

    def __init__(self, scenarios: list[Scenario]) -> None:
        self._scenarios = list(scenarios)
        self._index = 0

    async def generate(self) -> Scenario:
        if not self._scenarios:
            raise UpstreamUnavailable("no scenarios configured")
        scenario = self._scenarios[self._index % len(self._scenarios)]
        self._index += 1
        return scenario
