# File: round_clock.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from models import TOTAL_WEEKS, RoundPhase


ROUND_DURATION_SECONDS = 12.0
DECISION_DURATION_SECONDS = 7.0


@dataclass(frozen=True, slots=True)
class ClockConfig:
    round_duration: float = ROUND_DURATION_SECONDS
    decision_duration: float = DECISION_DURATION_SECONDS
    total_weeks: int = TOTAL_WEEKS

    def __post_init__(self) -> None:
        if self.round_duration <= 0:
            raise ValueError("round_duration must be > 0")
        if self.decision_duration <= 0:
            raise ValueError("decision_duration must be > 0")
        if self.decision_duration >= self.round_duration:
            raise ValueError("decision_duration must be shorter than round_duration")
        if self.total_weeks <= 0:
            raise ValueError("total_weeks must be > 0")

    @property
    def reveal_duration(self) -> float:
        return self.round_duration - self.decision_duration


def _ms(seconds: float) -> int:
    return int(round(seconds * 1000))


class RoundClock:
    """
    Per-match phase state machine.

    reveal(week 0) -> decision(week 0) -> reveal(week 1) -> ... -> completed.
    Transitions are driven by the caller passing wall-clock milliseconds;
    the clock never looks at client input. Once completed it is inert.
    """

    def __init__(self, config: ClockConfig | None = None) -> None:
        self._config = config or ClockConfig()
        self._current_week = 0
        self._phase = RoundPhase.REVEAL
        self._end_time_ms = 0
        self._is_running = False
        self._started = False

    @property
    def config(self) -> ClockConfig:
        return self._config

    @property
    def current_week(self) -> int:
        return self._current_week

    @property
    def phase(self) -> RoundPhase:
        return self._phase

    @property
    def end_time_ms(self) -> int:
        return self._end_time_ms

    @property
    def is_running(self) -> bool:
        return self._is_running

    @property
    def is_completed(self) -> bool:
        return self._phase == RoundPhase.COMPLETED

    @property
    def current_phase_duration(self) -> float:
        if self._phase == RoundPhase.REVEAL:
            return self._config.reveal_duration
        if self._phase == RoundPhase.DECISION:
            return self._config.decision_duration
        return 0.0

    def start(self, now_ms: int) -> dict[str, Any]:
        if self._started:
            return self.snapshot()
        self._started = True
        self._is_running = True
        self._current_week = 0
        self._phase = RoundPhase.REVEAL
        self._end_time_ms = now_ms + _ms(self._config.reveal_duration)
        return self.snapshot()

    def advance(self, now_ms: int) -> dict[str, Any]:
        """Fire the pending transition and return the new snapshot."""
        if not self._is_running:
            return self.snapshot()

        if self._phase == RoundPhase.REVEAL:
            self._phase = RoundPhase.DECISION
            self._end_time_ms = now_ms + _ms(self._config.decision_duration)
            return self.snapshot()

        if self._current_week + 1 < self._config.total_weeks:
            self._current_week += 1
            self._phase = RoundPhase.REVEAL
            self._end_time_ms = now_ms + _ms(self._config.reveal_duration)
            return self.snapshot()

        self._phase = RoundPhase.COMPLETED
        self._is_running = False
        self._end_time_ms = now_ms
        return self.snapshot()

    def is_trading_open(self, now_ms: int | None = None) -> bool:
        if not self._is_running or self._phase != RoundPhase.DECISION:
            return False
        return now_ms is None or now_ms < self._end_time_ms

    def snapshot(self) -> dict[str, Any]:
        return {
            "currentWeek": self._current_week,
            "phase": self._phase.value,
            "endTime": self._end_time_ms,
            "isRunning": self._is_running,
        }

    @staticmethod
    def phase_at(config: ClockConfig, elapsed_seconds: float) -> tuple[int, RoundPhase]:
        """Nominal (week, phase) at `elapsed_seconds` after start."""
        if elapsed_seconds < 0:
            raise ValueError("elapsed_seconds must be >= 0")
        week, offset = divmod(elapsed_seconds, config.round_duration)
        week_index = int(week)
        if week_index >= config.total_weeks:
            return config.total_weeks - 1, RoundPhase.COMPLETED
        if offset < config.reveal_duration:
            return week_index, RoundPhase.REVEAL
        return week_index, RoundPhase.DECISION
