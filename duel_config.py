# File: duel_config.py

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path

from match_registry import SESSION_TTL_SECONDS
from models import STARTING_CASH, TOTAL_WEEKS
from round_clock import DECISION_DURATION_SECONDS, ROUND_DURATION_SECONDS, ClockConfig


@dataclass(frozen=True, slots=True)
class DuelConfig:
    host: str = "127.0.0.1"
    port: int = 8765
    round_duration: float = ROUND_DURATION_SECONDS
    decision_duration: float = DECISION_DURATION_SECONDS
    weeks: int = TOTAL_WEEKS
    starting_cash: float = STARTING_CASH
    data_dir: Path | None = None
    scenarios: Path = Path("scenarios.json")
    export_dir: Path | None = None
    session_ttl: float = SESSION_TTL_SECONDS
    reap_interval: float = 30.0
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        _validate_positive(self.port, "port")
        _validate_positive(self.round_duration, "round_duration")
        _validate_positive(self.decision_duration, "decision_duration")
        _validate_positive(self.starting_cash, "starting_cash")
        _validate_positive(self.session_ttl, "session_ttl")
        _validate_positive(self.reap_interval, "reap_interval")
        if self.weeks != TOTAL_WEEKS:
            # Scenarios always carry four weeks of daily candles.
            raise ValueError(f"weeks must be {TOTAL_WEEKS}")
        if self.decision_duration >= self.round_duration:
            raise ValueError("decision_duration must be shorter than round_duration")

    def clock_config(self) -> ClockConfig:
        return ClockConfig(
            round_duration=self.round_duration,
            decision_duration=self.decision_duration,
            total_weeks=self.weeks,
        )


def _validate_positive(value: float, field_name: str) -> float:
    if value <= 0:
        raise ValueError(f"{field_name} must be > 0")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trading duel match server")
    parser.add_argument("--host", type=str, default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8765)
    parser.add_argument("--round-duration", type=float, default=ROUND_DURATION_SECONDS, help="Seconds per week (>0)")
    parser.add_argument(
        "--decision-duration",
        type=float,
        default=DECISION_DURATION_SECONDS,
        help="Seconds of each week open for trading (< round duration)",
    )
    parser.add_argument("--weeks", type=int, default=TOTAL_WEEKS)
    parser.add_argument("--starting-cash", type=float, default=STARTING_CASH)
    parser.add_argument("--data-dir", type=Path, default=None, help="Directory for JSON match/user documents")
    parser.add_argument("--scenarios", type=Path, default=Path("scenarios.json"), help="JSON scenario library")
    parser.add_argument("--export-dir", type=Path, default=None, help="Directory for CSV trade/result journals")
    parser.add_argument("--session-ttl", type=float, default=SESSION_TTL_SECONDS)
    parser.add_argument("--reap-interval", type=float, default=30.0)
    parser.add_argument("--log-level", type=str, default="INFO")
    return parser


def parse_duel_config(argv: list[str] | None = None) -> DuelConfig:
    args = build_parser().parse_args(argv)
    return DuelConfig(
        host=args.host,
        port=args.port,
        round_duration=args.round_duration,
        decision_duration=args.decision_duration,
        weeks=args.weeks,
        starting_cash=args.starting_cash,
        data_dir=args.data_dir,
        scenarios=args.scenarios,
        export_dir=args.export_dir,
        session_ttl=args.session_ttl,
        reap_interval=args.reap_interval,
        log_level=args.log_level,
    )
