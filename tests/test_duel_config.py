# File: tests/test_duel_config.py

from pathlib import Path

import pytest

from duel_config import DuelConfig, parse_duel_config


def test_defaults_build_the_standard_clock() -> None:
    config = parse_duel_config([])
    assert config.port == 8765
    assert config.data_dir is None
    clock = config.clock_config()
    assert (clock.round_duration, clock.decision_duration, clock.total_weeks) == (12.0, 7.0, 4)


def test_cli_overrides() -> None:
    config = parse_duel_config(
        [
            "--port",
            "9001",
            "--round-duration",
            "3",
            "--decision-duration",
            "1.5",
            "--data-dir",
            "state",
            "--export-dir",
            "out",
            "--log-level",
            "debug",
        ]
    )
    assert config.port == 9001
    assert config.clock_config().reveal_duration == 1.5
    assert config.data_dir == Path("state")
    assert config.export_dir == Path("out")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"port": 0},
        {"round_duration": 0},
        {"decision_duration": 12.0},
        {"weeks": 5},
        {"starting_cash": -1},
        {"session_ttl": 0},
    ],
)
def test_invalid_values_are_rejected(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        DuelConfig(**kwargs)
