from __future__ import annotations

import pytest

from console import COMMANDS, build_parser
from core.log_utils import format_elapsed
from core.models import ReplayOutcome, ReplayReport


def test_parser_accepts_every_command() -> None:
    parser = build_parser()
    for command in COMMANDS:
        assert parser.parse_args([command]).command == command


def test_replay_commands_take_recursive_flag() -> None:
    args = build_parser().parse_args(["--root", "imgs", "upscale", "--recursive"])

    assert args.root == "imgs"
    assert args.recursive is True


def test_unknown_command_exits() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["paint"])


def test_report_summary() -> None:
    report = ReplayReport(
        mode="upscale",
        total=3,
        outcomes=[
            ReplayOutcome(file_name="a", success=True),
            ReplayOutcome(file_name="b", success=False, error="boom"),
        ],
    )
    assert report.summary() == "2/3 completed. Succeeded: 1. Errors: 1."


def test_format_elapsed() -> None:
    assert format_elapsed(3723.5) == "1h2m3s (3723500.0ms)"
    assert format_elapsed(0.25) == "0h0m0s (250.0ms)"
