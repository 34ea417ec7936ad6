import json
import os
import time
from pathlib import Path

import pytest

from usage_core.session_logs import (
    fold_across_files,
    fold_session_data,
    list_recent_log_files,
    parse_lines,
    scan_sessions,
    stats_to_windows,
)
from usage_core.types import PRIMARY, SECONDARY


def token_count(
    total=None, input_tokens=None, output_tokens=None, primary=None, secondary=None, plan_type=None
) -> str:
    payload = {"type": "token_count"}
    if total is not None:
        payload["info"] = {
            "total_token_usage": {
                "input_tokens": input_tokens or 0,
                "output_tokens": output_tokens or 0,
                "total_tokens": total,
            }
        }
    rate_limits = {}
    if primary is not None:
        rate_limits["primary"] = primary
    if secondary is not None:
        rate_limits["secondary"] = secondary
    if plan_type is not None:
        rate_limits["plan_type"] = plan_type
    if rate_limits:
        payload["rate_limits"] = rate_limits
    return json.dumps({"type": "event_msg", "payload": payload})


TURN = json.dumps({"type": "turn.completed"})


def write_log(path: Path, lines, mtime: float) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    os.utime(path, (mtime, mtime))
    return path


def test_parse_lines_last_token_total_wins() -> None:
    data = parse_lines(
        [
            TURN,
            token_count(total=100, input_tokens=60, output_tokens=40),
            TURN,
            token_count(total=250, input_tokens=150, output_tokens=100),
        ]
    )

    assert data.messages == 2
    assert data.total_tokens == 250
    assert data.input_tokens == 150
    assert data.output_tokens == 100
    assert data.tokens_estimated is False


def test_parse_lines_skips_malformed_lines() -> None:
    data = parse_lines(["{not json", "", "[1, 2]", TURN, '{"type": "other"}'])

    assert data.messages == 1


def test_messages_without_tokens_are_estimated() -> None:
    data = parse_lines([TURN, TURN, TURN])

    assert data.total_tokens == 3 * 2000
    assert data.input_tokens == 1800
    assert data.output_tokens == 4200
    assert data.tokens_estimated is True


@pytest.mark.asyncio
async def test_fold_sums_counters_and_keeps_latest_rate_limits(tmp_path: Path) -> None:
    base = time.time() - 3600
    first = write_log(
        tmp_path / "2025" / "06" / "01" / "a.jsonl",
        [
            TURN,
            token_count(
                total=1000,
                input_tokens=600,
                output_tokens=400,
                primary={"used_percent": 10.0, "resets_at": 2_000_000_000, "window_minutes": 300},
                secondary={"used_percent": 5.0, "resets_at": 2_000_500_000},
                plan_type="plus",
            ),
        ],
        base,
    )
    second = write_log(
        tmp_path / "2025" / "06" / "01" / "b.jsonl",
        [
            TURN,
            TURN,
            token_count(
                total=500,
                input_tokens=200,
                output_tokens=300,
                primary={"used_percent": 35.0, "resets_at": 2_000_001_000},
            ),
        ],
        base + 60,
    )

    stats = await fold_across_files([first, second])

    assert stats.files == 2
    assert stats.messages == 3
    assert stats.total_tokens == 1500
    assert stats.input_tokens == 800
    assert stats.output_tokens == 700
    assert stats.primary.used_percent == 35.0
    assert stats.primary.resets_at == 2_000_001_000
    # Not present in the newer file: kept from the older one
    assert stats.primary.window_minutes == 300
    assert stats.secondary.used_percent == 5.0
    assert stats.plan_type == "plus"


@pytest.mark.asyncio
async def test_file_without_rate_limits_does_not_blank_earlier_values(tmp_path: Path) -> None:
    base = time.time() - 3600
    first = write_log(
        tmp_path / "a.jsonl",
        [token_count(total=10, primary={"used_percent": 61.0}, plan_type="pro")],
        base,
    )
    second = write_log(tmp_path / "b.jsonl", [TURN, token_count(total=20)], base + 60)

    stats = await fold_across_files([first, second])

    assert stats.primary.used_percent == 61.0
    assert stats.plan_type == "pro"
    assert stats.total_tokens == 30


def test_listing_filters_by_mtime_and_extension(tmp_path: Path) -> None:
    now = time.time()
    old = write_log(tmp_path / "old.jsonl", [TURN], now - 3 * 86400)
    newer = write_log(tmp_path / "nested" / "newer.jsonl", [TURN], now - 60)
    newest = write_log(tmp_path / "newest.jsonl", [TURN], now - 10)
    write_log(tmp_path / "notes.txt", [TURN], now - 10)

    files = list_recent_log_files(tmp_path, since=now - 86400)

    assert files == [newer, newest]
    assert old not in files


@pytest.mark.asyncio
async def test_missing_directory_is_an_empty_result(tmp_path: Path) -> None:
    stats = await scan_sessions(tmp_path / "does-not-exist")

    assert stats.directory_found is False
    assert stats.files == 0
    assert stats.messages == 0


@pytest.mark.asyncio
async def test_scan_sessions_ignores_old_files(tmp_path: Path) -> None:
    now = time.time()
    write_log(tmp_path / "old.jsonl", [TURN, TURN], now - 2 * 86400)
    write_log(tmp_path / "recent.jsonl", [TURN], now - 30)

    stats = await scan_sessions(tmp_path, now=now)

    assert stats.directory_found is True
    assert stats.files == 1
    assert stats.messages == 1


def test_stats_to_windows_rolls_expired_reset() -> None:
    now = 2_000_000_000.0
    data = parse_lines(
        [
            token_count(
                total=1,
                primary={"used_percent": 80.0, "resets_at": now - 10, "window_minutes": 300},
                secondary={"used_percent": 20.0, "resets_at": now + 1000},
            )
        ]
    )

    windows = stats_to_windows(fold_session_data([data]), now)

    assert windows[PRIMARY].used_percent == 0.0
    assert windows[PRIMARY].resets_at == now - 10 + 300 * 60
    assert windows[SECONDARY].used_percent == 20.0
    assert windows[SECONDARY].window_minutes == 10080
