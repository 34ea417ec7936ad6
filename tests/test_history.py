import json
import logging
from pathlib import Path

import httpx
import pytest

from conftest import NOW, FakeClock
from usage_core.errors import ProbeError
from usage_core.failure_logger import FAILURE_LOGGER_NAME, log_failure, setup_failure_logger
from usage_core.history import MAX_ENTRIES_PER_PROVIDER, UsageHistory
from usage_core.normalizer import placeholder_snapshot
from usage_core.notifications import threshold_crossings
from usage_core.types import (
    PRIMARY,
    SECONDARY,
    ProviderKind,
    ProviderState,
    UsageSnapshot,
    UsageWindow,
)


def snapshot(kind: ProviderKind, primary: float, secondary: float = None) -> UsageSnapshot:
    windows = {PRIMARY: UsageWindow(PRIMARY, primary)}
    if secondary is not None:
        windows[SECONDARY] = UsageWindow(SECONDARY, secondary)
    return UsageSnapshot(provider=kind, windows=windows)


# =============================================================================
# HISTORY
# =============================================================================


@pytest.mark.asyncio
async def test_history_persists_and_reloads(tmp_path: Path) -> None:
    clock = FakeClock()
    path = tmp_path / "history.json"
    history = UsageHistory(path, clock=clock)

    await history.append(snapshot(ProviderKind.CLAUDE, 12.5, 40.0))
    clock.advance(60)
    await history.append(snapshot(ProviderKind.CODEX, 3.0))

    reloaded = UsageHistory(path, clock=clock)
    entries = await reloaded.entries()
    assert [(e.provider, e.timestamp) for e in entries] == [
        (ProviderKind.CLAUDE, NOW),
        (ProviderKind.CODEX, NOW + 60),
    ]
    assert entries[0].secondary_percent == 40.0
    assert entries[1].secondary_percent is None
    assert (await reloaded.entries(ProviderKind.CODEX))[0].primary_percent == 3.0


@pytest.mark.asyncio
async def test_history_caps_entries_per_provider(tmp_path: Path) -> None:
    clock = FakeClock()
    history = UsageHistory(tmp_path / "history.json", clock=clock)

    for i in range(MAX_ENTRIES_PER_PROVIDER + 5):
        await history.append(snapshot(ProviderKind.CLAUDE, float(i)))
        clock.advance(60)
    await history.append(snapshot(ProviderKind.GEMINI, 1.0))

    claude = await history.entries(ProviderKind.CLAUDE)
    assert len(claude) == MAX_ENTRIES_PER_PROVIDER
    assert claude[0].primary_percent == 5.0
    assert len(await history.entries(ProviderKind.GEMINI)) == 1


@pytest.mark.asyncio
async def test_history_prunes_entries_older_than_a_week(tmp_path: Path) -> None:
    clock = FakeClock()
    history = UsageHistory(tmp_path / "history.json", clock=clock)

    await history.append(snapshot(ProviderKind.CLAUDE, 1.0))
    clock.advance(8 * 86400)
    await history.append(snapshot(ProviderKind.CLAUDE, 2.0))

    entries = await history.entries(ProviderKind.CLAUDE)
    assert [e.primary_percent for e in entries] == [2.0]


@pytest.mark.asyncio
async def test_history_averages(tmp_path: Path) -> None:
    clock = FakeClock(now=1_000 * 3600)
    history = UsageHistory(tmp_path / "history.json", clock=clock)

    for percent in (10.0, 20.0):
        await history.append(snapshot(ProviderKind.CLAUDE, percent))
        clock.advance(600)
    clock.advance(3600)
    await history.append(snapshot(ProviderKind.CLAUDE, 50.0))

    hourly = await history.hourly_average(ProviderKind.CLAUDE, hours=24)
    assert list(hourly.values()) == [15.0, 50.0]
    assert list(hourly) == [1_000 * 3600, 1_001 * 3600]

    daily = await history.daily_average(ProviderKind.CLAUDE, days=7)
    assert list(daily.values()) == [pytest.approx(80.0 / 3)]


@pytest.mark.asyncio
async def test_history_ignores_corrupt_file(tmp_path: Path) -> None:
    path = tmp_path / "history.json"
    path.write_text("{broken", encoding="utf-8")

    history = UsageHistory(path, clock=FakeClock())

    assert await history.entries() == []
    await history.append(snapshot(ProviderKind.GEMINI, 7.0))
    assert len(json.loads(path.read_text(encoding="utf-8"))) == 1


# =============================================================================
# NOTIFICATIONS
# =============================================================================


def state(kind: ProviderKind, percent: float = None) -> ProviderState:
    snap = placeholder_snapshot(kind) if percent is None else snapshot(kind, percent)
    return ProviderState(provider=kind, snapshot=snap)


def test_upward_crossing_notifies_once() -> None:
    previous = {ProviderKind.CLAUDE: state(ProviderKind.CLAUDE, 70.0)}
    current = {ProviderKind.CLAUDE: state(ProviderKind.CLAUDE, 85.0)}

    assert threshold_crossings(previous, current, 80) == [ProviderKind.CLAUDE]
    assert threshold_crossings(current, current, 80) == []


def test_downward_crossing_is_silent() -> None:
    previous = {ProviderKind.CODEX: state(ProviderKind.CODEX, 90.0)}
    current = {ProviderKind.CODEX: state(ProviderKind.CODEX, 10.0)}

    assert threshold_crossings(previous, current, 80) == []


def test_first_reading_above_threshold_notifies() -> None:
    previous = {ProviderKind.GEMINI: state(ProviderKind.GEMINI)}
    current = {
        ProviderKind.GEMINI: state(ProviderKind.GEMINI, 80.0),
        ProviderKind.CLAUDE: state(ProviderKind.CLAUDE, 95.0),
    }

    assert threshold_crossings(previous, current, 80) == [
        ProviderKind.GEMINI,
        ProviderKind.CLAUDE,
    ]


# =============================================================================
# FAILURE LOG
# =============================================================================


@pytest.fixture
def failure_log(tmp_path: Path):
    logger = setup_failure_logger(str(tmp_path / "logs"))
    yield tmp_path / "logs" / "failures.log"
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def test_failure_log_records_json_lines(failure_log: Path) -> None:
    response = httpx.Response(
        500,
        text="upstream exploded",
        request=httpx.Request("GET", "https://api.example/usage"),
    )
    log_failure(ProviderKind.CODEX, ProbeError.from_response(response), cycle_started_at=NOW)
    log_failure(ProviderKind.CLAUDE, RuntimeError("boom"))

    lines = failure_log.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])["message"]
    assert first["provider"] == "codex"
    assert first["status_code"] == 500
    assert first["raw_response"] == "upstream exploded"
    assert first["cycle_started_at"] == NOW
    second = json.loads(lines[1])["message"]
    assert second["error_type"] == "RuntimeError"
    assert second["raw_response"] is None


def test_failure_logger_does_not_propagate(failure_log: Path) -> None:
    assert logging.getLogger(FAILURE_LOGGER_NAME).propagate is False
