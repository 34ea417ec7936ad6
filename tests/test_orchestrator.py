import asyncio
from pathlib import Path
from typing import Optional

import pytest

from conftest import NOW, RecordingHandler
from usage_core.config import SettingsValidationError
from usage_core.credential_store import CredentialStore
from usage_core.errors import ProbeError, ProbeFailure, ReauthRequiredError
from usage_core.history import UsageHistory
from usage_core.orchestrator import RefreshOrchestrator
from usage_core.providers.provider_interface import FetchContext, UsageProvider
from usage_core.types import (
    PRIMARY,
    ProviderConfig,
    ProviderKind,
    ProviderStatus,
    UsageSnapshot,
    UsageWindow,
)


def snapshot_for(kind: ProviderKind, percent: float) -> UsageSnapshot:
    return UsageSnapshot(
        provider=kind,
        windows={PRIMARY: UsageWindow(PRIMARY, percent, NOW + 3600, 300)},
        produced_at=NOW,
    )


class ScriptedProvider(UsageProvider):
    """Provider whose collect() replays a list of outcomes."""

    def __init__(self, kind: ProviderKind, *outcomes, gate: Optional[asyncio.Event] = None):
        super().__init__(None)
        self.kind = kind
        self.outcomes = list(outcomes)
        self.gate = gate
        self.calls = 0

    def parse_credentials(self, document, source_key):
        return None

    def serialize_credentials(self, creds):
        return {}

    async def refresh_credentials(self, creds, client):
        raise NotImplementedError

    async def fetch_usage(self, creds, ctx):
        raise NotImplementedError

    async def collect(self, ctx: FetchContext) -> UsageSnapshot:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome == "hang":
            await asyncio.sleep(3600)
        return outcome


@pytest.fixture
def build_orchestrator(make_client, clock):
    def _build(*providers, disabled=(), history=None, timeout=5.0, on_cycle=None):
        client = make_client(RecordingHandler({}))
        provider_map = {provider.kind: provider for provider in providers}
        configs = {
            kind: ProviderConfig(provider=kind, enabled=kind not in disabled)
            for kind in provider_map
        }
        return RefreshOrchestrator(
            providers=provider_map,
            configs=configs,
            credential_store=CredentialStore(provider_map, client, clock=clock),
            http_client=client,
            history=history,
            provider_timeout=timeout,
            on_cycle=on_cycle,
            clock=clock,
        )

    return _build


def test_states_start_as_placeholders(build_orchestrator) -> None:
    orchestrator = build_orchestrator(ScriptedProvider(ProviderKind.CLAUDE))

    state = orchestrator.states[ProviderKind.CLAUDE]
    assert state.status == ProviderStatus.PENDING
    assert state.snapshot.is_placeholder
    assert orchestrator.snapshot(ProviderKind.CLAUDE) is None
    assert orchestrator.last_refresh_at is None
    assert orchestrator.busy is False


@pytest.mark.asyncio
async def test_overlapping_trigger_is_dropped(build_orchestrator) -> None:
    gate = asyncio.Event()
    provider = ScriptedProvider(
        ProviderKind.CLAUDE, snapshot_for(ProviderKind.CLAUDE, 10), gate=gate
    )
    orchestrator = build_orchestrator(provider)

    first = asyncio.create_task(orchestrator.run_cycle())
    await asyncio.sleep(0)
    assert orchestrator.busy is True

    second = await orchestrator.run_cycle()
    gate.set()
    first_result = await first

    assert second.skipped is True
    assert second.outcomes == {}
    assert first_result.skipped is False
    assert provider.calls == 1
    assert orchestrator.busy is False


@pytest.mark.asyncio
async def test_one_failure_does_not_block_other_providers(build_orchestrator) -> None:
    claude = ScriptedProvider(ProviderKind.CLAUDE, RuntimeError("boom"))
    codex = ScriptedProvider(ProviderKind.CODEX, snapshot_for(ProviderKind.CODEX, 40))
    orchestrator = build_orchestrator(claude, codex)

    result = await orchestrator.run_cycle()

    assert set(result.successes) == {ProviderKind.CODEX}
    assert set(result.failures) == {ProviderKind.CLAUDE}
    assert orchestrator.states[ProviderKind.CODEX].status == ProviderStatus.OK
    assert orchestrator.states[ProviderKind.CODEX].snapshot.primary.used_percent == 40
    assert orchestrator.states[ProviderKind.CLAUDE].status == ProviderStatus.STALE
    assert orchestrator.errors == ["Claude: boom"]
    assert orchestrator.last_refresh_at == NOW
    assert "Claude: boom" in str(result.error())


@pytest.mark.asyncio
async def test_failure_keeps_previous_snapshot(build_orchestrator, clock) -> None:
    good = snapshot_for(ProviderKind.GEMINI, 20)
    provider = ScriptedProvider(
        ProviderKind.GEMINI, good, ProbeError(ProbeFailure.HTTP_ERROR, 503, "unavailable")
    )
    orchestrator = build_orchestrator(provider)

    await orchestrator.run_cycle()
    clock.advance(300)
    await orchestrator.run_cycle()

    state = orchestrator.states[ProviderKind.GEMINI]
    assert state.snapshot is good
    assert state.status == ProviderStatus.STALE
    assert state.is_stale
    assert state.error == "HTTP 503: unavailable"
    assert state.last_success_at == NOW
    assert orchestrator.last_refresh_at == NOW + 300


@pytest.mark.asyncio
async def test_success_clears_previous_error(build_orchestrator) -> None:
    provider = ScriptedProvider(
        ProviderKind.CODEX, RuntimeError("flaky"), snapshot_for(ProviderKind.CODEX, 5)
    )
    orchestrator = build_orchestrator(provider)

    await orchestrator.run_cycle()
    await orchestrator.run_cycle()

    state = orchestrator.states[ProviderKind.CODEX]
    assert state.status == ProviderStatus.OK
    assert state.error is None
    assert orchestrator.errors == []


@pytest.mark.asyncio
async def test_reauth_failure_is_reported_separately(build_orchestrator) -> None:
    provider = ScriptedProvider(ProviderKind.CLAUDE, ReauthRequiredError("claude"))
    orchestrator = build_orchestrator(provider)

    await orchestrator.run_cycle()

    state = orchestrator.states[ProviderKind.CLAUDE]
    assert state.status == ProviderStatus.NEEDS_REAUTH
    assert state.error == "needs re-authentication"
    assert orchestrator.errors == ["Claude: needs re-authentication"]


@pytest.mark.asyncio
async def test_stuck_provider_times_out_alone(build_orchestrator) -> None:
    stuck = ScriptedProvider(ProviderKind.GEMINI, "hang")
    codex = ScriptedProvider(ProviderKind.CODEX, snapshot_for(ProviderKind.CODEX, 1))
    orchestrator = build_orchestrator(stuck, codex, timeout=0.05)

    await orchestrator.run_cycle()

    assert orchestrator.states[ProviderKind.CODEX].status == ProviderStatus.OK
    assert orchestrator.states[ProviderKind.GEMINI].status == ProviderStatus.STALE
    assert orchestrator.states[ProviderKind.GEMINI].error == "timed out"


@pytest.mark.asyncio
async def test_disabled_provider_is_not_polled(build_orchestrator) -> None:
    claude = ScriptedProvider(ProviderKind.CLAUDE, snapshot_for(ProviderKind.CLAUDE, 1))
    gemini = ScriptedProvider(ProviderKind.GEMINI, snapshot_for(ProviderKind.GEMINI, 1))
    orchestrator = build_orchestrator(claude, gemini, disabled={ProviderKind.GEMINI})

    result = await orchestrator.run_cycle()

    assert list(result.outcomes) == [ProviderKind.CLAUDE]
    assert gemini.calls == 0
    assert orchestrator.states[ProviderKind.GEMINI].status == ProviderStatus.PENDING


@pytest.mark.asyncio
async def test_history_records_successes_only(
    build_orchestrator, tmp_path: Path, clock
) -> None:
    history = UsageHistory(tmp_path / "history.json", clock=clock)
    claude = ScriptedProvider(ProviderKind.CLAUDE, snapshot_for(ProviderKind.CLAUDE, 33))
    codex = ScriptedProvider(ProviderKind.CODEX, RuntimeError("down"))
    orchestrator = build_orchestrator(claude, codex, history=history)

    await orchestrator.run_cycle()

    entries = await history.entries()
    assert [(e.provider, e.primary_percent) for e in entries] == [
        (ProviderKind.CLAUDE, 33)
    ]


@pytest.mark.asyncio
async def test_on_cycle_callback_receives_result(build_orchestrator) -> None:
    seen = []

    async def on_cycle(result) -> None:
        seen.append(result)

    provider = ScriptedProvider(ProviderKind.CLAUDE, snapshot_for(ProviderKind.CLAUDE, 1))
    orchestrator = build_orchestrator(provider, on_cycle=on_cycle)

    result = await orchestrator.run_cycle()

    assert seen == [result]


# =============================================================================
# SCHEDULING
# =============================================================================


@pytest.mark.asyncio
async def test_first_cycle_waits_for_initial_delay(build_orchestrator) -> None:
    provider = ScriptedProvider(ProviderKind.CLAUDE, snapshot_for(ProviderKind.CLAUDE, 1))
    orchestrator = build_orchestrator(provider)

    orchestrator.start(initial_delay=0.05)
    await asyncio.sleep(0)
    assert provider.calls == 0

    await asyncio.sleep(0.2)
    assert provider.calls == 1
    await orchestrator.stop()
    assert orchestrator.is_scheduled is False


@pytest.mark.asyncio
async def test_start_twice_keeps_one_timer(build_orchestrator) -> None:
    orchestrator = build_orchestrator(ScriptedProvider(ProviderKind.CLAUDE))

    first = orchestrator.start(initial_delay=60)
    second = orchestrator.start(initial_delay=60)

    assert first is second
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_set_interval_replaces_the_timer(build_orchestrator) -> None:
    orchestrator = build_orchestrator(ScriptedProvider(ProviderKind.CLAUDE))
    old_timer = orchestrator.start(initial_delay=60)

    await orchestrator.set_interval(900)

    assert old_timer.cancelled()
    assert orchestrator.is_scheduled
    assert orchestrator.interval_seconds == 900
    await orchestrator.stop()


@pytest.mark.asyncio
async def test_set_interval_rejects_unknown_values(build_orchestrator) -> None:
    orchestrator = build_orchestrator(ScriptedProvider(ProviderKind.CLAUDE))

    with pytest.raises(SettingsValidationError):
        await orchestrator.set_interval(45)
    assert orchestrator.interval_seconds == 300


@pytest.mark.asyncio
async def test_set_interval_lets_in_flight_cycle_finish(build_orchestrator) -> None:
    gate = asyncio.Event()
    provider = ScriptedProvider(
        ProviderKind.CODEX, snapshot_for(ProviderKind.CODEX, 25), gate=gate
    )
    orchestrator = build_orchestrator(provider)
    orchestrator.start(initial_delay=0)
    while not orchestrator.busy:
        await asyncio.sleep(0)

    await orchestrator.set_interval(900)
    gate.set()
    await orchestrator.stop()

    state = orchestrator.states[ProviderKind.CODEX]
    assert state.status == ProviderStatus.OK
    assert state.snapshot.primary.used_percent == 25
    assert orchestrator.last_refresh_at == NOW
    assert provider.calls == 1
