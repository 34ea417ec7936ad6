# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Refresh orchestration.

One cycle fans out every enabled provider's fetch as its own task, joins
them, and applies the results to the shared state map from a single
aggregation point. A trigger that arrives while a cycle is running is
dropped. A periodic task re-triggers cycles at the configured interval.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from .config import validate_refresh_interval
from .cooldown import ProbeCooldownCache
from .credential_store import CredentialStore
from .errors import ReauthRequiredError, describe_error
from .failure_logger import log_failure
from .history import UsageHistory
from .normalizer import placeholder_snapshot
from .providers.provider_interface import FetchContext, UsageProvider
from .types import (
    CycleResult,
    ProviderConfig,
    ProviderKind,
    ProviderState,
    ProviderStatus,
    UsageSnapshot,
)

lib_logger = logging.getLogger("usage_core")

INITIAL_DELAY_SECONDS = 0.5
DEFAULT_PROVIDER_TIMEOUT = 60.0

CycleCallback = Callable[[CycleResult], Awaitable[None]]


class RefreshOrchestrator:
    """
    Runs polling cycles and owns the per-provider state consumers read.

    Exposes ``states`` (provider -> ProviderState), ``last_refresh_at``,
    ``busy`` and ``errors`` for the most recent cycle.
    """

    def __init__(
        self,
        providers: Mapping[ProviderKind, UsageProvider],
        configs: Mapping[ProviderKind, ProviderConfig],
        credential_store: CredentialStore,
        http_client: httpx.AsyncClient,
        cooldowns: Optional[ProbeCooldownCache] = None,
        history: Optional[UsageHistory] = None,
        provider_timeout: float = DEFAULT_PROVIDER_TIMEOUT,
        interval_seconds: int = 300,
        on_cycle: Optional[CycleCallback] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.providers = dict(providers)
        self.configs = dict(configs)
        self.credential_store = credential_store
        self.http_client = http_client
        self.cooldowns = cooldowns or ProbeCooldownCache(clock=clock)
        self.history = history
        self.provider_timeout = provider_timeout
        self.interval_seconds = interval_seconds
        self.on_cycle = on_cycle
        self._clock = clock

        now = clock()
        self.states: Dict[ProviderKind, ProviderState] = {
            kind: ProviderState(provider=kind, snapshot=placeholder_snapshot(kind, now))
            for kind in self.providers
        }
        self.last_refresh_at: Optional[float] = None
        self.errors: List[str] = []
        self._busy = False
        self._timer_task: Optional[asyncio.Task] = None
        self._cycle_task: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        return self._busy

    def enabled_providers(self) -> List[ProviderKind]:
        return [
            kind
            for kind in self.providers
            if self.configs.get(kind) is None or self.configs[kind].enabled
        ]

    def snapshot(self, provider: ProviderKind) -> Optional[UsageSnapshot]:
        state = self.states.get(provider)
        if state is None or state.snapshot.is_placeholder:
            return None
        return state.snapshot

    # =========================================================================
    # CYCLE
    # =========================================================================

    async def _fetch_one(self, kind: ProviderKind) -> UsageSnapshot:
        provider = self.providers[kind]
        ctx = FetchContext(
            credentials=self.credential_store,
            http=self.http_client,
            cooldowns=self.cooldowns,
            clock=self._clock,
        )
        return await asyncio.wait_for(provider.collect(ctx), self.provider_timeout)

    async def run_cycle(self) -> CycleResult:
        """
        Run one polling pass over every enabled provider.

        Returns a skipped result without doing anything if a cycle is
        already in flight.
        """
        started_at = self._clock()
        if self._busy:
            lib_logger.debug("Refresh already running, dropping trigger")
            return CycleResult(started_at=started_at, finished_at=started_at, skipped=True)

        self._busy = True
        try:
            kinds = self.enabled_providers()
            lib_logger.debug(
                f"Refreshing {len(kinds)} provider(s): {', '.join(k.value for k in kinds)}"
            )
            tasks = [self._fetch_one(kind) for kind in kinds]
            results = await asyncio.gather(*tasks, return_exceptions=True)

            result = CycleResult(
                started_at=started_at,
                finished_at=self._clock(),
                outcomes=dict(zip(kinds, results)),
            )
            await self._apply(result)
        finally:
            self._busy = False

        if self.on_cycle is not None:
            try:
                await self.on_cycle(result)
            except Exception as e:
                lib_logger.error(f"Cycle callback failed: {e}", exc_info=True)
        return result

    async def _apply(self, result: CycleResult) -> None:
        """Single writer for ``states``, ``errors`` and ``last_refresh_at``."""
        errors: List[str] = []
        for kind, outcome in result.outcomes.items():
            state = self.states[kind]
            if isinstance(outcome, UsageSnapshot):
                state.snapshot = outcome
                state.status = ProviderStatus.OK
                state.error = None
                state.last_success_at = result.finished_at
                continue

            label = describe_error(outcome)
            if isinstance(outcome, ReauthRequiredError):
                state.status = ProviderStatus.NEEDS_REAUTH
            else:
                state.status = ProviderStatus.STALE
            state.error = label
            errors.append(f"{kind.display_name}: {label}")
            lib_logger.warning(f"{kind.display_name} refresh failed: {label}")
            log_failure(kind, outcome, result.started_at)

        self.errors = errors
        self.last_refresh_at = result.finished_at

        if self.history is not None:
            for snapshot in result.successes.values():
                await self.history.append(snapshot)

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    async def _run_periodically(self, initial_delay: float) -> None:
        await asyncio.sleep(initial_delay)
        while True:
            self._cycle_task = asyncio.create_task(self.run_cycle())
            try:
                # Cancelling the timer never cancels the cycle it is waiting on
                await asyncio.shield(self._cycle_task)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                lib_logger.error(f"Refresh cycle failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)

    def start(self, initial_delay: float = INITIAL_DELAY_SECONDS) -> asyncio.Task:
        """Schedule the first cycle after ``initial_delay`` and repeat."""
        if self._timer_task is not None and not self._timer_task.done():
            return self._timer_task
        self._timer_task = asyncio.create_task(self._run_periodically(initial_delay))
        return self._timer_task

    async def set_interval(self, seconds: int) -> None:
        """
        Change the interval, replacing the running timer rather than adding one.

        A cycle already in flight keeps running and its results are applied.
        """
        self.interval_seconds = validate_refresh_interval(seconds)
        if self._timer_task is None:
            return
        await self._cancel_timer()
        self._timer_task = asyncio.create_task(
            self._run_periodically(self.interval_seconds)
        )
        lib_logger.info(f"Refresh interval set to {self.interval_seconds}s")

    async def _cancel_timer(self) -> None:
        task = self._timer_task
        self._timer_task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Cancel the timer, then wait for any in-flight cycle to finish."""
        await self._cancel_timer()
        cycle = self._cycle_task
        self._cycle_task = None
        if cycle is None or cycle.done():
            return
        try:
            await cycle
        except Exception as e:
            lib_logger.error(f"Refresh cycle failed: {e}", exc_info=True)

    @property
    def is_scheduled(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()
