# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import replace
from typing import List, Optional

import httpx
from dotenv import load_dotenv
from rich.console import Console

from usage_core.config import (
    ALLOWED_REFRESH_INTERVALS,
    Settings,
    SettingsValidationError,
    load_settings,
)
from usage_core.cooldown import ProbeCooldownCache
from usage_core.credential_store import CredentialStore
from usage_core.failure_logger import setup_failure_logger
from usage_core.history import UsageHistory
from usage_core.notifications import threshold_crossings
from usage_core.orchestrator import RefreshOrchestrator
from usage_core.provider_factory import build_providers, get_available_providers
from usage_core.secret_store import KeychainSecretStore
from usage_core.types import CycleResult, ProviderKind, ProviderState

from .display import render_states

console = Console()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Show remaining quota for AI coding subscriptions."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single refresh cycle, print the result and exit.",
    )
    parser.add_argument(
        "--interval",
        type=int,
        choices=ALLOWED_REFRESH_INTERVALS,
        help="Refresh interval in seconds (overrides USAGE_REFRESH_INTERVAL).",
    )
    parser.add_argument(
        "--provider",
        action="append",
        choices=get_available_providers(),
        help="Only poll this provider. May be given more than once.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print snapshots as JSON instead of a table.",
    )
    return parser


def states_to_json(orchestrator: RefreshOrchestrator) -> str:
    payload = {
        "last_refresh_at": orchestrator.last_refresh_at,
        "errors": orchestrator.errors,
        "providers": {
            kind.value: {
                "status": state.status.value,
                "error": state.error,
                "last_success_at": state.last_success_at,
                "snapshot": state.snapshot.to_dict(),
            }
            for kind, state in orchestrator.states.items()
        },
    }
    return json.dumps(payload, indent=2)


def build_orchestrator(
    settings: Settings,
    http_client: httpx.AsyncClient,
    only: Optional[List[ProviderKind]] = None,
) -> RefreshOrchestrator:
    configs = settings.provider_configs(only)
    secret_store = (
        KeychainSecretStore() if settings.credential_backend == "keychain" else None
    )
    providers = build_providers(configs, secret_store)
    return RefreshOrchestrator(
        providers=providers,
        configs={config.provider: config for config in configs},
        credential_store=CredentialStore(providers, http_client),
        http_client=http_client,
        cooldowns=ProbeCooldownCache(settings.probe_cooldown_seconds),
        history=UsageHistory(settings.history_path),
        provider_timeout=settings.provider_timeout,
        interval_seconds=settings.refresh_interval,
    )


async def run(args: argparse.Namespace, settings: Settings) -> int:
    only = [ProviderKind(name) for name in args.provider] if args.provider else None

    async with httpx.AsyncClient(timeout=settings.http_timeout) as http_client:
        orchestrator = build_orchestrator(settings, http_client, only)

        if args.once:
            result = await orchestrator.run_cycle()
            if args.json:
                print(states_to_json(orchestrator))
            else:
                render_states(
                    console,
                    orchestrator.states,
                    orchestrator.last_refresh_at,
                    orchestrator.errors,
                )
            if result.outcomes and len(result.failures) == len(result.outcomes):
                return 1
            return 0

        previous = {
            kind: ProviderState(
                provider=kind, snapshot=state.snapshot, status=state.status
            )
            for kind, state in orchestrator.states.items()
        }

        async def on_cycle(result: CycleResult) -> None:
            for kind in threshold_crossings(
                previous, orchestrator.states, settings.notification_threshold
            ):
                console.print(
                    f"[bold red]{kind.display_name} usage passed "
                    f"{settings.notification_threshold}%[/bold red]"
                )
            for kind, state in orchestrator.states.items():
                previous[kind] = ProviderState(
                    provider=kind, snapshot=state.snapshot, status=state.status
                )
            if args.json:
                print(states_to_json(orchestrator), flush=True)
            else:
                render_states(
                    console,
                    orchestrator.states,
                    orchestrator.last_refresh_at,
                    orchestrator.errors,
                )

        orchestrator.on_cycle = on_cycle
        task = orchestrator.start()
        try:
            await task
        finally:
            await orchestrator.stop()
    return 0


def configure_logging(settings: Settings) -> logging.Logger:
    """Console logging for the app plus a stream handler on the library logger."""
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    core_logger = logging.getLogger("usage_core")
    core_logger.setLevel(level)
    if not any(type(h) is logging.StreamHandler for h in core_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        core_logger.addHandler(handler)

    setup_failure_logger(str(settings.log_dir))
    return core_logger


def main(argv: Optional[List[str]] = None) -> int:
    # Load environment variables from .env file
    load_dotenv()

    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except SettingsValidationError as e:
        console.print(f"[bold red]Configuration error:[/bold red] {e}")
        return 2

    configure_logging(settings)

    if args.interval is not None:
        settings = replace(settings, refresh_interval=args.interval)

    try:
        return asyncio.run(run(args, settings))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
