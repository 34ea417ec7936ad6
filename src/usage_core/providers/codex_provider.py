# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/usage_core/providers/codex_provider.py

"""
Codex subscription usage.

The primary signal is local: the CLI appends ``token_count`` events carrying
its rate-limit state to JSONL session logs under ``$CODEX_HOME/sessions``.
When ``$CODEX_HOME/auth.json`` holds a token, the remote usage endpoint is
asked as well and its numbers override the session-derived ones. A remote
failure of any kind leaves the session-derived snapshot in place.
"""

import copy
import logging
import os
import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles
import httpx

from ..errors import CredentialError, ProbeError
from ..normalizer import (
    estimate_cost,
    normalize_plan_tier,
    parse_epoch,
    roll_window,
)
from ..session_logs import scan_sessions, stats_to_windows
from ..types import (
    DEFAULT_PRIMARY_WINDOW_MINUTES,
    DEFAULT_SECONDARY_WINDOW_MINUTES,
    PRIMARY,
    SECONDARY,
    Credentials,
    Provenance,
    ProviderKind,
    SessionStats,
    TokenCounters,
    UsageSnapshot,
    UsageWindow,
)
from .provider_interface import FetchContext, UsageProvider
from .utilities.candidates import dedupe, join_url, probe_candidates
from .utilities.oauth_helpers import decode_jwt_claims, first_string, post_token_grant

lib_logger = logging.getLogger("usage_core")


# =============================================================================
# CONSTANTS
# =============================================================================

# Public client id of the Codex CLI
CLIENT_ID = os.getenv("CODEX_CLIENT_ID", "app_EMoamEEZ73f0CkXaXp7hrann")
TOKEN_URL = "https://auth.openai.com/oauth/token"

ENVELOPE = "tokens"
JWT_AUTH_CLAIM = "https://api.openai.com/auth"

DEFAULT_BASE_URLS = ("https://api.openai.com", "https://chatgpt.com")
CHATGPT_PATHS = ("/backend-api/wham/usage", "/api/codex/usage")
API_PATHS = ("/api/codex/usage", "/backend-api/wham/usage")

CONFIG_OVERRIDE_KEYS = ("api_base_url", "base_url")

# Estimated messages per five hour window by plan
PRO_MESSAGE_LIMIT = 1500
PLUS_MESSAGE_LIMIT = 225

# Roughly 5 credits per local task at $0.01 per credit
COST_PER_MESSAGE_USD = 0.05

NO_SESSIONS_TIER = "No sessions"

_CONFIG_LINE = re.compile(r"^\s*([A-Za-z0-9_.-]+)\s*=\s*(.+?)\s*$")


# =============================================================================
# CONFIG OVERRIDE FILE
# =============================================================================


def parse_config_overrides(
    text: str, keys: tuple = CONFIG_OVERRIDE_KEYS
) -> Dict[str, str]:
    """
    Read ``key = "value"`` lines for the given keys.

    Comments after ``#`` are dropped, only quoted values are accepted, and
    every other line is ignored.
    """
    values: Dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.split("#", 1)[0]
        match = _CONFIG_LINE.match(line)
        if not match:
            continue
        key, value = match.group(1), match.group(2)
        if key not in keys or key in values:
            continue
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            values[key] = value[1:-1]
    return values


async def read_config_text(path: Union[str, Path]) -> str:
    path = Path(path)
    if not path.is_file():
        return ""
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()
    except OSError as e:
        lib_logger.debug(f"Cannot read Codex config '{path}': {e}")
        return ""


# =============================================================================
# PAYLOAD PARSING
# =============================================================================


def usage_paths_for(base_url: str) -> tuple:
    """ChatGPT-style hosts serve the backend path first, API hosts the other."""
    parsed = httpx.URL(base_url)
    if "chatgpt.com" in (parsed.host or "") or "backend-api" in parsed.path:
        return CHATGPT_PATHS
    return API_PATHS


def _remote_window(
    name: str, data: Any, default_minutes: int, now: float
) -> Optional[UsageWindow]:
    if not isinstance(data, dict) or data.get("used_percent") is None:
        return None
    try:
        percent = float(data["used_percent"])
    except (TypeError, ValueError):
        return None
    seconds = data.get("limit_window_seconds")
    minutes = int(seconds) // 60 if isinstance(seconds, (int, float)) and seconds else None
    return roll_window(
        name, percent, parse_epoch(data.get("reset_at")), minutes, default_minutes, now
    )


def parse_remote_payload(data: Any, now: float) -> Optional[UsageSnapshot]:
    """Map ``{plan_type, rate_limit{primary_window, secondary_window}}``."""
    if not isinstance(data, dict) or not isinstance(data.get("rate_limit"), dict):
        return None
    rate_limit = data["rate_limit"]

    snapshot = UsageSnapshot(
        provider=ProviderKind.CODEX,
        plan_tier=normalize_plan_tier(data.get("plan_type")),
        produced_at=now,
        source="remote_usage",
    )
    for name, key, default_minutes in (
        (PRIMARY, "primary_window", DEFAULT_PRIMARY_WINDOW_MINUTES),
        (SECONDARY, "secondary_window", DEFAULT_SECONDARY_WINDOW_MINUTES),
    ):
        window = _remote_window(name, rate_limit.get(key), default_minutes, now)
        if window is not None:
            snapshot.windows[name] = window
    return snapshot if snapshot.windows else None


def message_limit_for(plan_tier: Optional[str]) -> int:
    return PRO_MESSAGE_LIMIT if plan_tier and "pro" in plan_tier.lower() else PLUS_MESSAGE_LIMIT


def build_session_snapshot(
    stats: SessionStats, now: float, config_text: str = ""
) -> UsageSnapshot:
    """Snapshot from folded session logs, with the documented estimates."""
    snapshot = UsageSnapshot(
        provider=ProviderKind.CODEX,
        windows=stats_to_windows(stats, now),
        produced_at=now,
        source="session_logs",
        tokens=TokenCounters(
            input_tokens=stats.input_tokens,
            output_tokens=stats.output_tokens,
            total_tokens=stats.total_tokens,
            messages=stats.messages,
            provenance=(
                Provenance.ESTIMATED if stats.tokens_estimated else Provenance.MEASURED
            ),
        ),
    )

    if not stats.directory_found:
        snapshot.plan_tier = NO_SESSIONS_TIER
        snapshot.provenance = Provenance.ESTIMATED
        return snapshot

    if stats.plan_type:
        snapshot.plan_tier = normalize_plan_tier(stats.plan_type)
    elif re.search(r"\bpro\b", config_text, re.IGNORECASE):
        snapshot.plan_tier = "Pro"
    else:
        snapshot.plan_tier = "Plus"

    if snapshot.primary is None:
        # No rate-limit event seen: percent = messages / estimated plan limit
        limit = message_limit_for(snapshot.plan_tier)
        snapshot.windows[PRIMARY] = UsageWindow(
            name=PRIMARY,
            used_percent=min(100.0, stats.messages / limit * 100),
            window_minutes=DEFAULT_PRIMARY_WINDOW_MINUTES,
        )
        snapshot.provenance = Provenance.ESTIMATED

    snapshot.cost = estimate_cost(stats.messages, COST_PER_MESSAGE_USD)
    return snapshot


def merge_remote(local: UsageSnapshot, remote: UsageSnapshot) -> UsageSnapshot:
    """Remote windows and plan override the session-derived ones."""
    merged = copy.copy(local)
    merged.windows = {**local.windows, **remote.windows}
    merged.plan_tier = remote.plan_tier or local.plan_tier
    merged.produced_at = remote.produced_at
    merged.source = f"{local.source}+{remote.source}"
    merged.provenance = Provenance.MEASURED
    return merged


# =============================================================================
# PROVIDER
# =============================================================================


class CodexProvider(UsageProvider):
    kind = ProviderKind.CODEX

    def __init__(self, credential_source, codex_home: Union[str, Path]):
        super().__init__(credential_source)
        self.codex_home = Path(codex_home).expanduser()

    @property
    def sessions_dir(self) -> Path:
        return self.codex_home / "sessions"

    @property
    def config_path(self) -> Path:
        return self.codex_home / "config.toml"

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    def parse_credentials(
        self, document: Dict[str, Any], source_key: str
    ) -> Optional[Credentials]:
        envelope = None
        payload = document
        tokens = document.get(ENVELOPE)
        if isinstance(tokens, dict) and first_string(tokens, ("access_token",)):
            envelope = ENVELOPE
            payload = tokens

        access_token = first_string(
            payload, ("access_token", "accessToken", "token", "OPENAI_API_KEY")
        )
        if not access_token:
            return None

        claims = decode_jwt_claims(access_token)
        auth_claim = claims.get(JWT_AUTH_CLAIM)
        account_id = first_string(payload, ("account_id",))
        if account_id is None and isinstance(auth_claim, dict):
            account_id = auth_claim.get("chatgpt_account_id") or auth_claim.get(
                "account_id"
            )

        return Credentials(
            provider=self.kind,
            access_token=access_token,
            refresh_token=first_string(payload, ("refresh_token", "refreshToken")),
            expires_at=parse_epoch(claims.get("exp")),
            base_url=first_string(document, ("api_base_url", "base_url", "baseURL")),
            account_id=account_id,
            source_key=source_key,
            envelope=envelope,
            raw=document,
        )

    def serialize_credentials(self, creds: Credentials) -> Dict[str, Any]:
        document = copy.deepcopy(creds.raw) if creds.raw else {}
        if creds.envelope or not document:
            payload = document.setdefault(creds.envelope or ENVELOPE, {})
        else:
            payload = document
        payload["access_token"] = creds.access_token
        if creds.refresh_token:
            payload["refresh_token"] = creds.refresh_token
        if creds.account_id:
            payload["account_id"] = creds.account_id
        document["last_refresh"] = datetime.now(timezone.utc).isoformat()
        return document

    async def refresh_credentials(
        self, creds: Credentials, client: httpx.AsyncClient
    ) -> Credentials:
        data = await post_token_grant(
            client,
            TOKEN_URL,
            self.name,
            form={
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token or "",
                "client_id": CLIENT_ID,
            },
        )
        access_token = data["access_token"]
        claims = decode_jwt_claims(access_token)
        expires_at = parse_epoch(claims.get("exp"))
        if expires_at is None and isinstance(data.get("expires_in"), (int, float)):
            expires_at = time.time() + data["expires_in"]

        fresh = creds.with_tokens(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
        )
        auth_claim = claims.get(JWT_AUTH_CLAIM)
        if isinstance(auth_claim, dict) and auth_claim.get("chatgpt_account_id"):
            fresh.account_id = auth_claim["chatgpt_account_id"]

        raw = copy.deepcopy(creds.raw)
        if isinstance(data.get("id_token"), str) and isinstance(raw.get(ENVELOPE), dict):
            raw[ENVELOPE]["id_token"] = data["id_token"]
        fresh.raw = raw
        return fresh

    # =========================================================================
    # USAGE
    # =========================================================================

    async def base_url_candidates(self, creds: Credentials) -> List[str]:
        """Credential base, then config.toml overrides, then the defaults."""
        overrides = parse_config_overrides(await read_config_text(self.config_path))
        return dedupe(
            [
                creds.base_url,
                *(overrides.get(key) for key in CONFIG_OVERRIDE_KEYS),
                *DEFAULT_BASE_URLS,
            ]
        )

    async def fetch_usage(self, creds: Credentials, ctx: FetchContext) -> UsageSnapshot:
        urls = []
        for base in await self.base_url_candidates(creds):
            try:
                paths = usage_paths_for(base)
            except httpx.InvalidURL:
                paths = API_PATHS
            urls.extend(join_url(base, path) for path in paths)

        headers = {
            "Authorization": f"Bearer {creds.access_token}",
            "Accept": "application/json",
            "User-Agent": "codex-cli",
        }
        if creds.account_id:
            headers["ChatGPT-Account-Id"] = creds.account_id

        return await probe_candidates(
            ctx.http,
            urls,
            headers,
            lambda data: parse_remote_payload(data, ctx.now()),
            self.name,
        )

    async def collect(self, ctx: FetchContext) -> UsageSnapshot:
        now = ctx.now()
        stats = await scan_sessions(self.sessions_dir, now=now)
        config_text = await read_config_text(self.config_path)
        local = build_session_snapshot(stats, now, config_text)

        try:
            remote = await self.fetch_with_credentials(ctx)
        except (ProbeError, CredentialError, httpx.HTTPError) as e:
            lib_logger.info(
                f"{self.name} remote usage unavailable ({e}), using session logs"
            )
            return local

        lib_logger.debug(f"{self.name} usage merged from session logs and remote endpoint")
        return merge_remote(local, remote)
