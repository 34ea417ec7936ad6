# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/usage_core/providers/claude_provider.py

"""
Claude subscription usage.

Credentials are the Claude CLI's OAuth entry (keychain item or
``~/.claude/.credentials.json``), usually wrapped in a ``claudeAiOauth``
envelope. Usage comes from the OAuth usage endpoint; when that cannot be
reached, a one-token inference request is sent purely to read the unified
rate-limit headers off the response, at most once per cooldown window.
"""

import copy
import logging
import os
import time
from typing import Any, Dict, List, Mapping, Optional

import httpx

from ..errors import ProbeError, ProbeFailure, RefreshError
from ..normalizer import (
    clamp_percent,
    normalize_plan_tier,
    parse_epoch,
    parse_iso_timestamp,
    parse_reset_timestamp,
    roll_window,
)
from ..types import (
    DEFAULT_PRIMARY_WINDOW_MINUTES,
    DEFAULT_SECONDARY_WINDOW_MINUTES,
    PRIMARY,
    SECONDARY,
    CostEstimate,
    Credentials,
    Provenance,
    ProviderKind,
    TokenCounters,
    UsageSnapshot,
)
from .provider_interface import USER_AGENT, FetchContext, UsageProvider
from .utilities.candidates import dedupe, join_url, probe_candidates
from .utilities.oauth_helpers import first_string, parse_scopes, post_token_grant

lib_logger = logging.getLogger("usage_core")


# =============================================================================
# CONSTANTS
# =============================================================================

ENVELOPE = "claudeAiOauth"

# Public client id of the Claude CLI
CLIENT_ID = os.getenv("CLAUDE_CLIENT_ID", "9d1c250a-e61b-44d9-88ed-5944d1962f5e")
TOKEN_URL = "https://console.anthropic.com/v1/oauth/token"
DEFAULT_EXPIRES_IN = 28800

# Scopes asked for on refresh in addition to whatever was granted
BROADENED_SCOPES = frozenset({"user:profile", "user:inference"})

API_BASE_URL = "https://api.anthropic.com"
USAGE_PATHS = ("/api/oauth/usage",)
OAUTH_BETA = "oauth-2025-04-20"

MESSAGES_URL = f"{API_BASE_URL}/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
PROBE_MODEL = os.getenv("CLAUDE_PROBE_MODEL", "claude-sonnet-4-20250514")
PROBE_COOLDOWN_KEY = "claude:headers"

# Usage payload window -> (snapshot window name, default length in minutes)
USAGE_WINDOWS = (
    ("five_hour", PRIMARY, DEFAULT_PRIMARY_WINDOW_MINUTES),
    ("seven_day", SECONDARY, DEFAULT_SECONDARY_WINDOW_MINUTES),
    ("seven_day_opus", "seven_day_opus", DEFAULT_SECONDARY_WINDOW_MINUTES),
    ("seven_day_sonnet", "seven_day_sonnet", DEFAULT_SECONDARY_WINDOW_MINUTES),
    ("seven_day_oauth_apps", "seven_day_oauth_apps", DEFAULT_SECONDARY_WINDOW_MINUTES),
)

# Unified rate-limit headers. The current names report fractions with epoch
# resets; the older names report percentages with ISO resets.
HEADER_PREFIX = "anthropic-ratelimit-unified-"
HEADER_WINDOWS = (
    (PRIMARY, "5h", "five-minute", DEFAULT_PRIMARY_WINDOW_MINUTES),
    (SECONDARY, "7d", "daily", DEFAULT_SECONDARY_WINDOW_MINUTES),
)

# Estimated tokens per full window, for the token column only
TOKENS_PER_FULL_WINDOW = 1_000_000


# =============================================================================
# PAYLOAD PARSING
# =============================================================================


def _float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def estimated_tokens(snapshot: UsageSnapshot) -> TokenCounters:
    window = snapshot.primary or snapshot.secondary
    percent = clamp_percent(window.used_percent) if window else 0.0
    return TokenCounters(
        total_tokens=int(TOKENS_PER_FULL_WINDOW * percent / 100),
        provenance=Provenance.ESTIMATED,
    )


def parse_usage_payload(
    data: Any, now: float, plan_hint: Optional[str] = None
) -> Optional[UsageSnapshot]:
    """
    Map the OAuth usage response onto a snapshot.

    Returns None when neither the five hour nor the seven day window is
    present, so the caller moves on to the next candidate.
    """
    if not isinstance(data, dict):
        return None
    if not isinstance(data.get("five_hour"), dict) and not isinstance(
        data.get("seven_day"), dict
    ):
        return None

    snapshot = UsageSnapshot(
        provider=ProviderKind.CLAUDE,
        plan_tier=normalize_plan_tier(plan_hint),
        produced_at=now,
        source="oauth_usage",
    )
    for key, name, default_minutes in USAGE_WINDOWS:
        window = data.get(key)
        if not isinstance(window, dict):
            continue
        utilization = _float(window.get("utilization"))
        if utilization is None:
            continue
        snapshot.windows[name] = roll_window(
            name,
            utilization,
            parse_iso_timestamp(window.get("resets_at")),
            None,
            default_minutes,
            now,
        )

    extra = data.get("extra_usage")
    if isinstance(extra, dict):
        used_cents = _float(extra.get("credits_used_cents"))
        limit_cents = _float(extra.get("monthly_limit_cents"))
        if used_cents is not None:
            snapshot.cost = CostEstimate(
                amount=used_cents / 100.0,
                limit=limit_cents / 100.0 if limit_cents is not None else None,
                provenance=Provenance.MEASURED,
            )

    snapshot.tokens = estimated_tokens(snapshot)
    return snapshot


def parse_ratelimit_headers(
    headers: Mapping[str, str], now: float, plan_hint: Optional[str] = None
) -> Optional[UsageSnapshot]:
    """Build a snapshot out of unified rate-limit response headers."""
    snapshot = UsageSnapshot(
        provider=ProviderKind.CLAUDE,
        plan_tier=normalize_plan_tier(plan_hint),
        produced_at=now,
        source="ratelimit_headers",
    )
    for name, short, legacy, default_minutes in HEADER_WINDOWS:
        fraction = _float(headers.get(f"{HEADER_PREFIX}{short}-utilization"))
        if fraction is not None:
            percent: Optional[float] = fraction * 100.0
            reset = parse_epoch(headers.get(f"{HEADER_PREFIX}{short}-reset"))
        else:
            percent = _float(headers.get(f"{HEADER_PREFIX}{legacy}-utilization"))
            reset = parse_reset_timestamp(headers.get(f"{HEADER_PREFIX}{legacy}-reset"))
        if percent is None:
            continue
        snapshot.windows[name] = roll_window(
            name, percent, reset, None, default_minutes, now
        )

    if not snapshot.windows:
        return None
    snapshot.tokens = estimated_tokens(snapshot)
    return snapshot


# =============================================================================
# PROVIDER
# =============================================================================


class ClaudeProvider(UsageProvider):
    kind = ProviderKind.CLAUDE

    def __init__(
        self,
        credential_source,
        base_urls: Optional[List[str]] = None,
    ):
        super().__init__(credential_source)
        self.base_urls = base_urls

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    def parse_credentials(
        self, document: Dict[str, Any], source_key: str
    ) -> Optional[Credentials]:
        envelope = None
        payload = document
        if isinstance(document.get(ENVELOPE), dict):
            envelope = ENVELOPE
            payload = document[ENVELOPE]

        access_token = first_string(payload, ("accessToken", "access_token"))
        if not access_token:
            return None

        return Credentials(
            provider=self.kind,
            access_token=access_token,
            refresh_token=first_string(payload, ("refreshToken", "refresh_token")),
            expires_at=parse_reset_timestamp(
                payload.get("expiresAt", payload.get("expires_at"))
            ),
            scopes=parse_scopes(payload.get("scopes", payload.get("scope"))),
            plan_hint=first_string(
                payload,
                (
                    "rateLimitTier",
                    "rate_limit_tier",
                    "subscriptionType",
                    "subscription_type",
                ),
            ),
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

        snake_case = "access_token" in payload
        payload["access_token" if snake_case else "accessToken"] = creds.access_token
        if creds.refresh_token:
            payload["refresh_token" if snake_case else "refreshToken"] = (
                creds.refresh_token
            )
        if creds.expires_at is not None:
            payload["expires_at" if snake_case else "expiresAt"] = int(
                creds.expires_at * 1000
            )
        if creds.scopes:
            payload["scopes"] = sorted(creds.scopes)
        return document

    async def refresh_credentials(
        self, creds: Credentials, client: httpx.AsyncClient
    ) -> Credentials:
        """
        Ask for the granted scopes plus the profile/inference scopes first.
        A 4xx on that request retries once with only the granted scopes.
        """
        granted = frozenset(creds.scopes)
        attempts = [granted | BROADENED_SCOPES]
        if attempts[0] != granted:
            attempts.append(granted)

        last_error = None
        for index, scopes in enumerate(attempts):
            payload = {
                "grant_type": "refresh_token",
                "refresh_token": creds.refresh_token,
                "client_id": CLIENT_ID,
            }
            if scopes:
                payload["scope"] = " ".join(sorted(scopes))
            try:
                data = await post_token_grant(
                    client, TOKEN_URL, self.name, payload=payload
                )
            except RefreshError as e:
                if e.is_auth_rejection and index + 1 < len(attempts):
                    lib_logger.info(
                        f"{self.name} refresh with broadened scope rejected, "
                        f"retrying with the granted scope"
                    )
                    last_error = e
                    continue
                raise

            expires_in = _float(data.get("expires_in")) or DEFAULT_EXPIRES_IN
            granted_now = parse_scopes(data.get("scope")) or scopes
            return creds.with_tokens(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                expires_at=time.time() + expires_in,
                scopes=granted_now,
            )
        raise last_error

    # =========================================================================
    # USAGE
    # =========================================================================

    def _usage_urls(self, creds: Credentials) -> List[str]:
        bases = dedupe(
            [creds.base_url, *(self.base_urls or []), API_BASE_URL]
        )
        return [join_url(base, path) for base in bases for path in USAGE_PATHS]

    async def fetch_usage(self, creds: Credentials, ctx: FetchContext) -> UsageSnapshot:
        headers = {
            "Authorization": f"Bearer {creds.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "anthropic-beta": OAUTH_BETA,
            "User-Agent": USER_AGENT,
        }
        try:
            return await probe_candidates(
                ctx.http,
                self._usage_urls(creds),
                headers,
                lambda data: parse_usage_payload(data, ctx.now(), creds.plan_hint),
                self.name,
            )
        except ProbeError as e:
            if e.is_unauthorized:
                raise
            lib_logger.info(
                f"{self.name} usage endpoint unavailable ({e}), "
                f"falling back to rate-limit headers"
            )
        return await self.probe_headers(creds, ctx)

    async def probe_headers(self, creds: Credentials, ctx: FetchContext) -> UsageSnapshot:
        """One-token request whose only purpose is the rate-limit headers."""
        cached = await ctx.cooldowns.get(PROBE_COOLDOWN_KEY)
        if cached is not None:
            lib_logger.debug(f"{self.name} header probe cooling down, using cached result")
            return cached

        try:
            response = await ctx.http.post(
                MESSAGES_URL,
                headers={
                    "Authorization": f"Bearer {creds.access_token}",
                    "Content-Type": "application/json",
                    "anthropic-version": ANTHROPIC_VERSION,
                    "anthropic-beta": OAUTH_BETA,
                    "User-Agent": USER_AGENT,
                },
                json={
                    "model": PROBE_MODEL,
                    "max_tokens": 1,
                    "messages": [{"role": "user", "content": "."}],
                },
            )
        except httpx.HTTPError as e:
            raise ProbeError(
                ProbeFailure.HTTP_ERROR, message=f"{type(e).__name__}: {e}"
            )

        snapshot = parse_ratelimit_headers(
            response.headers, ctx.now(), creds.plan_hint
        )
        if snapshot is None:
            if response.status_code in (401, 403):
                raise ProbeError(
                    ProbeFailure.UNAUTHORIZED,
                    response.status_code,
                    "no rate-limit headers on auth failure",
                    response=response,
                )
            raise ProbeError(
                ProbeFailure.NO_DATA,
                response.status_code,
                "no rate-limit headers in probe response",
                response=response,
            )

        await ctx.cooldowns.put(PROBE_COOLDOWN_KEY, snapshot)
        return snapshot
