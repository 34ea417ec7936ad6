# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

# src/usage_core/providers/gemini_provider.py

"""
Gemini CLI quota.

Credentials are the CLI's ``~/.gemini/oauth_creds.json``. Quota comes from
the Code Assist ``retrieveUserQuota`` call against the user's auto-created
``gen-lang-client-*`` Cloud project. Pro-model buckets feed the primary
window and Flash/Lite buckets the secondary one, each reporting its most
depleted bucket.
"""

import asyncio
import copy
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from ..client_discovery import ClientCredentials, discover_client_credentials
from ..errors import ProbeError, ProbeFailure, RefreshError, RefreshFailure
from ..normalizer import parse_epoch, parse_iso_timestamp, roll_window
from ..types import (
    PRIMARY,
    SECONDARY,
    Credentials,
    Provenance,
    ProviderKind,
    TokenCounters,
    UsageSnapshot,
)
from .provider_interface import USER_AGENT, FetchContext, UsageProvider
from .utilities.oauth_helpers import first_string, parse_scopes, post_token_grant

lib_logger = logging.getLogger("usage_core")


# =============================================================================
# CONSTANTS
# =============================================================================

TOKEN_URL = "https://oauth2.googleapis.com/token"
PROJECTS_URL = "https://cloudresourcemanager.googleapis.com/v1/projects?pageSize=50"
CODE_ASSIST_ENDPOINT = "https://cloudcode-pa.googleapis.com/v1internal"
QUOTA_URL = f"{CODE_ASSIST_ENDPOINT}:retrieveUserQuota"

PROJECT_PREFIX = "gen-lang-client"
VERTEX_SUFFIX = "_vertex"

# Refresh this long before the recorded expiry
EXPIRY_SKEW_SECONDS = 60

# Quota buckets are daily
DAILY_WINDOW_MINUTES = 24 * 60

PAID_TIER_KEYWORDS = ("premium", "pro", "standard")


# =============================================================================
# PAYLOAD PARSING
# =============================================================================


def pick_project_id(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    for project in data.get("projects") or []:
        if not isinstance(project, dict):
            continue
        project_id = project.get("projectId")
        if isinstance(project_id, str) and project_id.startswith(PROJECT_PREFIX):
            return project_id
    return None


def tier_label(data: Dict[str, Any], has_pro: bool) -> str:
    raw = data.get("tier") or data.get("userTierId")
    if isinstance(raw, dict):
        raw = raw.get("id") or raw.get("name")
    if isinstance(raw, str) and raw:
        lowered = raw.lower()
        return "Pro" if any(k in lowered for k in PAID_TIER_KEYWORDS) else "Free"
    return "Pro" if has_pro else "Free"


def parse_quota_payload(data: Any, now: float) -> Optional[UsageSnapshot]:
    """
    Reduce quota buckets to a primary (Pro) and secondary (Flash) window.

    Each window reports ``(1 - remainingFraction) * 100`` of its most
    depleted bucket. Vertex duplicates are ignored.
    """
    if not isinstance(data, dict) or not isinstance(data.get("buckets"), list):
        return None

    lowest: Dict[str, Any] = {}
    for bucket in data["buckets"]:
        if not isinstance(bucket, dict):
            continue
        model_id = str(bucket.get("modelId") or "").lower()
        if not model_id or model_id.endswith(VERTEX_SUFFIX):
            continue
        fraction = bucket.get("remainingFraction")
        try:
            fraction = 1.0 if fraction is None else float(fraction)
        except (TypeError, ValueError):
            continue
        if "pro" in model_id:
            name = PRIMARY
        elif "flash" in model_id or "lite" in model_id:
            name = SECONDARY
        else:
            continue
        if name not in lowest or fraction < lowest[name][0]:
            lowest[name] = (fraction, parse_iso_timestamp(bucket.get("resetTime")))

    snapshot = UsageSnapshot(
        provider=ProviderKind.GEMINI,
        plan_tier=tier_label(data, PRIMARY in lowest),
        produced_at=now,
        source="retrieve_user_quota",
        tokens=TokenCounters(provenance=Provenance.ESTIMATED),
    )
    for name, (fraction, reset) in lowest.items():
        snapshot.windows[name] = roll_window(
            name,
            (1.0 - fraction) * 100.0,
            reset,
            None,
            DAILY_WINDOW_MINUTES,
            now,
        )
    return snapshot


# =============================================================================
# PROVIDER
# =============================================================================


class GeminiProvider(UsageProvider):
    kind = ProviderKind.GEMINI
    # A credential without expiry is refreshed before use
    missing_expiry_means_expired = True
    expiry_skew_seconds = EXPIRY_SKEW_SECONDS

    def __init__(
        self,
        credential_source,
        client_discovery: Callable[
            [], Optional[ClientCredentials]
        ] = discover_client_credentials,
    ):
        super().__init__(credential_source)
        self._client_discovery = client_discovery
        self._project_id: Optional[str] = None

    # =========================================================================
    # CREDENTIALS
    # =========================================================================

    def parse_credentials(
        self, document: Dict[str, Any], source_key: str
    ) -> Optional[Credentials]:
        access_token = first_string(document, ("access_token",))
        if not access_token:
            return None

        expires_at = None
        for key in ("expiry_date", "expires_at"):
            expires_at = parse_epoch(document.get(key))
            if expires_at is not None:
                break
        if expires_at is None:
            expires_at = parse_iso_timestamp(document.get("token_expiry"))

        return Credentials(
            provider=self.kind,
            access_token=access_token,
            refresh_token=first_string(document, ("refresh_token",)),
            expires_at=expires_at,
            scopes=parse_scopes(document.get("scope")),
            client_id=first_string(document, ("client_id",)),
            client_secret=first_string(document, ("client_secret",)),
            source_key=source_key,
            raw=document,
        )

    def serialize_credentials(self, creds: Credentials) -> Dict[str, Any]:
        """Write the new token back using the expiry field style already on disk."""
        document = copy.deepcopy(creds.raw) if creds.raw else {}
        document["access_token"] = creds.access_token
        if creds.refresh_token:
            document["refresh_token"] = creds.refresh_token
        if creds.expires_at is not None:
            if "token_expiry" in document and "expiry_date" not in document:
                document["token_expiry"] = datetime.fromtimestamp(
                    creds.expires_at, tz=timezone.utc
                ).isoformat()
            elif "expires_at" in document and "expiry_date" not in document:
                document["expires_at"] = int(creds.expires_at)
            else:
                document["expiry_date"] = int(creds.expires_at * 1000)
        return document

    async def _client_pair(self, creds: Credentials) -> ClientCredentials:
        if creds.client_id:
            return ClientCredentials(creds.client_id, creds.client_secret)
        # Discovery walks PATH and reads the CLI bundle from disk
        discovered = await asyncio.to_thread(self._client_discovery)
        if discovered is None:
            raise RefreshError(
                RefreshFailure.NO_CREDENTIALS,
                message="no OAuth client id in credentials or installed CLI",
                provider=self.kind.value,
            )
        return discovered

    async def refresh_credentials(
        self, creds: Credentials, client: httpx.AsyncClient
    ) -> Credentials:
        pair = await self._client_pair(creds)
        form = {
            "grant_type": "refresh_token",
            "refresh_token": creds.refresh_token or "",
            "client_id": pair.client_id,
        }
        if pair.client_secret:
            form["client_secret"] = pair.client_secret
        data = await post_token_grant(client, TOKEN_URL, self.name, form=form)

        expires_in = data.get("expires_in")
        expires_at = (
            time.time() + float(expires_in)
            if isinstance(expires_in, (int, float))
            else None
        )
        return creds.with_tokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at,
        )

    # =========================================================================
    # USAGE
    # =========================================================================

    def _headers(self, creds: Credentials) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {creds.access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }

    async def _request_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        headers: Dict[str, str],
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        try:
            response = await client.request(method, url, headers=headers, json=json_body)
        except httpx.HTTPError as e:
            raise ProbeError(
                ProbeFailure.HTTP_ERROR, message=f"{type(e).__name__}: {e}"
            )
        if response.status_code >= 400:
            raise ProbeError.from_response(response)
        try:
            return response.json()
        except ValueError:
            raise ProbeError(
                ProbeFailure.INVALID_RESPONSE, message=f"{url} returned non-JSON"
            )

    async def discover_project(self, creds: Credentials, ctx: FetchContext) -> str:
        if self._project_id:
            return self._project_id
        data = await self._request_json(ctx.http, "GET", PROJECTS_URL, self._headers(creds))
        project_id = pick_project_id(data)
        if project_id is None:
            raise ProbeError(
                ProbeFailure.NO_DATA, 404, "No Gemini project found"
            )
        lib_logger.debug(f"Using Gemini project '{project_id}'")
        self._project_id = project_id
        return project_id

    async def fetch_usage(self, creds: Credentials, ctx: FetchContext) -> UsageSnapshot:
        project_id = await self.discover_project(creds, ctx)
        data = await self._request_json(
            ctx.http,
            "POST",
            QUOTA_URL,
            self._headers(creds),
            json_body={"project": project_id},
        )
        snapshot = parse_quota_payload(data, ctx.now())
        if snapshot is None:
            raise ProbeError(ProbeFailure.INVALID_RESPONSE, message="quota response has no buckets")
        return snapshot
