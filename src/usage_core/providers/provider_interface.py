# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from ..cooldown import ProbeCooldownCache
from ..credential_sources import CredentialSource
from ..credential_store import CredentialStore
from ..errors import (
    CredentialError,
    CredentialFailure,
    ProbeError,
    ReauthRequiredError,
    RefreshError,
    RefreshFailure,
)
from ..types import Credentials, ProviderKind, UsageSnapshot

lib_logger = logging.getLogger("usage_core")

USER_AGENT = "usage-bar/1.0"


@dataclass
class FetchContext:
    """Shared collaborators handed to every provider fetch of a cycle."""

    credentials: CredentialStore
    http: httpx.AsyncClient
    cooldowns: ProbeCooldownCache
    clock: Callable[[], float] = field(default=time.time)

    def now(self) -> float:
        return self.clock()


class UsageProvider(ABC):
    """
    One concrete provider strategy: how its credentials are stored and
    refreshed, and how its usage is probed and normalized.
    """

    kind: ProviderKind
    # Treat a credential without an expiry as already expired
    missing_expiry_means_expired: bool = False
    expiry_skew_seconds: float = 0.0

    def __init__(self, credential_source: Optional[CredentialSource]):
        self.credential_source = credential_source

    @property
    def name(self) -> str:
        return self.kind.display_name

    @abstractmethod
    def parse_credentials(
        self, document: Dict[str, Any], source_key: str
    ) -> Optional[Credentials]:
        """Normalize a stored document. None when it holds no access token."""

    @abstractmethod
    def serialize_credentials(self, creds: Credentials) -> Dict[str, Any]:
        """Rebuild the stored document in the shape it was read."""

    @abstractmethod
    async def refresh_credentials(
        self, creds: Credentials, client: httpx.AsyncClient
    ) -> Credentials:
        """POST the refresh grant. Raises RefreshError."""

    @abstractmethod
    async def fetch_usage(self, creds: Credentials, ctx: FetchContext) -> UsageSnapshot:
        """Probe the remote for usage. Raises ProbeError."""

    async def collect(self, ctx: FetchContext) -> UsageSnapshot:
        """Full fetch path for one cycle."""
        return await self.fetch_with_credentials(ctx)

    # =========================================================================
    # CREDENTIAL-AWARE FETCH
    # =========================================================================

    async def fetch_with_credentials(self, ctx: FetchContext) -> UsageSnapshot:
        """
        Look up credentials, refresh when expired, probe. An unauthorized
        probe gets exactly one invalidate-refresh-retry before the provider
        is reported as needing re-authentication.
        """
        store = ctx.credentials
        creds = await store.get_credentials(self.kind)
        if creds is None:
            raise CredentialError(
                CredentialFailure.NOT_FOUND,
                provider=self.kind.value,
                message="no credentials found",
            )
        if store.is_expired(creds):
            lib_logger.info(f"{self.name} token expired, refreshing before probe")
            creds = await self._refresh(ctx)

        try:
            return await self.fetch_usage(creds, ctx)
        except ProbeError as e:
            if not e.is_unauthorized:
                raise
            lib_logger.info(f"{self.name} rejected the access token, refreshing once")

        store.invalidate_cache(self.kind)
        creds = await self._refresh(ctx)
        try:
            return await self.fetch_usage(creds, ctx)
        except ProbeError as e:
            if e.is_unauthorized:
                raise ReauthRequiredError(
                    provider=self.kind.value,
                    message="token still rejected after refresh",
                ) from e
            raise

    async def _refresh(self, ctx: FetchContext) -> Credentials:
        try:
            return await ctx.credentials.refresh(self.kind)
        except RefreshError as e:
            if e.kind == RefreshFailure.NO_REFRESH_TOKEN or e.is_auth_rejection:
                raise ReauthRequiredError(
                    provider=self.kind.value, message=str(e)
                ) from e
            raise
