# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential store.

Resolves each provider's usable access token with as few secret-store
touches as possible: one primary lookup, one broadened lookup when the
primary is empty, then the in-memory cache until invalidated.
"""

import asyncio
import json
import logging
import time
from typing import TYPE_CHECKING, Callable, Dict, Mapping, Optional

import httpx

from .credential_sources import RawEntry
from .errors import RefreshError, RefreshFailure
from .secret_store import SecretStoreError
from .types import Credentials, ProviderKind
from .utils.credential_formatter import format_source_for_display, mask_token

if TYPE_CHECKING:
    from .providers.provider_interface import UsageProvider

lib_logger = logging.getLogger("usage_core")


class CredentialStore:
    """
    Per-process cache of provider credentials with refresh and write-back.

    Reads may happen concurrently from several provider tasks. Writes to the
    cache happen only inside a lookup or refresh, under that provider's lock.
    """

    def __init__(
        self,
        providers: Mapping[ProviderKind, "UsageProvider"],
        http_client: httpx.AsyncClient,
        clock: Callable[[], float] = time.time,
    ):
        self._providers = providers
        self._http = http_client
        self._clock = clock
        self._credentials_cache: Dict[ProviderKind, Credentials] = {}
        self._locks: Dict[ProviderKind, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()  # Protects the locks dict

    async def _get_lock(self, provider: ProviderKind) -> asyncio.Lock:
        async with self._locks_lock:
            if provider not in self._locks:
                self._locks[provider] = asyncio.Lock()
            return self._locks[provider]

    def cached(self, provider: ProviderKind) -> Optional[Credentials]:
        return self._credentials_cache.get(provider)

    # =========================================================================
    # LOOKUP
    # =========================================================================

    async def get_credentials(self, provider: ProviderKind) -> Optional[Credentials]:
        """
        Cached credentials if still valid, otherwise one pass over the store.

        Returns None when the provider's CLI has never been logged in. An
        expired cache entry is returned as a last resort so the caller can
        still attempt a refresh with its refresh token.
        """
        cached = self._credentials_cache.get(provider)
        if cached is not None and not self.is_expired(cached):
            return cached

        async with await self._get_lock(provider):
            # Re-check cache after acquiring lock
            cached = self._credentials_cache.get(provider)
            if cached is not None and not self.is_expired(cached):
                return cached

            found = await self._lookup(provider)
            if found is None:
                return cached
            self._credentials_cache[provider] = found
            return found

    async def _lookup(self, provider: ProviderKind) -> Optional[Credentials]:
        backend = self._providers[provider]
        source = backend.credential_source
        if source is None:
            return None

        try:
            entry = await source.read_primary()
        except (SecretStoreError, OSError, UnicodeDecodeError) as e:
            lib_logger.warning(
                f"{provider.display_name} credential lookup failed: {e}"
            )
            entry = None

        creds = self._parse(backend, entry) if entry else None
        if creds is not None:
            return creds

        try:
            candidates = await source.read_broadened()
        except (SecretStoreError, OSError, UnicodeDecodeError) as e:
            lib_logger.warning(
                f"{provider.display_name} broadened credential lookup failed: {e}"
            )
            return None

        for candidate in candidates:
            creds = self._parse(backend, candidate)
            if creds is not None:
                lib_logger.info(
                    f"Using {provider.display_name} credentials from "
                    f"'{format_source_for_display(candidate.key)}'"
                )
                return creds
        lib_logger.debug(f"No {provider.display_name} credentials found")
        return None

    @staticmethod
    def _parse(backend: "UsageProvider", entry: RawEntry) -> Optional[Credentials]:
        try:
            document = json.loads(entry.text)
        except ValueError:
            lib_logger.warning(
                f"Ignoring non-JSON credential entry "
                f"'{format_source_for_display(entry.key)}'"
            )
            return None
        if not isinstance(document, dict):
            return None
        return backend.parse_credentials(document, entry.key)

    # =========================================================================
    # EXPIRY
    # =========================================================================

    def is_expired(self, creds: Credentials, now: Optional[float] = None) -> bool:
        backend = self._providers[creds.provider]
        if creds.expires_at is None:
            return backend.missing_expiry_means_expired
        now = self._clock() if now is None else now
        return now >= creds.expires_at - backend.expiry_skew_seconds

    def will_expire_soon(
        self, creds: Credentials, horizon: float, now: Optional[float] = None
    ) -> bool:
        now = self._clock() if now is None else now
        return self.is_expired(creds, now=now + horizon)

    # =========================================================================
    # REFRESH
    # =========================================================================

    async def refresh(self, provider: ProviderKind) -> Credentials:
        """
        Exchange the refresh token, write the result back, update the cache.

        Raises RefreshError. The cache is left untouched on every failure.
        """
        backend = self._providers[provider]
        async with await self._get_lock(provider):
            creds = self._credentials_cache.get(provider)
            if creds is None:
                creds = await self._lookup(provider)
            if creds is None:
                raise RefreshError(
                    RefreshFailure.NO_CREDENTIALS, provider=provider.value
                )
            if not creds.refresh_token:
                raise RefreshError(
                    RefreshFailure.NO_REFRESH_TOKEN, provider=provider.value
                )

            lib_logger.debug(
                f"Refreshing {provider.display_name} token from "
                f"'{format_source_for_display(creds.source_key)}'..."
            )
            fresh = await backend.refresh_credentials(creds, self._http)

            document = backend.serialize_credentials(fresh)
            fresh.raw = document
            source = backend.credential_source
            if source is not None:
                try:
                    await source.write(fresh.source_key or source.primary_key, document)
                except (SecretStoreError, OSError) as e:
                    # New tokens stay cached even when the write-back fails
                    lib_logger.error(
                        f"Failed to write refreshed {provider.display_name} "
                        f"credentials back: {e}"
                    )

            self._credentials_cache[provider] = fresh
            lib_logger.info(
                f"Refreshed {provider.display_name} access token "
                f"({mask_token(fresh.access_token)})"
            )
            return fresh

    def invalidate_cache(self, provider: ProviderKind) -> None:
        """Forget cached credentials so the next lookup re-reads the store."""
        self._credentials_cache.pop(provider, None)
