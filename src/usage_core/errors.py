# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Exception taxonomy for the usage core.

Candidate-level failures are recovered where they happen (next endpoint),
provider-level failures are recovered by the orchestrator (prior snapshot
kept, label attached). Nothing here is meant to reach the user as a crash.
"""

import asyncio
from enum import Enum
from typing import List, Optional, Tuple

import httpx


class UsageCoreError(Exception):
    """Base class for every error raised by usage_core."""

    def label(self) -> str:
        return str(self)


# =============================================================================
# CREDENTIAL ERRORS
# =============================================================================


class CredentialFailure(str, Enum):
    NOT_FOUND = "not_found"
    EXPIRED_NO_REFRESH_TOKEN = "expired_no_refresh_token"
    REFRESH_REJECTED = "refresh_rejected"
    REAUTH_REQUIRED = "reauth_required"


class CredentialError(UsageCoreError):
    def __init__(
        self,
        reason: CredentialFailure,
        provider: Optional[str] = None,
        message: str = "",
    ):
        self.reason = reason
        self.provider = provider
        self.message = message
        super().__init__(message or reason.value.replace("_", " "))


class ReauthRequiredError(CredentialError):
    """
    Raised when the token is still rejected after one refresh-and-retry, or
    when the refresh token itself is gone or rejected.

    The only fix is logging in again through the provider's own CLI.
    """

    def __init__(self, provider: Optional[str] = None, message: str = ""):
        super().__init__(
            CredentialFailure.REAUTH_REQUIRED,
            provider=provider,
            message=message or "needs re-authentication",
        )

    def label(self) -> str:
        return "needs re-authentication"


class RefreshFailure(str, Enum):
    NO_CREDENTIALS = "no_credentials"
    NO_REFRESH_TOKEN = "no_refresh_token"
    INVALID_RESPONSE = "invalid_response"
    REFRESH_REJECTED = "refresh_rejected"


class RefreshError(CredentialError):
    def __init__(
        self,
        kind: RefreshFailure,
        status_code: Optional[int] = None,
        message: str = "",
        provider: Optional[str] = None,
    ):
        self.kind = kind
        self.status_code = status_code
        reason = {
            RefreshFailure.NO_CREDENTIALS: CredentialFailure.NOT_FOUND,
            RefreshFailure.NO_REFRESH_TOKEN: CredentialFailure.EXPIRED_NO_REFRESH_TOKEN,
        }.get(kind, CredentialFailure.REFRESH_REJECTED)
        detail = message or kind.value.replace("_", " ")
        if status_code is not None:
            detail = f"HTTP {status_code}: {detail}"
        super().__init__(reason, provider=provider, message=detail)

    @property
    def is_auth_rejection(self) -> bool:
        """True for a 4xx from the token endpoint (the grant itself is bad)."""
        return (
            self.kind == RefreshFailure.REFRESH_REJECTED
            and self.status_code is not None
            and 400 <= self.status_code < 500
        )


# =============================================================================
# PROBE ERRORS
# =============================================================================


class ProbeFailure(str, Enum):
    INVALID_URL = "invalid_url"
    INVALID_RESPONSE = "invalid_response"
    UNAUTHORIZED = "unauthorized"
    NO_DATA = "no_data"
    HTTP_ERROR = "http_error"


class ProbeError(UsageCoreError):
    def __init__(
        self,
        kind: ProbeFailure,
        status_code: Optional[int] = None,
        message: str = "",
        response: Optional[httpx.Response] = None,
    ):
        self.kind = kind
        self.status_code = status_code
        self.message = message
        self.response = response
        detail = message or kind.value.replace("_", " ")
        if status_code is not None:
            detail = f"HTTP {status_code}: {detail}"
        super().__init__(detail)

    @property
    def is_unauthorized(self) -> bool:
        return self.kind == ProbeFailure.UNAUTHORIZED

    @classmethod
    def from_response(cls, response: httpx.Response) -> "ProbeError":
        """Map a non-2xx usage response onto the probe taxonomy."""
        if response.status_code == 401:
            return cls(
                ProbeFailure.UNAUTHORIZED, 401, "token rejected", response=response
            )
        return cls(
            ProbeFailure.HTTP_ERROR,
            response.status_code,
            response.text[:200],
            response=response,
        )


class ScanError(UsageCoreError):
    """A session log file exists but could not be read."""


# =============================================================================
# ORCHESTRATION
# =============================================================================


class OrchestrationError(UsageCoreError):
    """Aggregated provider failures of one refresh cycle."""

    def __init__(self, failures: List[Tuple[object, BaseException]]):
        self.failures = failures
        super().__init__(
            "; ".join(
                f"{getattr(provider, 'display_name', provider)}: {error}"
                for provider, error in failures
            )
        )


def describe_error(error: BaseException) -> str:
    """Short label for the error strings shown next to a provider."""
    if isinstance(error, UsageCoreError):
        return error.label()
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "timed out"
    if isinstance(error, httpx.HTTPError):
        return f"network error: {type(error).__name__}"
    return str(error) or type(error).__name__
