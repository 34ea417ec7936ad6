# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the usage core.

This module contains the dataclasses shared by the credential store, the
session log scanner, the provider probes and the refresh orchestrator.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional


# =============================================================================
# ENUMS
# =============================================================================


class ProviderKind(str, Enum):
    """Supported subscription providers."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"

    @property
    def display_name(self) -> str:
        return {
            ProviderKind.CLAUDE: "Claude",
            ProviderKind.CODEX: "Codex",
            ProviderKind.GEMINI: "Gemini",
        }[self]


class Provenance(str, Enum):
    """Whether a number came from the provider or from a local heuristic."""

    MEASURED = "measured"
    ESTIMATED = "estimated"


class ProviderStatus(str, Enum):
    """Health of a provider's displayed snapshot."""

    PENDING = "pending"  # Placeholder, no cycle finished yet
    OK = "ok"
    STALE = "stale"  # Last cycle failed, previous snapshot kept
    NEEDS_REAUTH = "needs_reauth"  # Refresh exhausted, user must log in again


# Window names used by every provider
PRIMARY = "primary"
SECONDARY = "secondary"

# Default window lengths when a payload omits them
DEFAULT_PRIMARY_WINDOW_MINUTES = 300
DEFAULT_SECONDARY_WINDOW_MINUTES = 10080


# =============================================================================
# CREDENTIALS
# =============================================================================


@dataclass
class Credentials:
    """
    Normalized OAuth credentials for one provider identity.

    ``raw`` keeps the whole stored document exactly as it was read so that a
    write-back can preserve fields this module does not understand.
    ``envelope`` is the wrapper key the payload was nested under, or None when
    it was stored flat.
    """

    provider: ProviderKind
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[float] = None  # Unix seconds
    scopes: FrozenSet[str] = frozenset()
    plan_hint: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = field(default=None, repr=False)
    base_url: Optional[str] = None
    account_id: Optional[str] = None
    source_key: Optional[str] = field(default=None, compare=False)
    envelope: Optional[str] = field(default=None, compare=False)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    def with_tokens(
        self,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[float],
        scopes: Optional[FrozenSet[str]] = None,
    ) -> "Credentials":
        """Return a copy carrying freshly issued tokens."""
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
            scopes=self.scopes if scopes is None else scopes,
            raw=dict(self.raw),
        )


# =============================================================================
# SNAPSHOT TYPES
# =============================================================================


@dataclass
class UsageWindow:
    """One rolling-limit window."""

    name: str
    used_percent: float
    resets_at: Optional[float] = None  # Unix seconds; None means unknown
    window_minutes: Optional[int] = None

    @property
    def display_percent(self) -> float:
        """Utilization clamped into 0..100 for rendering."""
        return max(0.0, min(100.0, self.used_percent))

    def seconds_until_reset(self, now: Optional[float] = None) -> Optional[float]:
        if self.resets_at is None:
            return None
        now = time.time() if now is None else now
        return max(0.0, self.resets_at - now)


@dataclass
class TokenCounters:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    messages: int = 0
    provenance: Provenance = Provenance.MEASURED


@dataclass
class CostEstimate:
    amount: float
    currency: str = "USD"
    provenance: Provenance = Provenance.ESTIMATED
    limit: Optional[float] = None


@dataclass
class UsageSnapshot:
    """
    Normalized per-provider usage result.

    By convention the ``primary`` window is the short one and ``secondary``
    the long one. Providers may add extra named windows (e.g. a per-model
    seven day window).
    """

    provider: ProviderKind
    windows: Dict[str, UsageWindow] = field(default_factory=dict)
    plan_tier: Optional[str] = None
    tokens: TokenCounters = field(default_factory=TokenCounters)
    cost: Optional[CostEstimate] = None
    produced_at: float = field(default_factory=time.time)
    source: str = ""
    provenance: Provenance = Provenance.MEASURED
    is_placeholder: bool = False

    @property
    def primary(self) -> Optional[UsageWindow]:
        return self.windows.get(PRIMARY)

    @property
    def secondary(self) -> Optional[UsageWindow]:
        return self.windows.get(SECONDARY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "plan_tier": self.plan_tier,
            "windows": {
                name: {
                    "used_percent": w.used_percent,
                    "resets_at": w.resets_at,
                    "window_minutes": w.window_minutes,
                }
                for name, w in self.windows.items()
            },
            "tokens": {
                "input": self.tokens.input_tokens,
                "output": self.tokens.output_tokens,
                "total": self.tokens.total_tokens,
                "messages": self.tokens.messages,
                "provenance": self.tokens.provenance.value,
            },
            "cost": (
                {
                    "amount": self.cost.amount,
                    "currency": self.cost.currency,
                    "provenance": self.cost.provenance.value,
                    "limit": self.cost.limit,
                }
                if self.cost
                else None
            ),
            "produced_at": self.produced_at,
            "source": self.source,
            "provenance": self.provenance.value,
            "placeholder": self.is_placeholder,
        }


# =============================================================================
# SESSION LOG TYPES
# =============================================================================


@dataclass
class RateLimitFields:
    """Rate-limit sub-fields for one window as read from a session log."""

    used_percent: Optional[float] = None
    resets_at: Optional[float] = None
    window_minutes: Optional[int] = None

    def merge(self, newer: "RateLimitFields") -> "RateLimitFields":
        """Overlay fields present in ``newer`` on top of this one."""
        return RateLimitFields(
            used_percent=(
                newer.used_percent
                if newer.used_percent is not None
                else self.used_percent
            ),
            resets_at=newer.resets_at if newer.resets_at is not None else self.resets_at,
            window_minutes=(
                newer.window_minutes
                if newer.window_minutes is not None
                else self.window_minutes
            ),
        )

    @property
    def is_empty(self) -> bool:
        return (
            self.used_percent is None
            and self.resets_at is None
            and self.window_minutes is None
        )


@dataclass
class SessionData:
    """Usage folded out of a single session log file."""

    messages: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    tokens_estimated: bool = False
    primary: RateLimitFields = field(default_factory=RateLimitFields)
    secondary: RateLimitFields = field(default_factory=RateLimitFields)
    plan_type: Optional[str] = None


@dataclass
class SessionStats:
    """Usage folded across every recent session log file."""

    files: int = 0
    messages: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    tokens_estimated: bool = False
    primary: RateLimitFields = field(default_factory=RateLimitFields)
    secondary: RateLimitFields = field(default_factory=RateLimitFields)
    plan_type: Optional[str] = None
    directory_found: bool = True


# =============================================================================
# CONFIGURATION / ORCHESTRATION TYPES
# =============================================================================


@dataclass(frozen=True)
class ProviderConfig:
    """Read-only provider settings handed to the core by the config layer."""

    provider: ProviderKind
    enabled: bool = True
    interval_seconds: int = 300
    secret_refs: Mapping[str, str] = field(default_factory=dict)


@dataclass
class ProviderState:
    """What consumers see for one provider."""

    provider: ProviderKind
    snapshot: UsageSnapshot
    status: ProviderStatus = ProviderStatus.PENDING
    error: Optional[str] = None
    last_success_at: Optional[float] = None

    @property
    def is_stale(self) -> bool:
        return self.status in (ProviderStatus.STALE, ProviderStatus.NEEDS_REAUTH)


@dataclass
class CycleResult:
    """Outcome of one refresh cycle: provider -> snapshot or exception."""

    started_at: float
    finished_at: float
    outcomes: Dict[ProviderKind, Any] = field(default_factory=dict)
    skipped: bool = False

    @property
    def successes(self) -> Dict[ProviderKind, UsageSnapshot]:
        return {
            kind: value
            for kind, value in self.outcomes.items()
            if isinstance(value, UsageSnapshot)
        }

    @property
    def failures(self) -> Dict[ProviderKind, BaseException]:
        return {
            kind: value
            for kind, value in self.outcomes.items()
            if isinstance(value, BaseException)
        }

    def error(self):
        """Return an aggregated OrchestrationError, or None if nothing failed."""
        from .errors import OrchestrationError

        failures = self.failures
        if not failures:
            return None
        return OrchestrationError(list(failures.items()))


@dataclass
class HistoryEntry:
    provider: ProviderKind
    timestamp: float
    primary_percent: Optional[float] = None
    secondary_percent: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider": self.provider.value,
            "timestamp": self.timestamp,
            "primary_percent": self.primary_percent,
            "secondary_percent": self.secondary_percent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryEntry":
        return cls(
            provider=ProviderKind(data["provider"]),
            timestamp=float(data["timestamp"]),
            primary_percent=data.get("primary_percent"),
            secondary_percent=data.get("secondary_percent"),
        )


