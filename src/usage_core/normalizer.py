# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Pure mapping helpers shared by every provider.

Nothing in this module performs I/O. Times are Unix seconds; ``now`` is
always passed in so that rollover math is deterministic under test.
"""

import math
import re
from datetime import datetime, timezone
from typing import Any, Optional, Tuple

from .types import (
    CostEstimate,
    Provenance,
    ProviderKind,
    TokenCounters,
    UsageSnapshot,
    UsageWindow,
)


# =============================================================================
# ESTIMATE CONSTANTS
# =============================================================================

# Used when a session log counted turns but never reported token totals
TOKENS_PER_MESSAGE_ESTIMATE = 2000
INPUT_TOKEN_SHARE = 0.3

# Epoch values at or above this are milliseconds
EPOCH_MILLIS_THRESHOLD = 10_000_000_000

PLAN_KEYWORDS = (
    ("max", "Max"),
    ("enterprise", "Enterprise"),
    ("team", "Team"),
    ("pro", "Pro"),
    ("free", "Free"),
)

_FRACTION_DIGITS = re.compile(r"(\.\d{6})\d+")


# =============================================================================
# PERCENT / WINDOW MATH
# =============================================================================


def clamp_percent(value: Optional[float]) -> float:
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return 0.0
    return max(0.0, min(100.0, float(value)))


def next_reset_after(reset_at: float, window_minutes: int, now: float) -> float:
    """
    Smallest ``reset_at + k * window`` (k >= 1) strictly after ``now``.

    A reset already in the future is returned unchanged.
    """
    if reset_at > now:
        return reset_at
    window = window_minutes * 60
    if window <= 0:
        return reset_at
    k = math.floor((now - reset_at) / window) + 1
    return reset_at + k * window


def roll_window(
    name: str,
    used_percent: Optional[float],
    resets_at: Optional[float],
    window_minutes: Optional[int],
    default_window_minutes: int,
    now: float,
) -> UsageWindow:
    """
    Build a window, rolling it forward when its reset is already past.

    A window whose reset lies in the past has started over, so it reports 0%
    and the next boundary instead of the stale figure.
    """
    minutes = window_minutes or default_window_minutes
    percent = float(used_percent or 0.0)
    if resets_at is not None and resets_at <= now:
        resets_at = next_reset_after(resets_at, minutes, now)
        percent = 0.0
    return UsageWindow(
        name=name,
        used_percent=percent,
        resets_at=resets_at,
        window_minutes=minutes,
    )


def headline_percent(snapshot: Optional[UsageSnapshot]) -> Optional[float]:
    """The single number for threshold checks: primary, else secondary."""
    if snapshot is None:
        return None
    window = snapshot.primary or snapshot.secondary
    return window.used_percent if window else None


# =============================================================================
# TIMESTAMP PARSING
# =============================================================================


def parse_epoch(value: Any) -> Optional[float]:
    """Epoch seconds from an int/float/numeric string, detecting milliseconds."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or number <= 0:
        return None
    if number >= EPOCH_MILLIS_THRESHOLD:
        number /= 1000.0
    return number


def parse_iso_timestamp(value: Any) -> Optional[float]:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip().replace("Z", "+00:00")
    # fromisoformat rejects more than 6 fractional digits
    text = _FRACTION_DIGITS.sub(r"\1", text)
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def parse_reset_timestamp(value: Any) -> Optional[float]:
    """Accepts epoch seconds, epoch milliseconds, or an ISO-8601 string."""
    epoch = parse_epoch(value)
    if epoch is not None:
        return epoch
    return parse_iso_timestamp(value)


# =============================================================================
# PLAN TIERS
# =============================================================================


def normalize_plan_tier(raw: Optional[str]) -> Optional[str]:
    """
    Map a freeform tier string onto a display label.

    ``"default_claude_max_5x"`` -> ``"Max"``; unknown strings fall back to
    their last ``_`` segment, titlecased (``"foo_bar_custom"`` -> ``"Custom"``).
    """
    if not raw or not raw.strip():
        return None
    lowered = raw.strip().lower()
    for keyword, label in PLAN_KEYWORDS:
        if keyword in lowered:
            return label
    segments = [s for s in lowered.split("_") if s]
    return segments[-1].title() if segments else None


# =============================================================================
# ESTIMATES
# =============================================================================


def estimate_tokens_from_messages(messages: int) -> Tuple[int, int, int]:
    """(input, output, total) for a log that counted turns but no tokens."""
    total = messages * TOKENS_PER_MESSAGE_ESTIMATE
    input_tokens = round(total * INPUT_TOKEN_SHARE)
    return input_tokens, total - input_tokens, total


def estimate_cost(
    units: float, rate: float, currency: str = "USD"
) -> CostEstimate:
    """cost = units x fixed rate, flagged as an estimate."""
    return CostEstimate(
        amount=round(units * rate, 4),
        currency=currency,
        provenance=Provenance.ESTIMATED,
    )


def placeholder_snapshot(provider: ProviderKind, now: Optional[float] = None) -> UsageSnapshot:
    """Zero-usage stand-in shown before the first successful fetch."""
    snapshot = UsageSnapshot(
        provider=provider,
        tokens=TokenCounters(provenance=Provenance.ESTIMATED),
        source="placeholder",
        provenance=Provenance.ESTIMATED,
        is_placeholder=True,
    )
    if now is not None:
        snapshot.produced_at = now
    return snapshot
