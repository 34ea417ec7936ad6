# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Terminal rendering of the orchestrator's state with rich.
"""

import time
from typing import Dict, List, Optional

from rich.console import Console
from rich.table import Table
from rich.text import Text

from usage_core.types import (
    PRIMARY,
    SECONDARY,
    Provenance,
    ProviderKind,
    ProviderState,
    ProviderStatus,
    UsageWindow,
)

# =============================================================================
# DISPLAY CONFIGURATION
# =============================================================================

TABLE_PROVIDER_WIDTH = 8
TABLE_PLAN_WIDTH = 10
TABLE_WINDOW_WIDTH = 30
TABLE_TOKENS_WIDTH = 14
TABLE_COST_WIDTH = 8
BAR_WIDTH = 10

# (label, color) per status
STATUS_DISPLAY = {
    ProviderStatus.PENDING: ("waiting", "dim"),
    ProviderStatus.OK: ("ok", "green"),
    ProviderStatus.STALE: ("stale", "yellow"),
    ProviderStatus.NEEDS_REAUTH: ("needs re-auth", "red"),
}

WINDOW_LABELS = {PRIMARY: "5h", SECONDARY: "7d"}


# =============================================================================
# FORMAT HELPERS
# =============================================================================


def format_tokens(count: int) -> str:
    """Format token count for display (e.g., 125000 -> 125k)."""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    elif count >= 1_000:
        return f"{count / 1_000:.0f}k"
    return str(count)


def format_cost(amount: Optional[float], estimated: bool = False) -> str:
    if amount is None:
        return "-"
    prefix = "~" if estimated else ""
    if 0 < amount < 0.01:
        return f"{prefix}${amount:.4f}"
    return f"{prefix}${amount:.2f}"


def format_time_ago(timestamp: Optional[float], now: Optional[float] = None) -> str:
    """Format timestamp as relative time (e.g., '5 min ago')."""
    if not timestamp:
        return "Never"
    delta = (now or time.time()) - timestamp
    if delta < 60:
        return f"{int(delta)}s ago"
    elif delta < 3600:
        return f"{int(delta / 60)} min ago"
    elif delta < 86400:
        return f"{int(delta / 3600)}h ago"
    return f"{int(delta / 86400)}d ago"


def format_countdown(seconds: Optional[float]) -> str:
    if seconds is None:
        return "-"
    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if hours >= 24:
        days, hours = divmod(hours, 24)
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def create_progress_bar(percent: Optional[float], width: int = BAR_WIDTH) -> str:
    """Create a text-based progress bar."""
    if percent is None:
        return "░" * width
    filled = int(max(0.0, min(100.0, percent)) / 100 * width)
    return "▓" * filled + "░" * (width - filled)


def percent_color(percent: float) -> str:
    if percent >= 90:
        return "red"
    if percent >= 70:
        return "yellow"
    return "green"


def window_label(window: UsageWindow) -> str:
    if window.name in WINDOW_LABELS:
        return WINDOW_LABELS[window.name]
    return window.name.replace("_", " ")


def format_window(window: UsageWindow, now: float) -> Text:
    percent = window.display_percent
    text = Text()
    text.append(f"{window_label(window):<6}", style="bold")
    text.append(create_progress_bar(percent), style=percent_color(percent))
    text.append(f" {percent:5.1f}%")
    text.append(f"  resets {format_countdown(window.seconds_until_reset(now))}", style="dim")
    return text


# =============================================================================
# RENDERING
# =============================================================================


def build_table(
    states: Dict[ProviderKind, ProviderState], now: Optional[float] = None
) -> Table:
    now = now or time.time()
    table = Table(box=None, show_header=True, header_style="bold", padding=(0, 1))
    table.add_column("Provider", style="cyan", min_width=TABLE_PROVIDER_WIDTH)
    table.add_column("Plan", min_width=TABLE_PLAN_WIDTH)
    table.add_column("Windows", min_width=TABLE_WINDOW_WIDTH)
    table.add_column("Tokens", justify="right", min_width=TABLE_TOKENS_WIDTH)
    table.add_column("Cost", justify="right", min_width=TABLE_COST_WIDTH)
    table.add_column("Status")

    for kind, state in states.items():
        snapshot = state.snapshot
        if snapshot.windows:
            windows = Text("\n").join(
                format_window(window, now) for window in snapshot.windows.values()
            )
        else:
            windows = Text("-", style="dim")

        tokens = snapshot.tokens
        if tokens.total_tokens:
            token_str = format_tokens(tokens.total_tokens)
            if tokens.provenance == Provenance.ESTIMATED:
                token_str = f"~{token_str}"
        else:
            token_str = "-"

        cost = snapshot.cost
        cost_str = (
            format_cost(cost.amount, cost.provenance == Provenance.ESTIMATED)
            if cost
            else "-"
        )

        label, color = STATUS_DISPLAY[state.status]
        status = Text(label, style=color)
        if state.error:
            status.append(f"\n{state.error}", style="dim")

        table.add_row(
            kind.display_name,
            snapshot.plan_tier or "-",
            windows,
            token_str,
            cost_str,
            status,
        )
    return table


def render_states(
    console: Console,
    states: Dict[ProviderKind, ProviderState],
    last_refresh_at: Optional[float],
    errors: List[str],
) -> None:
    console.print("━" * 78)
    console.print(
        f"[bold cyan]AI subscription usage[/bold cyan]  |  "
        f"Last refresh: {format_time_ago(last_refresh_at)}"
    )
    console.print("━" * 78)
    console.print(build_table(states))
    for error in errors:
        console.print(f"[yellow]{error}[/yellow]")
