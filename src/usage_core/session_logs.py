# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Session log scanner.

Rebuilds recent usage from a CLI's append-only JSONL session logs. The
directory tree is organized by date (``YYYY/MM/DD``) but the scanner does
not rely on that; it walks the tree and filters by modification time.

Folding rules:
- Within one file, token totals and rate-limit fields are last-value-wins.
- Across files (oldest first), counters are summed while rate-limit and plan
  fields are overwritten field by field, so the newest file that carried a
  field wins and a file without it leaves the earlier value alone.
"""

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import aiofiles

from .errors import ScanError
from .normalizer import estimate_tokens_from_messages, parse_epoch, roll_window
from .types import (
    DEFAULT_PRIMARY_WINDOW_MINUTES,
    DEFAULT_SECONDARY_WINDOW_MINUTES,
    PRIMARY,
    SECONDARY,
    RateLimitFields,
    SessionData,
    SessionStats,
    UsageWindow,
)

lib_logger = logging.getLogger("usage_core")


# =============================================================================
# CONSTANTS
# =============================================================================

SESSION_LOG_EXTENSION = ".jsonl"
RECENT_WINDOW_SECONDS = 24 * 60 * 60

MESSAGE_EVENT = "turn.completed"
TOKEN_COUNT_EVENT = "token_count"


# =============================================================================
# FILE DISCOVERY
# =============================================================================


def list_recent_log_files(
    root_dir: Union[str, Path],
    since: float,
    extension: str = SESSION_LOG_EXTENSION,
) -> List[Path]:
    """
    Log files under ``root_dir`` modified at or after ``since``, oldest first.

    A missing root yields an empty list. Symlinked directories are not
    followed, and unreadable subdirectories are skipped.
    """
    root = Path(root_dir)
    if not root.is_dir():
        return []

    found = []
    for dirpath, _dirnames, filenames in os.walk(root, followlinks=False):
        for name in filenames:
            if not name.endswith(extension):
                continue
            path = Path(dirpath) / name
            try:
                mtime = path.stat().st_mtime
            except OSError:
                continue
            if mtime >= since:
                found.append((mtime, str(path), path))

    found.sort()
    return [path for _, _, path in found]


# =============================================================================
# PARSING
# =============================================================================


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _rate_limit_fields(window: Any) -> RateLimitFields:
    if not isinstance(window, dict):
        return RateLimitFields()
    return RateLimitFields(
        used_percent=_as_float(window.get("used_percent")),
        resets_at=(
            parse_epoch(window.get("resets_at"))
            if isinstance(window.get("resets_at"), (int, float))
            else None
        ),
        window_minutes=_as_int(window.get("window_minutes")),
    )


def apply_record(data: SessionData, record: Dict[str, Any]) -> None:
    """Fold one decoded log line into ``data``."""
    payload = record.get("payload")
    if not isinstance(payload, dict):
        payload = record

    event_type = payload.get("type")
    if event_type == MESSAGE_EVENT:
        data.messages += 1
        return
    if event_type != TOKEN_COUNT_EVENT:
        return

    rate_limits = payload.get("rate_limits")
    if isinstance(rate_limits, dict):
        data.primary = data.primary.merge(_rate_limit_fields(rate_limits.get("primary")))
        data.secondary = data.secondary.merge(
            _rate_limit_fields(rate_limits.get("secondary"))
        )
        plan_type = rate_limits.get("plan_type")
        if isinstance(plan_type, str) and plan_type:
            data.plan_type = plan_type

    info = payload.get("info")
    usage = info.get("total_token_usage") if isinstance(info, dict) else None
    if isinstance(usage, dict):
        for field_name, attr in (
            ("input_tokens", "input_tokens"),
            ("output_tokens", "output_tokens"),
            ("total_tokens", "total_tokens"),
        ):
            value = _as_int(usage.get(field_name))
            if value is not None:
                setattr(data, attr, value)


def parse_lines(lines: Iterable[str]) -> SessionData:
    """Fold decoded records from an iterable of raw JSONL lines."""
    data = SessionData()
    for line in lines:
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if isinstance(record, dict):
            apply_record(data, record)

    if data.total_tokens == 0 and data.messages > 0:
        # Heuristic only: no token_count event carried totals
        data.input_tokens, data.output_tokens, data.total_tokens = (
            estimate_tokens_from_messages(data.messages)
        )
        data.tokens_estimated = True
    return data


async def parse_log_file(path: Union[str, Path]) -> SessionData:
    """Parse one JSONL session log. Malformed lines are skipped."""
    try:
        async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
            content = await f.read()
    except OSError as e:
        raise ScanError(f"Cannot read session log '{Path(path).name}': {e}")
    return parse_lines(content.splitlines())


def fold_session_data(parsed: Iterable[SessionData]) -> SessionStats:
    """Fold per-file results, given in ascending modification-time order."""
    stats = SessionStats()
    for data in parsed:
        stats.files += 1
        stats.messages += data.messages
        stats.input_tokens += data.input_tokens
        stats.output_tokens += data.output_tokens
        stats.total_tokens += data.total_tokens
        stats.tokens_estimated = stats.tokens_estimated or data.tokens_estimated
        stats.primary = stats.primary.merge(data.primary)
        stats.secondary = stats.secondary.merge(data.secondary)
        if data.plan_type:
            stats.plan_type = data.plan_type
    return stats


async def fold_across_files(files: Iterable[Union[str, Path]]) -> SessionStats:
    """Parse and fold files in the given (ascending mtime) order."""
    parsed = []
    for path in files:
        try:
            parsed.append(await parse_log_file(path))
        except ScanError as e:
            lib_logger.warning(str(e))
    return fold_session_data(parsed)


async def scan_sessions(
    sessions_dir: Union[str, Path],
    now: Optional[float] = None,
    lookback_seconds: float = RECENT_WINDOW_SECONDS,
) -> SessionStats:
    """List recent logs under ``sessions_dir`` and fold them."""
    now = time.time() if now is None else now
    root = Path(sessions_dir)
    if not root.is_dir():
        lib_logger.debug(f"No session directory at '{root}'")
        return SessionStats(directory_found=False)

    files = await asyncio.to_thread(list_recent_log_files, root, now - lookback_seconds)
    stats = await fold_across_files(files)
    lib_logger.debug(
        f"Scanned {stats.files} session logs: {stats.messages} messages, "
        f"{stats.total_tokens} tokens"
    )
    return stats


def stats_to_windows(stats: SessionStats, now: float) -> Dict[str, UsageWindow]:
    """
    Turn folded rate-limit fields into windows, rolling stale ones forward.

    Windows with no percent and no reset are left out.
    """
    windows = {}
    for name, fields, default_minutes in (
        (PRIMARY, stats.primary, DEFAULT_PRIMARY_WINDOW_MINUTES),
        (SECONDARY, stats.secondary, DEFAULT_SECONDARY_WINDOW_MINUTES),
    ):
        if fields.used_percent is None and fields.resets_at is None:
            continue
        windows[name] = roll_window(
            name,
            fields.used_percent,
            fields.resets_at,
            fields.window_minutes,
            default_minutes,
            now,
        )
    return windows
