# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Usage history for trend charts.

Entries are appended once per successful provider fetch and kept in a JSON
file. Each provider keeps at most ``MAX_ENTRIES_PER_PROVIDER`` entries, and
anything older than ``RETENTION_SECONDS`` is pruned on append.
"""

import asyncio
import json
import logging
import os
import time
from collections import defaultdict
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

import aiofiles
from filelock import FileLock

from .types import HistoryEntry, ProviderKind, UsageSnapshot

lib_logger = logging.getLogger("usage_core")

MAX_ENTRIES_PER_PROVIDER = 168  # One week of hourly points
RETENTION_SECONDS = 7 * 24 * 60 * 60


class UsageHistory:
    """
    JSON-file backed history with asyncio-safe locking and a file lock
    against concurrent processes.
    """

    def __init__(
        self,
        file_path: Union[str, Path],
        clock: Callable[[], float] = time.time,
    ):
        self.file_path = Path(file_path)
        self.file_lock = FileLock(f"{self.file_path}.lock")
        self._clock = clock
        self._data_lock = asyncio.Lock()
        self._entries: Optional[List[HistoryEntry]] = None

    async def _lazy_init(self) -> None:
        if self._entries is None:
            self._entries = await self._load()

    async def _load(self) -> List[HistoryEntry]:
        if not self.file_path.exists():
            return []
        try:
            async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
                content = await f.read()
            raw = json.loads(content) if content.strip() else []
        except (ValueError, OSError) as e:
            lib_logger.warning(f"Ignoring unreadable history file '{self.file_path}': {e}")
            return []

        entries = []
        for item in raw if isinstance(raw, list) else []:
            try:
                entries.append(HistoryEntry.from_dict(item))
            except (KeyError, TypeError, ValueError):
                continue
        return entries

    async def _save(self) -> None:
        content = json.dumps([e.to_dict() for e in self._entries or []], indent=2)
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.file_path.with_suffix(".tmp")
        with self.file_lock:  # Use filelock to prevent multi-process race conditions
            async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                await f.write(content)
            os.replace(temp_path, self.file_path)

    def _prune(self, now: float) -> None:
        cutoff = now - RETENTION_SECONDS
        kept = [e for e in self._entries if e.timestamp >= cutoff]

        per_provider: Dict[ProviderKind, List[HistoryEntry]] = defaultdict(list)
        for entry in kept:
            per_provider[entry.provider].append(entry)
        trimmed = []
        for entries in per_provider.values():
            entries.sort(key=lambda e: e.timestamp)
            trimmed.extend(entries[-MAX_ENTRIES_PER_PROVIDER:])
        trimmed.sort(key=lambda e: e.timestamp)
        self._entries = trimmed

    async def append(self, snapshot: UsageSnapshot) -> HistoryEntry:
        """Record one successful fetch and persist the pruned history."""
        now = self._clock()
        entry = HistoryEntry(
            provider=snapshot.provider,
            timestamp=now,
            primary_percent=snapshot.primary.used_percent if snapshot.primary else None,
            secondary_percent=(
                snapshot.secondary.used_percent if snapshot.secondary else None
            ),
        )
        async with self._data_lock:
            await self._lazy_init()
            self._entries.append(entry)
            self._prune(now)
            try:
                await self._save()
            except OSError as e:
                lib_logger.error(f"Failed to save usage history: {e}")
        return entry

    async def entries(
        self, provider: Optional[ProviderKind] = None, hours: Optional[float] = None
    ) -> List[HistoryEntry]:
        async with self._data_lock:
            await self._lazy_init()
            result = list(self._entries)
        if provider is not None:
            result = [e for e in result if e.provider == provider]
        if hours is not None:
            cutoff = self._clock() - hours * 3600
            result = [e for e in result if e.timestamp >= cutoff]
        return result

    async def _bucket_averages(
        self, provider: ProviderKind, span_seconds: float, bucket_seconds: float
    ) -> Dict[float, float]:
        entries = await self.entries(provider, hours=span_seconds / 3600)
        buckets: Dict[float, List[float]] = defaultdict(list)
        for entry in entries:
            if entry.primary_percent is None:
                continue
            start = entry.timestamp - (entry.timestamp % bucket_seconds)
            buckets[start].append(entry.primary_percent)
        return {
            start: sum(values) / len(values) for start, values in sorted(buckets.items())
        }

    async def hourly_average(
        self, provider: ProviderKind, hours: int = 24
    ) -> Dict[float, float]:
        """Mean primary usage per hour bucket (bucket start -> percent)."""
        return await self._bucket_averages(provider, hours * 3600, 3600)

    async def daily_average(
        self, provider: ProviderKind, days: int = 7
    ) -> Dict[float, float]:
        """Mean primary usage per UTC day bucket (bucket start -> percent)."""
        return await self._bucket_averages(provider, days * 86400, 86400)

    async def clear(self) -> None:
        async with self._data_lock:
            self._entries = []
            await self._save()
