# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from .types import UsageSnapshot

lib_logger = logging.getLogger("usage_core")


class ProbeCooldownCache:
    """
    Remembers the last header-probe result per provider for a cooldown window.

    A header probe spends a (tiny) inference request. While a provider is
    cooling down, the cached snapshot is served instead of probing again.
    One instance is shared by every provider task of an orchestrator.
    """

    def __init__(
        self,
        cooldown_seconds: float = 300,
        clock: Callable[[], float] = time.time,
    ):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, UsageSnapshot]] = {}  # key -> (end_time, snapshot)
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[UsageSnapshot]:
        """Returns the cached snapshot while the key is cooling down."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            end_time, snapshot = entry
            if self._clock() >= end_time:
                del self._entries[key]
                return None
            return snapshot

    async def put(self, key: str, snapshot: UsageSnapshot) -> None:
        """Stores a fresh probe result and starts the cooldown for the key."""
        async with self._lock:
            self._entries[key] = (self._clock() + self.cooldown_seconds, snapshot)
            lib_logger.debug(
                f"Header probe cooldown started for '{key}' ({self.cooldown_seconds:.0f}s)"
            )

    async def get_cooldown_remaining(self, key: str) -> float:
        """
        Returns the remaining cooldown time in seconds for a key.
        Returns 0 if the key is not cooling down.
        """
        async with self._lock:
            if key in self._entries:
                return max(0.0, self._entries[key][0] - self._clock())
            return 0.0

    async def is_cooling_down(self, key: str) -> bool:
        return await self.get_cooldown_remaining(key) > 0

    async def clear(self, key: Optional[str] = None) -> None:
        async with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)
