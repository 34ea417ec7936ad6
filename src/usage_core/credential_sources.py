# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Where a provider's credential document lives.

A source hands back raw entries (key plus JSON text) and writes documents
back to a key. Parsing the document is the provider's job.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import aiofiles
from filelock import FileLock

from .secret_store import SecretStore
from .utils.resilient_io import safe_write_json

lib_logger = logging.getLogger("usage_core")


@dataclass
class RawEntry:
    key: str
    text: str


class CredentialSource(ABC):
    @property
    @abstractmethod
    def primary_key(self) -> str:
        pass

    @abstractmethod
    async def read_primary(self) -> Optional[RawEntry]:
        """Read the well-known entry. None when it does not exist."""

    async def read_broadened(self) -> List[RawEntry]:
        """Entries found by a wider search, tried when the primary is empty."""
        return []

    @abstractmethod
    async def write(self, key: str, document: Dict[str, Any]) -> None:
        pass


class SecretStoreSource(CredentialSource):
    """
    Credentials kept as a JSON blob in a secret store entry.

    CLI tools have registered under slightly different entry names across
    versions, so the broadened lookup scans every entry sharing the prefix.
    """

    def __init__(self, store: SecretStore, service: str, prefix: Optional[str] = None):
        self.store = store
        self.service = service
        self.prefix = prefix or service

    @property
    def primary_key(self) -> str:
        return self.service

    async def read_primary(self) -> Optional[RawEntry]:
        value = await self.store.get(self.service)
        return RawEntry(self.service, value) if value else None

    async def read_broadened(self) -> List[RawEntry]:
        entries = []
        for key in await self.store.list_keys_with_prefix(self.prefix):
            if key == self.service:
                continue
            value = await self.store.get(key)
            if value:
                entries.append(RawEntry(key, value))
        return entries

    async def write(self, key: str, document: Dict[str, Any]) -> None:
        await self.store.put(key, json.dumps(document))


class JsonFileSource(CredentialSource):
    """Credentials kept in a JSON file written by the provider's CLI."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self._file_lock = FileLock(f"{self.path}.lock")

    @property
    def primary_key(self) -> str:
        return str(self.path)

    async def read_primary(self) -> Optional[RawEntry]:
        if not self.path.is_file():
            return None
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            text = await f.read()
        return RawEntry(str(self.path), text) if text.strip() else None

    async def write(self, key: str, document: Dict[str, Any]) -> None:
        path = Path(key)

        def _write() -> bool:
            with self._file_lock:
                return safe_write_json(
                    path, document, lib_logger, secure_permissions=True
                )

        if not await asyncio.to_thread(_write):
            raise OSError(f"Failed to write credentials to '{path.name}'")
