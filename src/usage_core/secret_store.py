# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Secret store back-ends.

Every access to the platform keychain can raise a user-visible permission
prompt, so callers keep lookups to a minimum and cache what they read.
"""

import asyncio
import getpass
import logging
import os
import re
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple

lib_logger = logging.getLogger("usage_core")

SECURITY_BIN = os.getenv("USAGE_SECURITY_BIN", "/usr/bin/security")

# `security` exits with 44 when the item does not exist
SECURITY_ITEM_NOT_FOUND = 44

_SERVICE_LINE = re.compile(r'"svce"<blob>="(?P<service>[^"]*)"')


class SecretStoreError(RuntimeError):
    pass


class SecretStore(ABC):
    """Minimal key/value view over an OS secret store."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the entry does not exist."""

    @abstractmethod
    async def put(self, key: str, value: str) -> None:
        """Update the entry in place, creating it when it does not exist."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def list_keys_with_prefix(self, prefix: str) -> List[str]:
        pass


class InMemorySecretStore(SecretStore):
    """Dict-backed store. Counts calls so tests can assert on store traffic."""

    def __init__(self, entries: Optional[Dict[str, str]] = None):
        self.entries: Dict[str, str] = dict(entries or {})
        self.get_calls = 0
        self.put_calls = 0
        self.list_calls = 0

    async def get(self, key: str) -> Optional[str]:
        self.get_calls += 1
        return self.entries.get(key)

    async def put(self, key: str, value: str) -> None:
        self.put_calls += 1
        self.entries[key] = value

    async def delete(self, key: str) -> None:
        self.entries.pop(key, None)

    async def list_keys_with_prefix(self, prefix: str) -> List[str]:
        self.list_calls += 1
        return sorted(k for k in self.entries if k.startswith(prefix))


class KeychainSecretStore(SecretStore):
    """
    macOS login keychain through the ``security`` command line tool.

    Entries are generic passwords keyed by service name. The account name
    defaults to the current user, which is what CLI tools register under.
    """

    def __init__(
        self,
        account: Optional[str] = None,
        security_bin: str = SECURITY_BIN,
        timeout: float = 30.0,
    ):
        self.account = account or getpass.getuser()
        self.security_bin = security_bin
        self.timeout = timeout

    async def _run(self, args: Sequence[str]) -> Tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.security_bin,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise SecretStoreError(f"Cannot run '{self.security_bin}': {e}")
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise SecretStoreError(
                f"'security {args[0]}' timed out after {self.timeout}s"
            )
        return (
            proc.returncode,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )

    async def get(self, key: str) -> Optional[str]:
        code, out, err = await self._run(["find-generic-password", "-s", key, "-w"])
        if code == SECURITY_ITEM_NOT_FOUND:
            return None
        if code != 0:
            raise SecretStoreError(
                f"Keychain lookup for '{key}' failed ({code}): {err.strip()}"
            )
        value = out.strip()
        return value or None

    async def put(self, key: str, value: str) -> None:
        # -U updates the existing item or adds a new one
        code, _, err = await self._run(
            [
                "add-generic-password",
                "-U",
                "-a",
                self.account,
                "-s",
                key,
                "-w",
                value,
            ]
        )
        if code != 0:
            raise SecretStoreError(
                f"Keychain write for '{key}' failed ({code}): {err.strip()}"
            )

    async def delete(self, key: str) -> None:
        code, _, err = await self._run(["delete-generic-password", "-s", key])
        if code not in (0, SECURITY_ITEM_NOT_FOUND):
            raise SecretStoreError(
                f"Keychain delete for '{key}' failed ({code}): {err.strip()}"
            )

    async def list_keys_with_prefix(self, prefix: str) -> List[str]:
        code, out, err = await self._run(["dump-keychain"])
        if code != 0:
            raise SecretStoreError(f"Keychain listing failed ({code}): {err.strip()}")
        services = {
            m.group("service")
            for m in _SERVICE_LINE.finditer(out)
            if m.group("service").startswith(prefix)
        }
        lib_logger.debug(
            f"Keychain prefix scan for '{prefix}' matched {len(services)} entries"
        )
        return sorted(services)
