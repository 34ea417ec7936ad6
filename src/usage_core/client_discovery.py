# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Last-resort discovery of the Gemini CLI's OAuth client id/secret.

Older credential files do not carry the client pair needed for a refresh.
The installed CLI ships them as constants inside its bundled JavaScript, so
this module locates the install on PATH, resolves symlinks, and scrapes the
constants out. It depends on the CLI's internal packaging and can stop
working after any upstream release; every failure means "not available".
"""

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Tuple

lib_logger = logging.getLogger("usage_core")

OAUTH_MODULE = Path("src") / "code_assist" / "oauth2.js"

KNOWN_INSTALL_FILES = (
    Path(
        "/opt/homebrew/lib/node_modules/@google/gemini-cli/node_modules/"
        "@google/gemini-cli-core/dist/src/code_assist/oauth2.js"
    ),
    Path(
        "/usr/local/lib/node_modules/@google/gemini-cli/node_modules/"
        "@google/gemini-cli-core/dist/src/code_assist/oauth2.js"
    ),
)

_CLIENT_ID_CONST = re.compile(r"OAUTH_CLIENT_ID\s*=\s*[\"']([^\"']+)[\"']")
_CLIENT_ID_KEY = re.compile(r"client_id[\"']?\s*[:=]\s*[\"']([^\"']+)[\"']")
_CLIENT_SECRET_CONST = re.compile(r"OAUTH_CLIENT_SECRET\s*=\s*[\"']([^\"']+)[\"']")
_CLIENT_SECRET_KEY = re.compile(r"client_secret[\"']?\s*[:=]\s*[\"']([^\"']+)[\"']")


@dataclass(frozen=True)
class CliInstall:
    binary_path: Path
    resolved_path: Path

    @property
    def bin_dir(self) -> Path:
        return self.resolved_path.parent

    @property
    def lib_dir(self) -> Path:
        return self.bin_dir.parent


@dataclass(frozen=True)
class ClientCredentials:
    client_id: str
    client_secret: Optional[str] = None


def find_cli_install(
    binary: str = "gemini",
    which: Callable[[str], Optional[str]] = shutil.which,
) -> Optional[CliInstall]:
    """Locate ``binary`` on PATH and resolve it through any symlinks."""
    found = which(binary)
    if not found:
        return None
    path = Path(found)
    try:
        resolved = path.resolve(strict=True)
    except (OSError, RuntimeError):
        return None
    return CliInstall(binary_path=path, resolved_path=resolved)


def candidate_source_files(install: Optional[CliInstall]) -> List[Path]:
    candidates = []
    if install is not None:
        lib_dir = install.lib_dir
        candidates.extend(
            [
                lib_dir
                / "node_modules"
                / "@google"
                / "gemini-cli-core"
                / "dist"
                / OAUTH_MODULE,
                lib_dir / OAUTH_MODULE,
                lib_dir / "lib" / "oauth2.js",
            ]
        )
    candidates.extend(KNOWN_INSTALL_FILES)
    return candidates


def extract_client_credentials(source: str) -> Tuple[Optional[str], Optional[str]]:
    """Pull (client_id, client_secret) out of JavaScript source text."""
    client_id = None
    client_secret = None

    match = _CLIENT_ID_CONST.search(source)
    if match:
        client_id = match.group(1)
    if client_id is None:
        match = _CLIENT_ID_KEY.search(source)
        if match:
            client_id = match.group(1)

    match = _CLIENT_SECRET_CONST.search(source)
    if match:
        client_secret = match.group(1)
    if client_secret is None:
        match = _CLIENT_SECRET_KEY.search(source)
        if match:
            client_secret = match.group(1)

    return client_id, client_secret


def discover_client_credentials(
    binary: str = "gemini",
    which: Callable[[str], Optional[str]] = shutil.which,
    extra_files: Iterable[Path] = (),
) -> Optional[ClientCredentials]:
    """
    Best-effort lookup of the CLI's OAuth client pair. Never raises.
    """
    files = list(extra_files) + candidate_source_files(find_cli_install(binary, which))
    for path in files:
        try:
            if not path.is_file():
                continue
            source = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            lib_logger.debug(f"Skipping '{path}': {e}")
            continue
        client_id, client_secret = extract_client_credentials(source)
        if client_id:
            lib_logger.debug(f"Found OAuth client constants in '{path.name}'")
            return ClientCredentials(client_id=client_id, client_secret=client_secret)
    return None
