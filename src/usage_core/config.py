# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Environment-driven settings.

Values are read once into a frozen ``Settings`` instance. The application
calls ``load_dotenv()`` before ``load_settings()`` so a local ``.env`` file
can supply any of these.
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .types import ProviderConfig, ProviderKind


ALLOWED_REFRESH_INTERVALS = (60, 300, 900, 1800)
DEFAULT_REFRESH_INTERVAL = 300
DEFAULT_NOTIFICATION_THRESHOLD = 80
DEFAULT_PROBE_COOLDOWN_SECONDS = 300
DEFAULT_PROVIDER_TIMEOUT = 60.0
DEFAULT_HTTP_TIMEOUT = 30.0

DEFAULT_CLAUDE_KEYCHAIN_SERVICE = "Claude Code-credentials"


class SettingsValidationError(RuntimeError):
    pass


def parse_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def parse_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise SettingsValidationError(f"{name} must be an integer, got {raw!r}")


def parse_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise SettingsValidationError(f"{name} must be a number, got {raw!r}")


def _path_env(name: str, default: Path) -> Path:
    raw = (os.getenv(name) or "").strip()
    return Path(raw).expanduser() if raw else default


def default_credential_backend() -> str:
    return "keychain" if sys.platform == "darwin" else "file"


def validate_refresh_interval(seconds: int) -> int:
    if seconds not in ALLOWED_REFRESH_INTERVALS:
        allowed = ", ".join(str(s) for s in ALLOWED_REFRESH_INTERVALS)
        raise SettingsValidationError(
            f"Refresh interval must be one of {allowed} seconds, got {seconds}"
        )
    return seconds


@dataclass(frozen=True)
class Settings:
    refresh_interval: int
    enabled: Dict[ProviderKind, bool]
    notification_threshold: int
    probe_cooldown_seconds: int
    provider_timeout: float
    http_timeout: float
    history_path: Path
    log_dir: Path
    log_level: str
    credential_backend: str
    claude_keychain_service: str
    claude_credentials_path: Path
    codex_home: Path
    gemini_credentials_path: Path

    def provider_configs(
        self, only: Optional[List[ProviderKind]] = None
    ) -> List[ProviderConfig]:
        secret_refs = {
            ProviderKind.CLAUDE: (
                {"keychain_service": self.claude_keychain_service}
                if self.credential_backend == "keychain"
                else {"credentials_path": str(self.claude_credentials_path)}
            ),
            ProviderKind.CODEX: {
                "codex_home": str(self.codex_home),
                "auth_path": str(self.codex_home / "auth.json"),
            },
            ProviderKind.GEMINI: {
                "credentials_path": str(self.gemini_credentials_path)
            },
        }
        configs = []
        for kind in ProviderKind:
            enabled = self.enabled.get(kind, True)
            if only is not None and kind not in only:
                enabled = False
            configs.append(
                ProviderConfig(
                    provider=kind,
                    enabled=enabled,
                    interval_seconds=self.refresh_interval,
                    secret_refs=secret_refs[kind],
                )
            )
        return configs


def load_settings() -> Settings:
    home = Path.home()
    backend = (
        (os.getenv("USAGE_CREDENTIAL_BACKEND") or "").strip().lower()
        or default_credential_backend()
    )
    if backend not in {"keychain", "file"}:
        raise SettingsValidationError(
            f"USAGE_CREDENTIAL_BACKEND must be 'keychain' or 'file', got {backend!r}"
        )

    threshold = parse_int_env(
        "USAGE_NOTIFICATION_THRESHOLD", DEFAULT_NOTIFICATION_THRESHOLD
    )
    if not 0 < threshold <= 100:
        raise SettingsValidationError(
            f"USAGE_NOTIFICATION_THRESHOLD must be within 1..100, got {threshold}"
        )

    codex_home_raw = (os.getenv("CODEX_HOME") or "").strip()

    return Settings(
        refresh_interval=validate_refresh_interval(
            parse_int_env("USAGE_REFRESH_INTERVAL", DEFAULT_REFRESH_INTERVAL)
        ),
        enabled={
            kind: parse_bool_env(f"USAGE_ENABLE_{kind.value.upper()}", True)
            for kind in ProviderKind
        },
        notification_threshold=threshold,
        probe_cooldown_seconds=parse_int_env(
            "USAGE_PROBE_COOLDOWN_SECONDS", DEFAULT_PROBE_COOLDOWN_SECONDS
        ),
        provider_timeout=parse_float_env(
            "USAGE_PROVIDER_TIMEOUT", DEFAULT_PROVIDER_TIMEOUT
        ),
        http_timeout=parse_float_env("USAGE_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT),
        history_path=_path_env(
            "USAGE_HISTORY_PATH", home / ".usage_bar" / "usage_history.json"
        ),
        log_dir=_path_env("USAGE_LOG_DIR", Path("logs")),
        log_level=(os.getenv("USAGE_LOG_LEVEL") or "INFO").strip().upper(),
        credential_backend=backend,
        claude_keychain_service=(
            (os.getenv("CLAUDE_KEYCHAIN_SERVICE") or "").strip()
            or DEFAULT_CLAUDE_KEYCHAIN_SERVICE
        ),
        claude_credentials_path=_path_env(
            "CLAUDE_CREDENTIALS_PATH", home / ".claude" / ".credentials.json"
        ),
        codex_home=(
            Path(codex_home_raw).expanduser() if codex_home_raw else home / ".codex"
        ),
        gemini_credentials_path=_path_env(
            "GEMINI_CREDENTIALS_PATH", home / ".gemini" / "oauth_creds.json"
        ),
    )
