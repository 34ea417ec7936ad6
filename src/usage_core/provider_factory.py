# src/usage_core/provider_factory.py

from pathlib import Path
from typing import Dict, Iterable, Optional

from .credential_sources import JsonFileSource, SecretStoreSource
from .providers import ClaudeProvider, CodexProvider, GeminiProvider, UsageProvider
from .secret_store import KeychainSecretStore, SecretStore
from .types import ProviderConfig, ProviderKind

PROVIDER_MAP = {
    ProviderKind.CLAUDE: ClaudeProvider,
    ProviderKind.CODEX: CodexProvider,
    ProviderKind.GEMINI: GeminiProvider,
}


def get_provider_class(provider_name: str):
    """
    Returns the provider strategy class for a given provider name.
    """
    try:
        return PROVIDER_MAP[ProviderKind(provider_name.lower())]
    except ValueError:
        raise ValueError(f"Unknown provider: {provider_name}")


def get_available_providers():
    """
    Returns a list of available provider names.
    """
    return [kind.value for kind in PROVIDER_MAP]


def build_provider(
    config: ProviderConfig, secret_store: Optional[SecretStore] = None
) -> UsageProvider:
    """Instantiate one provider wired to the credential source its config names."""
    refs = config.secret_refs
    if config.provider == ProviderKind.CLAUDE:
        service = refs.get("keychain_service")
        if service:
            source = SecretStoreSource(secret_store or KeychainSecretStore(), service)
        else:
            source = JsonFileSource(
                refs.get("credentials_path")
                or Path.home() / ".claude" / ".credentials.json"
            )
        return ClaudeProvider(source)
    if config.provider == ProviderKind.CODEX:
        codex_home = Path(refs.get("codex_home") or Path.home() / ".codex")
        return CodexProvider(
            JsonFileSource(refs.get("auth_path") or codex_home / "auth.json"),
            codex_home=codex_home,
        )
    if config.provider == ProviderKind.GEMINI:
        return GeminiProvider(
            JsonFileSource(
                refs.get("credentials_path")
                or Path.home() / ".gemini" / "oauth_creds.json"
            )
        )
    raise ValueError(f"Unknown provider: {config.provider}")


def build_providers(
    configs: Iterable[ProviderConfig], secret_store: Optional[SecretStore] = None
) -> Dict[ProviderKind, UsageProvider]:
    """Providers for every config, enabled or not; the orchestrator filters."""
    return {config.provider: build_provider(config, secret_store) for config in configs}
