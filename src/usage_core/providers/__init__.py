# src/usage_core/providers/__init__.py

from .claude_provider import ClaudeProvider
from .codex_provider import CodexProvider
from .gemini_provider import GeminiProvider
from .provider_interface import FetchContext, UsageProvider

__all__ = [
    "ClaudeProvider",
    "CodexProvider",
    "GeminiProvider",
    "FetchContext",
    "UsageProvider",
]
