"""
Utility for formatting credential sources for display in logs.

Credential sources are either JSON files or secret-store entries. Files show
their basename, secret-store entries show their entry name. Token values are
never passed through here and never appear in logs.
"""

import os
from typing import Optional


def format_source_for_display(source_key: Optional[str]) -> str:
    """
    Format a credential source key for display in logs.

    Examples:
        >>> format_source_for_display("/home/u/.gemini/oauth_creds.json")
        "oauth_creds.json"
        >>> format_source_for_display("Claude Code-credentials")
        "keychain:Claude Code-credentials"
    """
    if not source_key:
        return "<unknown>"
    if os.sep in source_key or source_key.endswith(".json"):
        return os.path.basename(source_key)
    return f"keychain:{source_key}"


def mask_token(token: Optional[str]) -> str:
    """Show only the last 4 characters of a token."""
    if not token:
        return "<none>"
    return f"...{token[-4:]}"
