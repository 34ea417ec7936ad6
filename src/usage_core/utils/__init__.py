# src/usage_core/utils/__init__.py

from .credential_formatter import format_source_for_display, mask_token
from .resilient_io import safe_write_json

__all__ = [
    "format_source_for_display",
    "mask_token",
    "safe_write_json",
]
