# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import logging
from typing import TYPE_CHECKING

from .types import (
    CycleResult,
    ProviderKind,
    ProviderState,
    ProviderStatus,
    UsageSnapshot,
    UsageWindow,
)

# Library code logs under "usage_core"; the app decides where records go
lib_logger = logging.getLogger("usage_core")
lib_logger.propagate = False
lib_logger.addHandler(logging.NullHandler())

# For type checkers, import the heavier classes statically
# At runtime, they are lazy-loaded via __getattr__
if TYPE_CHECKING:
    from .credential_store import CredentialStore
    from .history import UsageHistory
    from .orchestrator import RefreshOrchestrator
    from .provider_factory import build_providers

__all__ = [
    "CycleResult",
    "ProviderKind",
    "ProviderState",
    "ProviderStatus",
    "UsageSnapshot",
    "UsageWindow",
    "CredentialStore",
    "RefreshOrchestrator",
    "UsageHistory",
    "build_providers",
]


def __getattr__(name):
    """Lazy-load the orchestrator stack so importing the types stays cheap."""
    if name == "CredentialStore":
        from .credential_store import CredentialStore

        return CredentialStore
    if name == "RefreshOrchestrator":
        from .orchestrator import RefreshOrchestrator

        return RefreshOrchestrator
    if name == "UsageHistory":
        from .history import UsageHistory

        return UsageHistory
    if name == "build_providers":
        from .provider_factory import build_providers

        return build_providers
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
