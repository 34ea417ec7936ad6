# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from typing import List, Mapping, Optional

from .normalizer import headline_percent
from .types import ProviderKind, ProviderState


def threshold_crossings(
    previous: Mapping[ProviderKind, ProviderState],
    current: Mapping[ProviderKind, ProviderState],
    threshold: float,
) -> List[ProviderKind]:
    """
    Providers whose headline usage went from below ``threshold`` to at or
    above it between two state maps. Falling back below never notifies.
    """
    crossed = []
    for kind, state in current.items():
        now_percent = headline_percent(state.snapshot)
        if now_percent is None or now_percent < threshold:
            continue
        before = previous.get(kind)
        before_percent: Optional[float] = (
            headline_percent(before.snapshot) if before is not None else None
        )
        if before_percent is None or before_percent < threshold:
            crossed.append(kind)
    return crossed
