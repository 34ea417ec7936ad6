# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Optional, Union


def safe_write_json(
    path: Union[str, Path],
    data: Any,
    logger: logging.Logger,
    secure_permissions: bool = False,
    indent: Optional[int] = 2,
) -> bool:
    """
    Atomically write JSON: dump to a temp file in the same directory, then
    replace the target. Returns False (and logs) instead of raising.
    """
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=indent)
        if secure_permissions:
            os.chmod(tmp_name, 0o600)
        os.replace(tmp_name, path)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Failed to write JSON to '{path}': {e}")
        if tmp_name and os.path.exists(tmp_name):
            try:
                os.unlink(tmp_name)
            except OSError:
                logger.debug(f"Could not remove temp file '{tmp_name}'")
        return False
