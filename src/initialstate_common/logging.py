from __future__ import annotations

import logging
import sys
from typing import Optional


def setup_logging(name: str = "initialstate", level: Optional[str] = None) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    if level is None:
        from initialstate_common.settings import get_settings

        level = get_settings().log_level
    resolved = logging.getLevelName(level.strip().upper())
    logger.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
    h = logging.StreamHandler(sys.stdout)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    h.setFormatter(fmt)
    logger.addHandler(h)
    return logger
