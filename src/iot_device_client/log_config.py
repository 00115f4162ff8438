"""
Apply log level from config or env.

Single log level for all loggers. An explicit level (from --log-level) takes precedence
over the IOT_LOG_LEVEL env variable.
"""

from __future__ import annotations

import logging
import os
from typing import Optional


def _parse_level(raw: Optional[str]) -> int:
    """Map "debug", "WARNING", "15" and the like to a level; anything unknown is INFO."""
    name = (raw or "").strip().upper()
    if name.isdigit():
        return int(name)
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def level_from_cfg_or_env(level: Optional[str]) -> int:
    """
    Resolve log level: explicit level if given, else IOT_LOG_LEVEL env, else INFO.
    """
    if isinstance(level, str) and level.strip():
        return _parse_level(level)
    raw = os.environ.get("IOT_LOG_LEVEL", "").strip()
    return _parse_level(raw) if raw else logging.INFO


def apply_log_level(level: int) -> None:
    """Module loggers have no level of their own, so the root level governs all of them."""
    logging.getLogger().setLevel(level)


def configure_logging(level: Optional[str] = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    apply_log_level(level_from_cfg_or_env(level))
