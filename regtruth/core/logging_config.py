"""Logging setup shared by the API and workers."""

from __future__ import annotations

import logging

from regtruth.core.config import get_settings

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once, using the configured level by default."""
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(level=getattr(logging, level_name, logging.INFO), format=_FORMAT)
