"""lodestar_rag.config

Configuration subsystem for the retrieval core.

This package provides structured access to global and component-level
configuration loaded from YAML files, plus a helper that applies the
``logging`` section to the standard library logging module.

Modules
-------
global_config
    Global configuration loader and cached accessors.

Functions
---------
configure_logging
    Apply a ``logging`` configuration section.
"""
import logging
from typing import Any, Mapping, Optional

from .global_config import GlobalConfig

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(section: Optional[Mapping[str, Any]] = None) -> None:
    """Configure root logging from a ``logging`` section (``level``, ``format``)."""
    cfg = dict(section or {})
    level = str(cfg.get("level", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=cfg.get("format", DEFAULT_LOG_FORMAT),
    )


__all__ = ["GlobalConfig", "configure_logging"]
