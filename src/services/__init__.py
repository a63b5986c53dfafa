"""
Services Module - Infrastructure services shared by the access-control core.

Infrastructure Services:
- Logging and observability (structured JSON / readable formatters,
  request and user correlation)
"""

from .logging_config import (
    configure_logging,
    configure_from_settings,
    get_logger,
    log_context,
)

__all__ = [
    "configure_logging",
    "configure_from_settings",
    "get_logger",
    "log_context",
]
