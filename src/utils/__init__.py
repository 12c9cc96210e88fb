"""
priorart utilities module.
"""

from src.utils.config import Settings, ensure_directories, get_project_root, get_settings, load_settings
from src.utils.errors import ErrorCode, PriorArtError
from src.utils.logging import (
    LogContext,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    unbind_context,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    "load_settings",
    "get_project_root",
    "ensure_directories",
    # Errors
    "ErrorCode",
    "PriorArtError",
    # Logging
    "get_logger",
    "configure_logging",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
]
