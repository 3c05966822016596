"""Shared configuration and logging."""

from libs.common.logging_config import configure_logging
from libs.common.settings import Settings, get_settings

__all__ = ["Settings", "configure_logging", "get_settings"]
