"""Utility modules for Domain Qualifier."""

from .config import ConfigurationError, Settings, get_settings
from .safety import best_effort, best_effort_call

__all__ = [
    "ConfigurationError",
    "Settings",
    "get_settings",
    "best_effort",
    "best_effort_call",
]
