"""
Configuration package for backend application settings.

Usage:
    from briefing_rag.config import Settings, get_settings, validate_config

    # Get settings singleton (cached, preferred method)
    settings = get_settings()

    # Create new instance (useful for testing)
    settings = Settings(semantic_threshold=0.7)
"""

from briefing_rag.config.settings import (
    Settings,
    get_settings,
    validate_config,
)

__all__ = [
    "Settings",
    "get_settings",
    "validate_config",
]
