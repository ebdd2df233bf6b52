"""Configuration package for PropLinka."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
