"""Configuration package for the commerce backend."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
