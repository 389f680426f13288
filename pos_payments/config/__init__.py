"""Configuration package for POS payment reconciliation."""
from .settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
