"""Core configuration and logging for MergeGate."""

from .config import Settings, settings
from .logging import setup_logging

__all__ = ["Settings", "settings", "setup_logging"]
