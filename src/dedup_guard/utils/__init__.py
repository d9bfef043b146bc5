"""Utility functions for configuration, logging, and helpers."""

from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import setup_logger

__all__ = ["Config", "setup_logger"]
