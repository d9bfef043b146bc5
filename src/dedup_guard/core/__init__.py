"""Core functionality for duplicate detection and safe deletion."""

from dedup_guard.core.deletion import SafeImageDeleter
from dedup_guard.core.detector import DuplicateDetector
from dedup_guard.core.safety import SafetyManager
from dedup_guard.core.scanner import ImageScanner

__all__ = ["DuplicateDetector", "ImageScanner", "SafeImageDeleter", "SafetyManager"]
