"""
dedup-guard - duplicate image detection with safety-first deletion.

Finds exact and near-duplicate images, recommends the best copy of each
group, and deletes the rest only behind verified backups that can be
restored.
"""

__version__ = "0.1.0"
__author__ = "dedup-guard Contributors"

from dedup_guard.core.deletion import SafeImageDeleter
from dedup_guard.core.detector import DuplicateDetector
from dedup_guard.core.safety import SafetyManager
from dedup_guard.core.scanner import ImageScanner

__all__ = [
    "DuplicateDetector",
    "ImageScanner",
    "SafeImageDeleter",
    "SafetyManager",
    "__version__",
]
