"""Configuration management for dedup-guard."""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay user settings on top of the defaults."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Manages user configuration and settings."""

    DEFAULT_CONFIG_DIR = Path.home() / ".dedup-guard"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "config.json"

    DEFAULT_SETTINGS: Dict[str, Any] = {
        "protected_folders": [],
        "detection": {
            "similarity_threshold": 0.92,
            "minimum_confidence": 0.90,
            "hash_size": 8,
            "coarse_hash_size": 32,
            "prefilter_threshold": None,  # e.g. 0.75 to skip obviously different pairs
            "structural_size": 64,
            "histogram_size": 128,
            "method_weights": {"ahash": 0.4, "structural": 0.4, "histogram": 0.2},
            "local_confidence": 0.90,
            "max_workers": None,  # None -> os.cpu_count()
        },
        "providers": {
            "max_concurrent_requests": 3,
            "request_delay": 0.2,  # seconds between calls to the same provider
            "timeout": 30,
            "retry_attempts": 3,
            "weights": {
                "google": 0.4,
                "azure": 0.35,
                "aws": 0.35,
                "local": 0.2,
            },
            "google_vision": {
                "enabled": False,
                "api_key": None,
                "api_key_env": "GOOGLE_VISION_API_KEY",
            },
            "azure_vision": {
                "enabled": False,
                "endpoint": None,
                "api_key": None,
                "api_key_env": "AZURE_VISION_API_KEY",
            },
            # Unset keys use the standard AWS chain (env vars, ~/.aws, instance role)
            "aws_rekognition": {
                "enabled": False,
                "region": None,
                "access_key_id": None,
                "secret_access_key": None,
            },
        },
        "ranking": {
            "weights": {
                "resolution": 0.4,
                "size": 0.2,
                "recency": 0.2,
                "format": 0.1,
                "depth": 0.1,
            },
            "reference_resolution": 10_000_000,
            "reference_size": 5 * 1024 * 1024,
            "recency_days": 365,
            "max_depth": 10,
            "format_scores": {
                "png": 1.0,
                "tiff": 0.9,
                "tif": 0.9,
                "webp": 0.8,
                "jpg": 0.7,
                "jpeg": 0.7,
                "bmp": 0.6,
                "gif": 0.5,
            },
            "default_format_score": 0.5,
        },
        "safety": {
            "backup_before_analysis": True,
            "use_recycle_bin": True,
            "backup_workers": 4,
            "hash_algorithm": "sha256",
        },
        "paths": {
            "backup_dir": None,
            "operations_log": None,
        },
    }

    def __init__(self, config_file: Optional[Path] = None):
        """
        Initialize configuration.

        Args:
            config_file: Path to config file (default: ~/.dedup-guard/config.json)
        """
        self.config_file = Path(config_file) if config_file else self.DEFAULT_CONFIG_FILE
        self.settings: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from file or create with defaults."""
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    self.settings = _merge(self.DEFAULT_SETTINGS, json.load(f))
                logger.debug(f"Loaded configuration from {self.config_file}")
            except json.JSONDecodeError as e:
                logger.warning(f"Invalid config file: {e}. Using defaults.")
                self.settings = copy.deepcopy(self.DEFAULT_SETTINGS)
        else:
            logger.info("No config file found. Creating with defaults.")
            self.settings = copy.deepcopy(self.DEFAULT_SETTINGS)
            self.save()

    def save(self) -> None:
        """Save configuration to file."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self.settings, f, indent=2)
        logger.debug(f"Saved configuration to {self.config_file}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get a configuration value.

        Args:
            key: Configuration key (supports dot notation, e.g., 'safety.use_recycle_bin')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        value: Any = self.settings
        for k in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(k)
            if value is None:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set a configuration value and persist it.

        Args:
            key: Configuration key (supports dot notation)
            value: Value to set
        """
        keys = key.split(".")
        target = self.settings
        for k in keys[:-1]:
            if k not in target or not isinstance(target[k], dict):
                target[k] = {}
            target = target[k]
        target[keys[-1]] = value
        self.save()

    def add_protected_folder(self, folder: str) -> None:
        """Add a folder name or pattern to the protected folders list."""
        protected = self.get("protected_folders", [])
        if folder not in protected:
            protected.append(folder)
            self.set("protected_folders", protected)
            logger.info(f"Added protected folder: {folder}")

    def remove_protected_folder(self, folder: str) -> None:
        """Remove a folder name or pattern from the protected folders list."""
        protected = self.get("protected_folders", [])
        if folder in protected:
            protected.remove(folder)
            self.set("protected_folders", protected)
            logger.info(f"Removed protected folder: {folder}")

    def is_path_protected(self, path: Path) -> bool:
        """
        Check if a path is in a protected folder.

        Args:
            path: Path to check

        Returns:
            True if path is protected
        """
        protected_folders = self.get("protected_folders", [])
        path_str = str(path).lower()
        return any(protected.lower() in path_str for protected in protected_folders)

    def get_api_key(self, provider_key: str) -> Optional[str]:
        """
        Resolve a provider API key from the config or its environment variable.

        Args:
            provider_key: Provider section under 'providers' (e.g. 'google_vision')

        Returns:
            API key or None when the provider is not configured
        """
        api_key = self.get(f"providers.{provider_key}.api_key")
        if api_key:
            return api_key
        env_name = self.get(f"providers.{provider_key}.api_key_env")
        return os.environ.get(env_name) if env_name else None

    def get_backup_dir(self) -> Path:
        """Get the absolute root directory for backups and manifests."""
        override = self.get("paths.backup_dir")
        path = Path(override).expanduser() if override else self.config_file.parent / "backups"
        return path.resolve()

    def get_operations_log(self) -> Path:
        """Get the absolute operations log file path."""
        override = self.get("paths.operations_log")
        path = Path(override).expanduser() if override else self.config_file.parent / "operations.log"
        return path.resolve()
