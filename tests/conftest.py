"""Shared fixtures for dedup-guard tests."""

from pathlib import Path

import pytest
from PIL import Image

from dedup_guard.core.models import ImageRecord
from dedup_guard.utils.config import Config


@pytest.fixture
def config(tmp_path):
    """Configuration isolated in a temporary directory."""
    cfg = Config(tmp_path / "state" / "config.json")
    cfg.settings["detection"]["max_workers"] = 2
    return cfg


@pytest.fixture
def make_image(tmp_path):
    """Factory writing a solid-colour image and returning its path."""

    def _make(name, size=(64, 64), color=(200, 30, 30), fmt=None):
        path = tmp_path / "images" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        Image.new("RGB", size, color=color).save(path, fmt)
        return path

    return _make


@pytest.fixture
def make_record():
    """Factory building an ImageRecord from a file on disk."""

    def _record(path: Path, **overrides) -> ImageRecord:
        stat = path.stat()
        with Image.open(path) as img:
            width, height = img.size
            fmt = (img.format or "").lower()
        values = dict(
            path=str(path),
            size=stat.st_size,
            modified=stat.st_mtime,
            width=width,
            height=height,
            format=fmt,
        )
        values.update(overrides)
        return ImageRecord(**values)

    return _record
