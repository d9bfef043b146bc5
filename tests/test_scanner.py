"""Test the image scanner module."""

from pathlib import Path

import pytest
from PIL import Image

from dedup_guard.core.scanner import ImageScanner


@pytest.fixture
def temp_image_dir(tmp_path):
    """Create a temporary directory with test files."""
    root = tmp_path / "library"
    root.mkdir()

    Image.new("RGB", (40, 30), color="red").save(root / "image1.jpg", "JPEG")
    Image.new("RGB", (20, 20), color="blue").save(root / "image2.png", "PNG")
    (root / "document.txt").touch()  # Not an image
    (root / ".hidden.jpg").touch()  # Hidden file

    subdir = root / "subdir"
    subdir.mkdir()
    Image.new("RGB", (10, 10), color="green").save(subdir / "image3.jpg", "JPEG")

    hidden_dir = root / ".cache"
    hidden_dir.mkdir()
    (hidden_dir / "thumb.jpg").touch()

    return root


def test_scanner_finds_images(config, temp_image_dir):
    """Test that scanner finds image files."""
    scanner = ImageScanner(config, show_progress=False)

    images = scanner.scan_directory(temp_image_dir, recursive=True, skip_hidden=True)

    # Should find 3 images (excluding hidden files/folders and document.txt)
    assert len(images) == 3
    assert {img.name for img in images} == {"image1.jpg", "image2.png", "image3.jpg"}
    assert images == sorted(images)


def test_scanner_non_recursive(config, temp_image_dir):
    """Test non-recursive scanning."""
    scanner = ImageScanner(config, show_progress=False)

    images = scanner.scan_directory(temp_image_dir, recursive=False, skip_hidden=True)

    assert {img.name for img in images} == {"image1.jpg", "image2.png"}


def test_scanner_includes_hidden_when_asked(config, temp_image_dir):
    scanner = ImageScanner(config, show_progress=False)

    images = scanner.scan_directory(temp_image_dir, recursive=True, skip_hidden=False)

    assert {".hidden.jpg", "thumb.jpg"} <= {img.name for img in images}


def test_scanner_nonexistent_directory(config):
    """Test that scanner raises error for nonexistent directory."""
    scanner = ImageScanner(config, show_progress=False)

    with pytest.raises(FileNotFoundError):
        scanner.scan_directory(Path("/nonexistent/path"))


def test_scanner_rejects_file(config, temp_image_dir):
    scanner = ImageScanner(config, show_progress=False)

    with pytest.raises(ValueError):
        scanner.scan_directory(temp_image_dir / "image1.jpg")


def test_scan_builds_records(config, temp_image_dir):
    """Records carry pixel size and format; unreadable images are skipped."""
    (temp_image_dir / "broken.png").write_bytes(b"not a png")
    scanner = ImageScanner(config, show_progress=False)

    records = scanner.scan([temp_image_dir, temp_image_dir])

    by_name = {Path(r.path).name: r for r in records}
    assert set(by_name) == {"image1.jpg", "image2.png", "image3.jpg"}
    assert (by_name["image1.jpg"].width, by_name["image1.jpg"].height) == (40, 30)
    assert by_name["image1.jpg"].format == "jpeg"
    assert by_name["image2.png"].format == "png"
    assert by_name["image2.png"].size == (temp_image_dir / "image2.png").stat().st_size


def test_scan_merges_relative_and_absolute_roots(config, temp_image_dir, monkeypatch):
    """One directory given under two spellings yields each file once, absolute."""
    monkeypatch.chdir(temp_image_dir.parent)
    scanner = ImageScanner(config, show_progress=False)

    records = scanner.scan([temp_image_dir, Path("library"), Path("library/subdir")])

    paths = [r.path for r in records]
    assert len(paths) == 3
    assert len(set(paths)) == 3
    assert all(Path(p).is_absolute() for p in paths)
    assert str(temp_image_dir / "subdir" / "image3.jpg") in paths
