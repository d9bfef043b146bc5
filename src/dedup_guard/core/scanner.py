"""File scanner that turns a directory tree into image records."""

import os
from pathlib import Path
from typing import Iterable, List, Set

from PIL import Image
from tqdm import tqdm

from dedup_guard.core.models import ImageRecord
from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)


class ImageScanner:
    """Scans directories for image files and reads their metadata."""

    IMAGE_EXTENSIONS = {
        ".jpg",
        ".jpeg",
        ".png",
        ".gif",
        ".bmp",
        ".webp",
        ".tiff",
        ".tif",
    }

    def __init__(self, config: Config, show_progress: bool = True):
        """
        Initialize the image scanner.

        Args:
            config: Configuration instance
            show_progress: Show progress bar during scanning
        """
        self.config = config
        self.show_progress = show_progress

    def scan_directory(
        self, directory: Path, recursive: bool = True, skip_hidden: bool = True
    ) -> List[Path]:
        """
        Scan a directory for image files.

        Args:
            directory: Directory path to scan
            recursive: Recursively scan subdirectories
            skip_hidden: Skip hidden files and folders

        Returns:
            Sorted list of image file paths

        Raises:
            FileNotFoundError: If directory doesn't exist
        """
        if not directory.exists():
            raise FileNotFoundError(f"Directory not found: {directory}")

        if not directory.is_dir():
            raise ValueError(f"Not a directory: {directory}")

        logger.info(f"Scanning directory: {directory}")

        images: List[Path] = []
        if recursive:
            for root, dirs, filenames in os.walk(directory):
                root_path = Path(root)
                # Prune hidden folders and symlinked folders (loops)
                dirs[:] = [
                    d
                    for d in dirs
                    if not (skip_hidden and d.startswith("."))
                    and not (root_path / d).is_symlink()
                ]
                images.extend(
                    root_path / name
                    for name in filenames
                    if self._accept(root_path / name, skip_hidden)
                )
        else:
            images.extend(
                item
                for item in directory.iterdir()
                if item.is_file() and self._accept(item, skip_hidden)
            )

        logger.info(f"Found {len(images)} image files")
        return sorted(images)

    def _accept(self, path: Path, skip_hidden: bool) -> bool:
        if skip_hidden and path.name.startswith("."):
            return False
        if path.is_symlink():
            return False
        return path.suffix.lower() in self.IMAGE_EXTENSIONS

    def build_records(self, paths: Iterable[Path]) -> List[ImageRecord]:
        """
        Read size, timestamps and pixel metadata for each image.

        Files that Pillow cannot open are skipped with a warning.
        """
        paths = list(paths)
        records: List[ImageRecord] = []
        iterator = (
            tqdm(paths, desc="Reading metadata", unit="file") if self.show_progress else paths
        )

        for path in iterator:
            try:
                stat = path.stat()
                with Image.open(path) as img:
                    width, height = img.size
                    fmt = img.format
            except OSError as e:
                logger.warning(f"Skipping unreadable image {path}: {e}")
                continue

            records.append(
                ImageRecord(
                    path=str(path.resolve()),
                    size=stat.st_size,
                    modified=stat.st_mtime,
                    width=width,
                    height=height,
                    format=fmt.lower() if fmt else path.suffix.lstrip(".").lower(),
                )
            )

        return records

    def scan(self, directories: Iterable[Path], recursive: bool = True) -> List[ImageRecord]:
        """
        Scan several directories and return unique image records.

        Paths are resolved before de-duplication, so overlapping roots or
        relative and absolute spellings of one directory yield each file once.
        """
        seen: Set[Path] = set()
        for directory in directories:
            try:
                found = self.scan_directory(Path(directory), recursive=recursive)
                seen.update(path.resolve() for path in found)
            except (FileNotFoundError, ValueError, PermissionError) as e:
                logger.error(f"Error scanning {directory}: {e}")
        return self.build_records(sorted(seen))
