"""Content hashing for exact-duplicate grouping and backup verification."""

import hashlib
import os
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, Optional, Tuple, Union

from dedup_guard.core.models import ImageRecord
from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)

PathLike = Union[str, Path]

# Anything weaker than 256 bits is refused; these digests gate deletions.
_ACCEPTED_ALGORITHMS = {"sha256", "sha384", "sha512", "sha3_256", "sha3_512", "blake2b"}


class ContentHasher:
    """Computes collision-resistant digests of file contents."""

    CHUNK_SIZE = 1024 * 1024

    def __init__(self, algorithm: str = "sha256", max_workers: Optional[int] = None):
        """
        Initialize the hasher.

        Args:
            algorithm: hashlib algorithm name (256 bits or stronger)
            max_workers: Thread pool size for batch hashing (default: CPU count)
        """
        if algorithm not in _ACCEPTED_ALGORITHMS:
            raise ValueError(f"Unsupported or too weak hash algorithm: {algorithm}")
        self.algorithm = algorithm
        self.max_workers = max_workers or os.cpu_count() or 1

    def digest(self, path: PathLike) -> str:
        """
        Compute the digest of a file's bytes.

        Raises:
            OSError: If the file cannot be read
        """
        hasher = hashlib.new(self.algorithm)
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(self.CHUNK_SIZE), b""):
                hasher.update(chunk)
        return hasher.hexdigest()

    def digest_many(self, paths: Iterable[PathLike]) -> Dict[str, Union[str, OSError]]:
        """
        Hash many files concurrently.

        Returns:
            Mapping of path to digest, or to the OSError raised for that path
        """
        paths = [str(p) for p in paths]

        def _work(path: str) -> Tuple[str, Union[str, OSError]]:
            try:
                return path, self.digest(path)
            except OSError as e:
                return path, e

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return dict(executor.map(_work, paths))

    @staticmethod
    def grouping_key(record: ImageRecord) -> Tuple[int, str]:
        """Exact-duplicate key; a size mismatch never groups."""
        if record.content_digest is None:
            raise ValueError(f"No content digest for {record.path}")
        return (record.size, record.content_digest)
