"""
Local perceptual similarity: average hash, structural distance and
colour-histogram intersection.

Features are extracted once per image and compared pairwise, so every
comparison is symmetric and no image is decoded twice in a pass.
"""

import math
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, Optional, Union

import numpy as np
from PIL import Image

from dedup_guard.core.cancellation import CancellationToken
from dedup_guard.core.errors import DecodeError
from dedup_guard.core.models import DetectionMethod, SimilarityScore
from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)

PathLike = Union[str, Path]

MAX_RGB_DISTANCE = math.sqrt(3) * 255
METHODS = ("ahash", "structural", "histogram")


@dataclass
class ImageFeatures:
    """Per-image fingerprints. A method whose value is None failed to decode."""

    path: str
    ahash: Optional[str] = None
    coarse_hash: Optional[str] = None
    grid: Optional[np.ndarray] = None
    histogram: Optional[np.ndarray] = None
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def usable(self) -> bool:
        return any(v is not None for v in (self.ahash, self.grid, self.histogram))


def load_rgb(path: PathLike) -> Image.Image:
    """
    Decode an image into RGB.

    Raises:
        DecodeError: If Pillow cannot read the file
    """
    try:
        with Image.open(path) as img:
            img.load()
            return img.convert("RGB")
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(str(path), str(e)) from e


def average_hash(image: Image.Image, hash_size: int = 8) -> str:
    """
    Compute the average hash of an image as a bit string.

    The image is reduced to a hash_size x hash_size luminance grid; each cell
    contributes '1' when brighter than the grid mean.
    """
    gray = image.convert("L").resize((hash_size, hash_size), Image.Resampling.BILINEAR)
    samples = np.asarray(gray, dtype=np.float64).flatten()
    mean = samples.mean()
    return "".join("1" if value > mean else "0" for value in samples)


def hash_similarity(hash_a: Optional[str], hash_b: Optional[str]) -> float:
    """Fraction of matching bit positions; 0 for missing or mismatched hashes."""
    if not hash_a or not hash_b or len(hash_a) != len(hash_b):
        return 0.0
    matches = sum(1 for a, b in zip(hash_a, hash_b) if a == b)
    return matches / len(hash_a)


def structural_grid(image: Image.Image, size: int = 64) -> np.ndarray:
    return np.asarray(
        image.resize((size, size), Image.Resampling.BILINEAR), dtype=np.float64
    )


def structural_similarity(grid_a: Optional[np.ndarray], grid_b: Optional[np.ndarray]) -> float:
    """1 - mean per-pixel RGB Euclidean distance / (sqrt(3) * 255)."""
    if grid_a is None or grid_b is None or grid_a.shape != grid_b.shape:
        return 0.0
    distances = np.sqrt(((grid_a - grid_b) ** 2).sum(axis=2))
    similarity = 1.0 - float(distances.mean()) / MAX_RGB_DISTANCE
    return min(max(similarity, 0.0), 1.0)


def color_histogram(image: Image.Image, max_side: int = 128) -> np.ndarray:
    """
    256-bin R, G, B histograms normalized by the sample count.

    Returns:
        Array of shape (3, 256) whose rows each sum to 1
    """
    sample = image.copy()
    sample.thumbnail((max_side, max_side))
    counts = np.asarray(sample.histogram(), dtype=np.float64).reshape(3, 256)
    total_samples = sample.width * sample.height
    return counts / total_samples


def histogram_similarity(hist_a: Optional[np.ndarray], hist_b: Optional[np.ndarray]) -> float:
    """Per-channel histogram intersection averaged over R, G and B."""
    if hist_a is None or hist_b is None:
        return 0.0
    per_channel = np.minimum(hist_a, hist_b).sum(axis=1)
    return min(max(float(per_channel.mean()), 0.0), 1.0)


class PerceptualEngine:
    """Computes local similarity scores between images."""

    def __init__(self, config: Config):
        """
        Initialize the engine.

        Args:
            config: Configuration instance (reads the 'detection' section)
        """
        self.hash_size = config.get("detection.hash_size", 8)
        self.coarse_hash_size = config.get("detection.coarse_hash_size", 32)
        self.structural_size = config.get("detection.structural_size", 64)
        self.histogram_size = config.get("detection.histogram_size", 128)
        self.local_confidence = config.get("detection.local_confidence", 0.90)
        self.method_weights: Dict[str, float] = config.get(
            "detection.method_weights",
            {"ahash": 0.4, "structural": 0.4, "histogram": 0.2},
        )
        self.max_workers = config.get("detection.max_workers") or os.cpu_count() or 1

    def extract(self, path: PathLike) -> ImageFeatures:
        """
        Extract all fingerprints for one image.

        Never raises for unreadable images; failed methods are left as None
        and recorded in ``errors``.
        """
        features = ImageFeatures(path=str(path))
        try:
            image = load_rgb(path)
        except DecodeError as e:
            logger.warning(f"{e}; perceptual methods skipped")
            features.errors = {method: e.reason for method in METHODS}
            return features

        steps = (
            ("ahash", "ahash", lambda: average_hash(image, self.hash_size)),
            ("coarse_hash", "coarse_hash", lambda: average_hash(image, self.coarse_hash_size)),
            ("structural", "grid", lambda: structural_grid(image, self.structural_size)),
            ("histogram", "histogram", lambda: color_histogram(image, self.histogram_size)),
        )
        for method, attribute, compute in steps:
            try:
                setattr(features, attribute, compute())
            except (OSError, ValueError) as e:
                logger.warning(f"{method} failed for {path}: {e}")
                features.errors[method] = str(e)

        return features

    def extract_many(
        self,
        paths: Iterable[PathLike],
        cancel: Optional[CancellationToken] = None,
    ) -> Dict[str, ImageFeatures]:
        """
        Extract features for many images on a thread pool.

        Images not yet started when ``cancel`` fires are omitted.
        """

        def _work(path: PathLike) -> Optional[ImageFeatures]:
            if cancel is not None and cancel.cancelled:
                return None
            return self.extract(path)

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            results = list(executor.map(_work, list(paths)))

        return {features.path: features for features in results if features is not None}

    def coarse_similarity(self, features_a: ImageFeatures, features_b: ImageFeatures) -> float:
        """Similarity of the coarse (pre-filter) hashes."""
        return hash_similarity(features_a.coarse_hash, features_b.coarse_hash)

    def compare_features(
        self, features_a: ImageFeatures, features_b: ImageFeatures
    ) -> Optional[SimilarityScore]:
        """
        Combine the three local methods into one weighted score.

        Returns:
            The local consensus, or None when no method succeeded for the pair
        """
        if features_b.path < features_a.path:
            features_a, features_b = features_b, features_a

        succeeded = {
            "ahash": features_a.ahash is not None and features_b.ahash is not None,
            "structural": features_a.grid is not None and features_b.grid is not None,
            "histogram": features_a.histogram is not None and features_b.histogram is not None,
        }
        if not any(succeeded.values()):
            return None

        breakdown = {
            "ahash": hash_similarity(features_a.ahash, features_b.ahash),
            "structural": structural_similarity(features_a.grid, features_b.grid),
            "histogram": histogram_similarity(features_a.histogram, features_b.histogram),
        }

        total_weight = sum(self.method_weights.get(m, 0.0) for m in METHODS)
        weighted = sum(breakdown[m] * self.method_weights.get(m, 0.0) for m in METHODS)
        similarity = weighted / total_weight if total_weight else 0.0

        return SimilarityScore(
            path_a=features_a.path,
            path_b=features_b.path,
            similarity=round(similarity, 6),
            confidence=self.local_confidence,
            method=DetectionMethod.PERCEPTUAL,
            breakdown=breakdown,
        )

    def compare(self, path_a: PathLike, path_b: PathLike) -> Optional[SimilarityScore]:
        """Extract and compare two images in one call."""
        return self.compare_features(self.extract(path_a), self.extract(path_b))
