"""Quality scoring and keep-recommendation for duplicate groups."""

import time
from pathlib import Path
from typing import Dict, Iterable, Optional

from dedup_guard.core.models import DuplicateGroup, ImageRecord
from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class QualityRanker:
    """Ranks the images of a group and marks the one to keep."""

    def __init__(self, config: Config):
        self.weights: Dict[str, float] = config.get(
            "ranking.weights",
            {"resolution": 0.4, "size": 0.2, "recency": 0.2, "format": 0.1, "depth": 0.1},
        )
        self.reference_resolution = config.get("ranking.reference_resolution", 10_000_000)
        self.reference_size = config.get("ranking.reference_size", 5 * 1024 * 1024)
        self.recency_days = config.get("ranking.recency_days", 365)
        self.max_depth = config.get("ranking.max_depth", 10)
        self.format_scores: Dict[str, float] = config.get("ranking.format_scores", {})
        self.default_format_score = config.get("ranking.default_format_score", 0.5)

    def quality_score(self, image: ImageRecord, now: Optional[float] = None) -> float:
        """
        Score an image in [0, 1]. Higher is better.

        Resolution dominates; file size, recency, format and folder depth
        break ties between otherwise equal copies.
        """
        now = time.time() if now is None else now

        resolution = min(image.resolution / self.reference_resolution, 1.0)
        size = min(image.size / self.reference_size, 1.0)

        age_days = max(now - image.modified, 0.0) / SECONDS_PER_DAY
        recency = max(0.0, 1.0 - age_days / self.recency_days)

        fmt = (image.format or Path(image.path).suffix.lstrip(".")).lower()
        format_score = self.format_scores.get(fmt, self.default_format_score)

        depth = min(len(Path(image.path).parts) / self.max_depth, 1.0)

        score = (
            resolution * self.weights.get("resolution", 0.0)
            + size * self.weights.get("size", 0.0)
            + recency * self.weights.get("recency", 0.0)
            + format_score * self.weights.get("format", 0.0)
            + depth * self.weights.get("depth", 0.0)
        )
        return min(max(score, 0.0), 1.0)

    def rank_group(self, group: DuplicateGroup, now: Optional[float] = None) -> None:
        """Score, sort (best first) and recommend the first image."""
        for image in group.images:
            image.quality_score = self.quality_score(image, now)
            image.recommended = False

        group.images.sort(key=lambda img: img.quality_score, reverse=True)
        if group.images:
            group.images[0].recommended = True

    def rank_groups(self, groups: Iterable[DuplicateGroup], now: Optional[float] = None) -> None:
        for group in groups:
            self.rank_group(group, now)
            enforce_single_recommendation(group)


def enforce_single_recommendation(group: DuplicateGroup) -> None:
    """
    Guarantee exactly one recommended image, so the deletion candidates are
    always a strict subset of the group.
    """
    if not group.images:
        return

    recommended = [img for img in group.images if img.recommended]
    if len(recommended) == 1:
        return

    if not recommended:
        logger.warning(f"No recommended image in group; keeping {group.images[0].path}")
        group.images[0].recommended = True
        return

    logger.warning(
        f"{len(recommended)} recommended images in a group of {len(group.images)}; "
        f"keeping only {recommended[0].path}"
    )
    keep = recommended[0]
    for img in group.images:
        img.recommended = img is keep
    # Recommended image always leads the group
    group.images.remove(keep)
    group.images.insert(0, keep)
