"""Duplicate detection: exact content grouping followed by similarity clustering."""

import os
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from dedup_guard.core.cancellation import CancellationToken
from dedup_guard.core.hasher import ContentHasher
from dedup_guard.core.models import DetectionMethod, DuplicateGroup, ImageRecord, SimilarityScore
from dedup_guard.core.perceptual import ImageFeatures, PerceptualEngine
from dedup_guard.core.providers import ProviderConsensus, SimilarityProvider
from dedup_guard.core.ranking import QualityRanker
from dedup_guard.core.safety import SafetyManager
from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)


def confidence_label(confidence: float) -> str:
    if confidence >= 0.95:
        return "very-high"
    if confidence >= 0.90:
        return "high"
    if confidence >= 0.75:
        return "medium"
    return "low"


class DuplicateDetector:
    """Detects duplicate and near-duplicate images and recommends which to keep."""

    def __init__(
        self,
        config: Config,
        providers: Optional[Sequence[SimilarityProvider]] = None,
        safety: Optional[SafetyManager] = None,
        show_progress: bool = True,
    ):
        """
        Initialize the duplicate detector.

        Args:
            config: Configuration instance
            providers: External similarity providers (none = local only)
            safety: Safety manager; when given, a pre-analysis manifest is
                written before detection
            show_progress: Show progress during detection
        """
        self.config = config
        self.show_progress = show_progress
        self.safety = safety
        self.max_workers = config.get("detection.max_workers") or os.cpu_count() or 1

        self.hasher = ContentHasher(
            config.get("safety.hash_algorithm", "sha256"), max_workers=self.max_workers
        )
        self.engine = PerceptualEngine(config)
        self.consensus = ProviderConsensus(config, self.engine, providers)
        self.ranker = QualityRanker(config)

    def find_duplicates(
        self,
        images: Sequence[ImageRecord],
        cancel: Optional[CancellationToken] = None,
    ) -> List[DuplicateGroup]:
        """
        Partition images into ranked duplicate groups.

        Args:
            images: Image records from the scanner
            cancel: Cancellation token (defaults to the safety manager's)

        Returns:
            Groups of two or more images, best image first and recommended

        Raises:
            EmergencyStopped: If a stop was requested before detection finished
        """
        if cancel is None:
            cancel = self.safety.cancel if self.safety else CancellationToken()

        if not images:
            logger.warning("No images provided for duplicate detection")
            return []

        logger.info(f"Finding duplicates in {len(images)} images")

        self.assign_digests(images)
        cancel.raise_if_cancelled("duplicate detection")

        if self.safety is not None and self.config.get("safety.backup_before_analysis", True):
            self.safety.backup_before_analysis(images)

        exact_groups, remaining = self.group_exact(images)
        logger.info(
            f"Found {len(exact_groups)} exact duplicate groups; "
            f"{len(remaining)} images left for similarity analysis"
        )
        cancel.raise_if_cancelled("duplicate detection")

        similar_groups = self.cluster_similar(remaining, cancel) if len(remaining) > 1 else []

        groups = exact_groups + similar_groups
        self.ranker.rank_groups(groups)

        logger.info(f"Found {len(groups)} duplicate groups")
        return groups

    def assign_digests(self, images: Sequence[ImageRecord]) -> None:
        """Compute content digests for images that lack one."""
        pending = [img for img in images if img.content_digest is None]
        if not pending:
            return

        results = self.hasher.digest_many(img.path for img in pending)
        for img in pending:
            outcome = results.get(img.path)
            if isinstance(outcome, OSError):
                logger.warning(f"Cannot hash {img.path}, excluded from exact grouping: {outcome}")
            elif outcome is not None:
                img.content_digest = outcome

    def group_exact(
        self, images: Sequence[ImageRecord]
    ) -> Tuple[List[DuplicateGroup], List[ImageRecord]]:
        """
        Group byte-identical images.

        Returns:
            (exact groups, images left for similarity analysis in input order)
        """
        partitions: Dict[Tuple[int, str], List[ImageRecord]] = OrderedDict()
        for img in images:
            if img.content_digest is None:
                continue
            partitions.setdefault(ContentHasher.grouping_key(img), []).append(img)

        exact_groups = []
        grouped = set()
        for members in partitions.values():
            if len(members) < 2:
                continue
            exact_groups.append(
                DuplicateGroup(
                    images=list(members),
                    similarity=1.0,
                    confidence="absolute",
                    method=DetectionMethod.EXACT,
                )
            )
            grouped.update(id(img) for img in members)

        remaining = [img for img in images if id(img) not in grouped]
        return exact_groups, remaining

    def cluster_similar(
        self,
        images: Sequence[ImageRecord],
        cancel: Optional[CancellationToken] = None,
    ) -> List[DuplicateGroup]:
        """
        Greedy seed clustering.

        Each unprocessed image seeds a cluster and absorbs every later
        unprocessed image that matches the seed itself. Matches are not
        transitive, and no image joins two clusters.
        """
        cancel = cancel or CancellationToken()
        features = self.engine.extract_many((img.path for img in images), cancel)
        cancel.raise_if_cancelled("similarity analysis")

        processed = set()
        groups: List[DuplicateGroup] = []
        total_pairs = len(images) * (len(images) - 1) // 2

        with tqdm(
            total=total_pairs,
            desc="Comparing images",
            unit="pair",
            disable=not self.show_progress,
        ) as progress, ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for i, seed in enumerate(images):
                cancel.raise_if_cancelled("similarity analysis")
                if i in processed:
                    continue
                processed.add(i)

                candidates = [j for j in range(i + 1, len(images)) if j not in processed]
                seed_features = features[seed.path]

                def _compare(j: int) -> Optional[SimilarityScore]:
                    if cancel.cancelled:
                        return None
                    return self._score(seed_features, features[images[j].path])

                scores = list(executor.map(_compare, candidates))
                progress.update(len(images) - i - 1)

                members = [seed]
                matched: List[SimilarityScore] = []
                for j, score in zip(candidates, scores):
                    if score is not None and self.consensus.is_match(score):
                        members.append(images[j])
                        matched.append(score)
                        processed.add(j)

                # A seed scan interrupted midway must not produce a group
                cancel.raise_if_cancelled("similarity analysis")

                if len(members) > 1:
                    groups.append(self._similarity_group(members, matched))

        return groups

    def _score(self, features_a: ImageFeatures, features_b: ImageFeatures) -> SimilarityScore:
        return self.consensus.compare_features(features_a, features_b)

    @staticmethod
    def _similarity_group(members: List[ImageRecord], scores: List[SimilarityScore]) -> DuplicateGroup:
        method = (
            DetectionMethod.PROVIDER_CONSENSUS
            if any(s.method == DetectionMethod.PROVIDER_CONSENSUS for s in scores)
            else DetectionMethod.PERCEPTUAL
        )
        return DuplicateGroup(
            images=members,
            similarity=min(s.similarity for s in scores),
            confidence=confidence_label(min(s.confidence for s in scores)),
            method=method,
            scores=scores,
        )
