"""Tests for duplicate detection."""

import shutil
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from dedup_guard.core.cancellation import CancellationToken
from dedup_guard.core.detector import DuplicateDetector, confidence_label
from dedup_guard.core.errors import EmergencyStopped
from dedup_guard.core.models import BackupKind, DetectionMethod, SimilarityScore
from dedup_guard.core.safety import SafetyManager


@pytest.fixture
def detector(config):
    return DuplicateDetector(config, show_progress=False)


def test_confidence_labels():
    assert confidence_label(0.97) == "very-high"
    assert confidence_label(0.95) == "very-high"
    assert confidence_label(0.91) == "high"
    assert confidence_label(0.80) == "medium"
    assert confidence_label(0.10) == "low"


def test_empty_input(detector):
    assert detector.find_duplicates([]) == []


def test_exact_copies_grouped(detector, tmp_path, make_record):
    """a and b are byte-identical; c differs in content."""
    a = tmp_path / "a.jpg"
    Image.new("RGB", (80, 60), color=(255, 0, 0)).save(a, "JPEG")
    b = tmp_path / "b.jpg"
    shutil.copy(a, b)
    c = tmp_path / "c.jpg"
    Image.new("RGB", (80, 60), color=(0, 0, 255)).save(c, "JPEG")

    records = [make_record(p) for p in (a, b, c)]
    groups = detector.find_duplicates(records)

    assert len(groups) == 1
    group = groups[0]
    assert group.method == DetectionMethod.EXACT
    assert group.similarity == 1.0
    assert group.confidence == "absolute"
    assert {img.path for img in group.images} == {str(a), str(b)}
    assert sum(img.recommended for img in group.images) == 1
    assert all(img.content_digest for img in records)


def test_same_digest_different_size_not_grouped(detector, make_record, make_image):
    path_a = make_image("a.png", color=(1, 2, 3))
    path_b = make_image("b.png", color=(200, 2, 3))
    a = make_record(path_a, content_digest="f" * 64)
    b = make_record(path_b, size=a.size + 1, content_digest="f" * 64)

    exact, remaining = detector.group_exact([a, b])

    assert exact == []
    assert remaining == [a, b]


def test_resized_copies_grouped_perceptually(detector, make_image, make_record):
    small = make_image("small.png", size=(100, 100), color=(20, 140, 60))
    large = make_image("large.png", size=(400, 400), color=(20, 140, 60))
    other = make_image("other.png", size=(100, 100), color=(240, 10, 200))

    groups = detector.find_duplicates([make_record(p) for p in (small, large, other)])

    assert len(groups) == 1
    group = groups[0]
    assert group.method == DetectionMethod.PERCEPTUAL
    assert group.similarity >= 0.92
    assert group.confidence == "high"
    # Higher resolution copy is kept
    assert group.images[0].path == str(large)
    assert group.images[0].recommended
    assert [img.path for img in group.deletion_candidates] == [str(small)]


def test_every_image_in_at_most_one_group(detector, make_image, make_record):
    paths = [make_image(f"{i}.png", size=(50 + i * 10, 50 + i * 10)) for i in range(5)]

    groups = detector.find_duplicates([make_record(p) for p in paths])

    seen = [img.path for group in groups for img in group.images]
    assert len(seen) == len(set(seen))
    assert all(len(group.images) >= 2 for group in groups)
    assert all(sum(img.recommended for img in g.images) == 1 for g in groups)


def test_pre_analysis_manifest_written(config, make_image, make_record):
    safety = SafetyManager(config)
    detector = DuplicateDetector(config, safety=safety, show_progress=False)
    paths = [make_image("a.png"), make_image("b.png", size=(32, 32))]

    detector.find_duplicates([make_record(p) for p in paths])

    backups = safety.list_backups(BackupKind.PRE_ANALYSIS)
    assert len(backups) == 1
    manifest = safety.load_manifest(backups[0]["id"])
    assert {entry.original_path for entry in manifest.entries} == {str(p) for p in paths}
    assert all(entry.verified and entry.content_digest for entry in manifest.entries)


def test_emergency_stop_before_detection(config, make_image, make_record):
    safety = SafetyManager(config)
    detector = DuplicateDetector(config, safety=safety, show_progress=False)
    records = [make_record(make_image(f"{i}.png")) for i in range(3)]

    safety.emergency_stop("test")

    with pytest.raises(EmergencyStopped):
        detector.find_duplicates(records)


def test_emergency_stop_during_clustering(detector, make_image, make_record):
    """A stop raised mid-comparison never yields partial groups."""
    records = [make_record(make_image(f"{i}.png", size=(40 + i, 40 + i))) for i in range(4)]
    token = CancellationToken()
    original = detector._score

    def _score_then_stop(features_a, features_b):
        token.cancel("stop")
        return original(features_a, features_b)

    with patch.object(detector, "_score", side_effect=_score_then_stop):
        with pytest.raises(EmergencyStopped):
            detector.find_duplicates(records, cancel=token)


def test_clustering_is_not_transitive(detector, make_image, make_record):
    """a~b and b~c but a!~c: the seed a takes b, and c is left ungrouped."""
    records = [
        make_record(make_image(f"{name}.png", color=color))
        for name, color in (("a", (10, 10, 10)), ("b", (120, 120, 120)), ("c", (250, 250, 250)))
    ]
    close = {frozenset({"a.png", "b.png"}), frozenset({"b.png", "c.png"})}

    def _fake_score(features_a, features_b):
        pair = frozenset({Path(features_a.path).name, Path(features_b.path).name})
        similarity = 0.99 if pair in close else 0.1
        return SimilarityScore(
            path_a=features_a.path,
            path_b=features_b.path,
            similarity=similarity,
            confidence=0.95,
            method=DetectionMethod.PERCEPTUAL,
        )

    with patch.object(detector, "_score", side_effect=_fake_score):
        groups = detector.find_duplicates(records)

    assert len(groups) == 1
    assert {Path(img.path).name for img in groups[0].images} == {"a.png", "b.png"}
    grouped = {img.path for group in groups for img in group.images}
    assert records[2].path not in grouped


def test_unhashable_image_still_clustered(detector, tmp_path, make_record):
    """An image whose digest fails skips exact grouping but still reaches similarity analysis."""
    a = tmp_path / "a.png"
    Image.new("RGB", (90, 90), color=(30, 90, 200)).save(a)
    b = tmp_path / "b.png"
    shutil.copy(a, b)
    records = [make_record(a), make_record(b)]
    real_digest_many = detector.hasher.digest_many

    def _digest_many_failing_b(paths):
        results = real_digest_many(paths)
        results[str(b)] = PermissionError("denied")
        return results

    with patch.object(detector.hasher, "digest_many", side_effect=_digest_many_failing_b), patch.object(
        detector, "cluster_similar", wraps=detector.cluster_similar
    ) as cluster:
        groups = detector.find_duplicates(records)

    assert records[1].content_digest is None
    assert records[0].content_digest is not None
    cluster.assert_called_once()
    assert [img.path for img in cluster.call_args[0][0]] == [str(a), str(b)]
    assert len(groups) == 1
    assert groups[0].method == DetectionMethod.PERCEPTUAL
    assert {img.path for img in groups[0].images} == {str(a), str(b)}
