"""Tests for the shared data model."""

import pytest

from dedup_guard.core.models import (
    BackupKind,
    BackupManifest,
    DetectionMethod,
    DuplicateGroup,
    ImageRecord,
    ManifestEntry,
)


def test_content_digest_is_write_once():
    record = ImageRecord(path="a.jpg", size=1, modified=0.0)
    record.content_digest = "abc"
    record.content_digest = "abc"

    with pytest.raises(AttributeError):
        record.content_digest = "def"


def test_group_from_dict_resets_safety_flag():
    group = DuplicateGroup(
        images=[
            ImageRecord(path="a.jpg", size=10, modified=0.0, recommended=True),
            ImageRecord(path="b.jpg", size=7, modified=0.0),
        ],
        similarity=0.97,
        confidence="high",
        method=DetectionMethod.PERCEPTUAL,
        safety_verified=True,
    )

    loaded = DuplicateGroup.from_dict(group.to_dict())

    assert not loaded.safety_verified
    assert loaded.recommended.path == "a.jpg"
    assert [img.path for img in loaded.deletion_candidates] == ["b.jpg"]
    assert loaded.reclaimable_bytes == 7


def test_manifest_totals():
    manifest = BackupManifest(
        backup_id="deletion_x",
        operation=BackupKind.PRE_DELETION,
        created="2024-01-01T00:00:00",
        entries=(
            ManifestEntry(original_path="a", size=3, content_digest="1", verified=True),
            ManifestEntry(original_path="b", size=4, content_digest="2", verified=False),
        ),
    )

    assert manifest.total_items == 2
    assert manifest.total_bytes == 7
    assert not manifest.verified


def test_newer_manifest_format_rejected():
    with pytest.raises(ValueError, match="format version"):
        BackupManifest.from_dict(
            {
                "format_version": 99,
                "backup_id": "x",
                "operation": "pre-deletion",
                "created": "",
                "entries": [],
            }
        )
