"""Data model shared by the detection and safety engines."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

MANIFEST_FORMAT_VERSION = 1


class DetectionMethod(str, Enum):
    EXACT = "exact"
    PERCEPTUAL = "perceptual"
    PROVIDER_CONSENSUS = "provider-consensus"


class BackupKind(str, Enum):
    PRE_ANALYSIS = "pre-analysis"
    PRE_DELETION = "pre-deletion"


class OperationStatus(str, Enum):
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    HALTED = "halted"


@dataclass
class ImageRecord:
    """An image supplied by the scanner. Only referenced, never deleted here."""

    path: str
    size: int
    modified: float
    width: int = 0
    height: int = 0
    format: Optional[str] = None
    content_digest: Optional[str] = None
    quality_score: float = 0.0
    recommended: bool = False

    def __setattr__(self, name: str, value: Any) -> None:
        # The digest is write-once
        if name == "content_digest":
            current = self.__dict__.get("content_digest")
            if current is not None and value != current:
                raise AttributeError(f"content digest of {self.path} is already set")
        super().__setattr__(name, value)

    @property
    def resolution(self) -> int:
        """Pixel count (width * height)."""
        return self.width * self.height

    @property
    def name(self) -> str:
        return Path(self.path).name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "size": self.size,
            "modified": self.modified,
            "width": self.width,
            "height": self.height,
            "format": self.format,
            "content_digest": self.content_digest,
            "quality_score": self.quality_score,
            "recommended": self.recommended,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageRecord":
        return cls(
            path=data["path"],
            size=int(data["size"]),
            modified=float(data["modified"]),
            width=int(data.get("width") or 0),
            height=int(data.get("height") or 0),
            format=data.get("format"),
            content_digest=data.get("content_digest"),
            quality_score=float(data.get("quality_score") or 0.0),
            recommended=bool(data.get("recommended", False)),
        )


@dataclass(frozen=True)
class SimilarityScore:
    """Similarity judgement for one image pair. Lives for one detection pass."""

    path_a: str
    path_b: str
    similarity: float
    confidence: float
    method: DetectionMethod
    breakdown: Dict[str, float] = field(default_factory=dict)

    @property
    def pair(self) -> Tuple[str, str]:
        return (self.path_a, self.path_b)


@dataclass
class DuplicateGroup:
    """
    Images judged to be duplicates of each other.

    The first image is the one recommended to keep; every other image is a
    deletion candidate. ``safety_verified`` is only set by the safety engine.
    """

    images: List[ImageRecord]
    similarity: float
    confidence: str
    method: DetectionMethod
    scores: List[SimilarityScore] = field(default_factory=list)
    safety_verified: bool = False

    @property
    def recommended(self) -> Optional[ImageRecord]:
        return next((img for img in self.images if img.recommended), None)

    @property
    def deletion_candidates(self) -> List[ImageRecord]:
        return [img for img in self.images if not img.recommended]

    @property
    def reclaimable_bytes(self) -> int:
        return sum(img.size for img in self.deletion_candidates)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method.value,
            "similarity": self.similarity,
            "confidence": self.confidence,
            "safety_verified": self.safety_verified,
            "images": [img.to_dict() for img in self.images],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DuplicateGroup":
        return cls(
            images=[ImageRecord.from_dict(img) for img in data["images"]],
            similarity=float(data["similarity"]),
            confidence=data["confidence"],
            method=DetectionMethod(data["method"]),
            safety_verified=False,  # must be re-earned in this process
        )


@dataclass(frozen=True)
class ManifestEntry:
    original_path: str
    size: int
    content_digest: Optional[str]
    verified: bool
    backup_path: Optional[str] = None
    backup_digest: Optional[str] = None
    modified: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "original_path": self.original_path,
            "backup_path": self.backup_path,
            "size": self.size,
            "modified": self.modified,
            "content_digest": self.content_digest,
            "backup_digest": self.backup_digest,
            "verified": self.verified,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ManifestEntry":
        return cls(
            original_path=data["original_path"],
            size=int(data.get("size") or 0),
            content_digest=data.get("content_digest"),
            verified=bool(data.get("verified", False)),
            backup_path=data.get("backup_path"),
            backup_digest=data.get("backup_digest"),
            modified=data.get("modified"),
        )


@dataclass(frozen=True)
class BackupManifest:
    """Durable description of one backup. Never mutated after it is written."""

    backup_id: str
    operation: BackupKind
    created: str
    entries: Tuple[ManifestEntry, ...]
    status: OperationStatus = OperationStatus.COMPLETED

    @property
    def total_items(self) -> int:
        return len(self.entries)

    @property
    def total_bytes(self) -> int:
        return sum(entry.size for entry in self.entries)

    @property
    def verified(self) -> bool:
        return all(entry.verified for entry in self.entries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "format_version": MANIFEST_FORMAT_VERSION,
            "backup_id": self.backup_id,
            "operation": self.operation.value,
            "created": self.created,
            "status": self.status.value,
            "total_items": self.total_items,
            "total_bytes": self.total_bytes,
            "entries": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BackupManifest":
        version = data.get("format_version", MANIFEST_FORMAT_VERSION)
        if version > MANIFEST_FORMAT_VERSION:
            raise ValueError(f"Unsupported manifest format version: {version}")
        return cls(
            backup_id=data["backup_id"],
            operation=BackupKind(data["operation"]),
            created=data["created"],
            entries=tuple(ManifestEntry.from_dict(e) for e in data["entries"]),
            status=OperationStatus(data.get("status", OperationStatus.COMPLETED.value)),
        )


@dataclass(frozen=True)
class OperationLogEntry:
    operation: str
    status: OperationStatus
    counts: Dict[str, int] = field(default_factory=dict)
    backup_id: Optional[str] = None
    detail: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "operation": self.operation,
            "status": self.status.value,
            "counts": dict(self.counts),
            "backup_id": self.backup_id,
            "detail": self.detail,
        }


@dataclass
class VerificationResult:
    total: int
    existing: int
    missing: List[str]

    @property
    def verified(self) -> bool:
        return not self.missing


@dataclass
class RestoreResult:
    backup_id: str
    restored: List[str] = field(default_factory=list)
    already_present: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failed


@dataclass
class DeletionResult:
    total: int
    deleted: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)
    status: OperationStatus = OperationStatus.COMPLETED
    backup_id: Optional[str] = None
    skipped_groups: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deleted": list(self.deleted),
            "failed": list(self.failed),
            "total": self.total,
            "status": self.status.value,
            "backup_id": self.backup_id,
            "skipped_groups": list(self.skipped_groups),
        }
