"""
Safety engine: verified backups, manifests, pre-flight checks, restore and
emergency stop.

Every destructive workflow moves through
idle -> backing-up -> verifying -> ready-to-delete -> deleting -> completed,
with failed and halted as the other terminal states.
"""

import hashlib
import json
import os
import shutil
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from dedup_guard.core.cancellation import CancellationToken
from dedup_guard.core.errors import BackupIntegrityError, SafetyViolation
from dedup_guard.core.hasher import ContentHasher
from dedup_guard.core.models import (
    BackupKind,
    BackupManifest,
    DuplicateGroup,
    ImageRecord,
    ManifestEntry,
    OperationLogEntry,
    OperationStatus,
    RestoreResult,
    VerificationResult,
)
from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)

PathLike = Union[str, Path]

MANIFEST_FILE = "manifest.json"
VERIFICATION_FILE = "verification.json"


def _same_file(path_a: PathLike, path_b: PathLike) -> bool:
    """True when both paths name one file (same inode, or same absolute path)."""
    if os.path.abspath(path_a) == os.path.abspath(path_b):
        return True
    try:
        return os.path.samefile(path_a, path_b)
    except OSError:
        # A missing file is reported by the files-exist check
        return False


class WorkflowState(str, Enum):
    IDLE = "idle"
    BACKING_UP = "backing-up"
    VERIFYING = "verifying"
    READY_TO_DELETE = "ready-to-delete"
    DELETING = "deleting"
    COMPLETED = "completed"
    FAILED = "failed"
    HALTED = "halted"


TERMINAL_STATES = {WorkflowState.COMPLETED, WorkflowState.FAILED, WorkflowState.HALTED}

ALLOWED_TRANSITIONS = {
    WorkflowState.IDLE: {WorkflowState.BACKING_UP},
    WorkflowState.BACKING_UP: {WorkflowState.VERIFYING, WorkflowState.FAILED, WorkflowState.HALTED},
    WorkflowState.VERIFYING: {
        WorkflowState.READY_TO_DELETE,
        WorkflowState.FAILED,
        WorkflowState.HALTED,
    },
    WorkflowState.READY_TO_DELETE: {
        WorkflowState.DELETING,
        WorkflowState.FAILED,
        WorkflowState.HALTED,
    },
    WorkflowState.DELETING: TERMINAL_STATES,
}


class SafetyManager:
    """Guards every destructive operation behind verified backups and checks."""

    def __init__(
        self,
        config: Config,
        cancel: Optional[CancellationToken] = None,
        hasher: Optional[ContentHasher] = None,
    ):
        """
        Initialize the safety manager.

        Args:
            config: Configuration instance
            cancel: Cancellation token shared with detection/deletion work
            hasher: Content hasher used for verification
        """
        self.config = config
        self.cancel = cancel or CancellationToken()
        self.hasher = hasher or ContentHasher(config.get("safety.hash_algorithm", "sha256"))
        self.backup_workers = config.get("safety.backup_workers", 4)

        self.backup_dir = config.get_backup_dir()
        self.operations_log = config.get_operations_log()
        for kind in BackupKind:
            (self.backup_dir / kind.value).mkdir(parents=True, exist_ok=True)

        self.state = WorkflowState.IDLE
        self.operation_log: List[OperationLogEntry] = []
        self.safety_checks: List[Dict[str, Any]] = []

    # -- workflow state -------------------------------------------------

    def transition(self, new_state: WorkflowState) -> None:
        """
        Move the current workflow to a new state.

        Raises:
            RuntimeError: On a transition the workflow does not allow
        """
        if new_state not in ALLOWED_TRANSITIONS.get(self.state, set()):
            raise RuntimeError(f"Illegal workflow transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Workflow: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _begin_workflow(self) -> None:
        if self.state in TERMINAL_STATES or self.state == WorkflowState.READY_TO_DELETE:
            self.state = WorkflowState.IDLE
        if self.state != WorkflowState.IDLE:
            raise RuntimeError(f"A destructive workflow is already {self.state.value}")
        self.transition(WorkflowState.BACKING_UP)

    # -- emergency stop -------------------------------------------------

    @property
    def is_stopped(self) -> bool:
        return self.cancel.cancelled

    def emergency_stop(self, reason: str = "User initiated emergency stop") -> OperationLogEntry:
        """
        Halt all in-flight work cooperatively.

        Work already running finishes its current unit; nothing new starts,
        and the interrupted operation reports a halted status.
        """
        self.cancel.cancel(reason)
        logger.critical("EMERGENCY STOP ACTIVATED - all operations halting")
        entry = OperationLogEntry(
            operation="emergency-stop",
            status=OperationStatus.HALTED,
            detail=reason,
        )
        self._record(entry)
        return entry

    def clear_emergency_stop(self) -> None:
        """Re-arm after an emergency stop so new operations may start."""
        self.cancel.reset()
        logger.info("Emergency stop cleared")

    # -- backups --------------------------------------------------------

    def _new_backup_dir(self, kind: BackupKind) -> Tuple[str, Path]:
        prefix = "analysis" if kind == BackupKind.PRE_ANALYSIS else "deletion"
        while True:
            backup_id = f"{prefix}_{datetime.now().strftime('%Y%m%d_%H%M%S_%f')}"
            backup_path = self.backup_dir / kind.value / backup_id
            try:
                backup_path.mkdir(parents=True)
                return backup_id, backup_path
            except FileExistsError:
                continue

    def _write_manifest(self, backup_path: Path, manifest: BackupManifest) -> None:
        text = json.dumps(manifest.to_dict(), indent=2, sort_keys=True)
        verification = {
            "created": datetime.now().isoformat(),
            "algorithm": "sha256",
            "manifest_hash": hashlib.sha256(text.encode("utf-8")).hexdigest(),
            "item_count": manifest.total_items,
            "total_bytes": manifest.total_bytes,
        }
        for name, content in (
            (MANIFEST_FILE, text),
            (VERIFICATION_FILE, json.dumps(verification, indent=2)),
        ):
            tmp = backup_path / f".{name}.tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(content)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, backup_path / name)

    def backup_before_analysis(self, images: Sequence[ImageRecord]) -> BackupManifest:
        """
        Record a point-in-time manifest of the images about to be analyzed.

        No files are copied. Images whose digest cannot be computed are
        recorded with ``verified = False``.
        """
        backup_id, backup_path = self._new_backup_dir(BackupKind.PRE_ANALYSIS)

        missing = [img.path for img in images if img.content_digest is None]
        computed = self.hasher.digest_many(missing) if missing else {}

        entries = []
        for img in images:
            digest = img.content_digest
            if digest is None:
                result = computed.get(img.path)
                if isinstance(result, OSError):
                    logger.warning(f"Cannot checksum {img.path}: {result}")
                    digest = None
                else:
                    digest = result
            entries.append(
                ManifestEntry(
                    original_path=img.path,
                    size=img.size,
                    modified=img.modified,
                    content_digest=digest,
                    verified=digest is not None,
                )
            )

        manifest = BackupManifest(
            backup_id=backup_id,
            operation=BackupKind.PRE_ANALYSIS,
            created=datetime.now().isoformat(),
            entries=tuple(entries),
        )
        self._write_manifest(backup_path, manifest)

        self._record(
            OperationLogEntry(
                operation="pre-analysis-backup",
                status=OperationStatus.COMPLETED,
                counts={"items": manifest.total_items, "bytes": manifest.total_bytes},
                backup_id=backup_id,
            )
        )
        logger.info(f"Pre-analysis manifest created: {backup_id} ({len(entries)} images)")
        return manifest

    def _copy_one(self, index: int, source: str, backup_path: Path) -> Optional[Tuple[int, str, Path]]:
        if self.cancel.cancelled:
            return None
        target = backup_path / f"{index}_{Path(source).name}"
        shutil.copy2(source, target)
        return index, source, target

    def _verify_one(self, index: int, source: str, target: Path) -> Tuple[int, ManifestEntry, Optional[str]]:
        try:
            source_digest = self.hasher.digest(source)
            backup_digest = self.hasher.digest(target)
        except OSError as e:
            entry = ManifestEntry(
                original_path=source,
                backup_path=str(target),
                size=0,
                content_digest=None,
                verified=False,
            )
            return index, entry, f"cannot re-hash: {e}"

        stat = os.stat(source)
        entry = ManifestEntry(
            original_path=source,
            backup_path=str(target),
            size=stat.st_size,
            modified=stat.st_mtime,
            content_digest=source_digest,
            backup_digest=backup_digest,
            verified=source_digest == backup_digest,
        )
        return index, entry, None if entry.verified else "digest mismatch"

    def backup_before_deletion(self, paths: Sequence[PathLike]) -> BackupManifest:
        """
        Copy every file to a fresh backup location and verify each copy.

        Returns:
            Manifest with status 'completed', or 'halted' after an emergency
            stop (then only the copies that were made, all verified)

        Raises:
            BackupIntegrityError: If any copy fails or differs from its source;
                no file of the batch may be deleted
        """
        self._begin_workflow()
        sources = [os.path.abspath(p) for p in paths]
        backup_id, backup_path = self._new_backup_dir(BackupKind.PRE_DELETION)
        logger.info(f"Backing up {len(sources)} files before deletion ({backup_id})")

        copied: List[Tuple[int, str, Path]] = []
        copy_errors: List[Tuple[str, OSError]] = []

        def _copy(job: Tuple[int, str]):
            index, source = job
            try:
                return self._copy_one(index, source, backup_path)
            except OSError as e:
                return index, source, e

        with ThreadPoolExecutor(max_workers=self.backup_workers) as executor:
            for result in executor.map(_copy, enumerate(sources)):
                if result is None:
                    continue
                index, source, outcome = result
                if isinstance(outcome, OSError):
                    copy_errors.append((source, outcome))
                else:
                    copied.append((index, source, outcome))

        if copy_errors:
            source, error = copy_errors[0]
            self._fail_backup(backup_id, backup_path, len(sources))
            raise BackupIntegrityError(source, f"copy failed: {error}")

        # Copies that were made are verified even after an emergency stop
        self.transition(WorkflowState.VERIFYING)
        with ThreadPoolExecutor(max_workers=self.backup_workers) as executor:
            verified = list(executor.map(lambda job: self._verify_one(*job), copied))
        verified.sort(key=lambda item: item[0])

        failures = [(entry, reason) for _, entry, reason in verified if reason is not None]
        if failures:
            entry, reason = failures[0]
            for bad, why in failures:
                logger.error(f"Backup verification failed for {bad.original_path}: {why}")
            self._fail_backup(backup_id, backup_path, len(sources))
            raise BackupIntegrityError(
                entry.original_path,
                reason,
                source_digest=entry.content_digest,
                backup_digest=entry.backup_digest,
            )

        halted = self.cancel.cancelled and len(verified) < len(sources)
        manifest = BackupManifest(
            backup_id=backup_id,
            operation=BackupKind.PRE_DELETION,
            created=datetime.now().isoformat(),
            entries=tuple(entry for _, entry, _ in verified),
            status=OperationStatus.HALTED if halted else OperationStatus.COMPLETED,
        )
        self._write_manifest(backup_path, manifest)

        if halted:
            self.transition(WorkflowState.HALTED)
            logger.warning(
                f"Backup {backup_id} halted: {manifest.total_items}/{len(sources)} files "
                "copied and verified"
            )
        else:
            self.transition(WorkflowState.READY_TO_DELETE)
            logger.info(f"Pre-deletion backup created: {backup_id} ({manifest.total_items} files)")

        self._record(
            OperationLogEntry(
                operation="pre-deletion-backup",
                status=manifest.status,
                counts={
                    "requested": len(sources),
                    "items": manifest.total_items,
                    "bytes": manifest.total_bytes,
                },
                backup_id=backup_id,
            )
        )
        return manifest

    def _fail_backup(self, backup_id: str, backup_path: Path, requested: int) -> None:
        self.transition(WorkflowState.FAILED)
        shutil.rmtree(backup_path, ignore_errors=True)
        self._record(
            OperationLogEntry(
                operation="pre-deletion-backup",
                status=OperationStatus.FAILED,
                counts={"requested": requested},
                backup_id=backup_id,
                detail="backup integrity check failed",
            )
        )

    # -- checks ---------------------------------------------------------

    def verify_exist(self, paths: Sequence[PathLike]) -> VerificationResult:
        """
        Confirm every path still exists.

        Any missing path means the whole batch must be abandoned.
        """
        paths = [str(p) for p in paths]
        missing = [p for p in paths if not Path(p).exists()]
        result = VerificationResult(total=len(paths), existing=len(paths) - len(missing), missing=missing)
        if not result.verified:
            logger.warning(f"File verification failed: {len(missing)} files missing")
        return result

    def run_safety_checks(
        self, groups: Sequence[DuplicateGroup], start_index: int = 0
    ) -> List[Dict[str, Any]]:
        """
        Validate groups before any deletion.

        Each group must keep a recommended image, must not delete every
        image, must not list the recommended file again as a candidate
        under another path, and every referenced file must still exist.
        Groups that pass are marked ``safety_verified``.

        Args:
            groups: Groups to check
            start_index: Report index of the first group

        Raises:
            SafetyViolation: Naming the failed checks of the first failing group
        """
        checks: List[Dict[str, Any]] = []
        first_failure: Optional[Tuple[int, List[str], str]] = None

        for index, group in enumerate(groups, start=start_index):
            recommended = sum(1 for img in group.images if img.recommended)
            candidates = len(group.deletion_candidates)
            existence = self.verify_exist([img.path for img in group.images])
            aliases = [
                img.path
                for keep in group.images
                if keep.recommended
                for img in group.deletion_candidates
                if _same_file(img.path, keep.path)
            ]

            group_checks = [
                {
                    "check": "recommended-file-exists",
                    "group": index,
                    "passed": recommended >= 1,
                    "details": f"Group has {recommended} recommended files",
                },
                {
                    "check": "not-deleting-all",
                    "group": index,
                    "passed": candidates < len(group.images),
                    "details": f"Deleting {candidates} of {len(group.images)} files",
                },
                {
                    "check": "candidates-distinct-from-recommended",
                    "group": index,
                    "passed": not aliases,
                    "details": (
                        f"Same file as recommended: {', '.join(aliases)}"
                        if aliases
                        else "No candidate is the recommended file"
                    ),
                },
                {
                    "check": "files-exist",
                    "group": index,
                    "passed": existence.verified,
                    "details": f"{existence.existing}/{existence.total} files exist",
                },
            ]
            checks.extend(group_checks)

            failed = [c["check"] for c in group_checks if not c["passed"]]
            group.safety_verified = not failed
            if failed and first_failure is None:
                details = []
                if existence.missing:
                    details.append(f"missing: {', '.join(existence.missing)}")
                if aliases:
                    details.append(f"same file as recommended: {', '.join(aliases)}")
                first_failure = (index, failed, "; ".join(details))

        all_passed = first_failure is None
        self.safety_checks.append(
            {
                "timestamp": datetime.now().isoformat(),
                "operation": "duplicate-deletion",
                "all_passed": all_passed,
                "checks": checks,
            }
        )

        if not all_passed:
            index, failed, details = first_failure
            raise SafetyViolation(failed, group_index=index, details=details)

        logger.info(f"Safety checks passed: {len(checks)} checks completed")
        return checks

    # -- restore / inspection -------------------------------------------

    def _find_backup_dir(self, backup_id: str) -> Path:
        for kind in BackupKind:
            candidate = self.backup_dir / kind.value / backup_id
            if (candidate / MANIFEST_FILE).exists():
                return candidate
        raise FileNotFoundError(f"Backup not found: {backup_id}")

    def load_manifest(self, backup_id: str) -> BackupManifest:
        """
        Read a manifest written by this or an earlier process.

        Raises:
            FileNotFoundError: If no backup has this identifier
        """
        with open(self._find_backup_dir(backup_id) / MANIFEST_FILE, "r", encoding="utf-8") as f:
            return BackupManifest.from_dict(json.load(f))

    def restore(self, backup_id: str) -> RestoreResult:
        """
        Copy backed-up files back to their original locations.

        Idempotent: originals that already exist are left alone and counted
        as already restored.
        """
        manifest = self.load_manifest(backup_id)
        if manifest.operation != BackupKind.PRE_DELETION:
            raise ValueError(f"Backup {backup_id} is a {manifest.operation.value} manifest, not restorable")

        result = RestoreResult(backup_id=backup_id)

        for entry in manifest.entries:
            original = Path(entry.original_path)
            if original.exists():
                result.already_present.append(entry.original_path)
                continue

            if not entry.backup_path or not Path(entry.backup_path).exists():
                result.failed.append({"path": entry.original_path, "reason": "Backup copy missing"})
                continue

            try:
                original.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(entry.backup_path, original)
                restored_digest = self.hasher.digest(original)
            except OSError as e:
                result.failed.append({"path": entry.original_path, "reason": str(e)})
                continue

            if restored_digest != entry.content_digest:
                original.unlink(missing_ok=True)
                result.failed.append(
                    {"path": entry.original_path, "reason": "Hash mismatch after restore"}
                )
                continue

            result.restored.append(entry.original_path)
            logger.debug(f"Restored: {entry.backup_path} -> {original}")

        if not result.failed:
            status = OperationStatus.COMPLETED
        elif result.restored or result.already_present:
            status = OperationStatus.PARTIAL
        else:
            status = OperationStatus.FAILED

        self._record(
            OperationLogEntry(
                operation="restore-from-backup",
                status=status,
                counts={
                    "restored": len(result.restored),
                    "already_present": len(result.already_present),
                    "failed": len(result.failed),
                },
                backup_id=backup_id,
            )
        )
        logger.info(
            f"Restoration completed: {len(result.restored)} restored, "
            f"{len(result.already_present)} already present, {len(result.failed)} failed"
        )
        return result

    def verify_backup(self, backup_id: str) -> Dict[str, Any]:
        """
        Re-check a stored backup: manifest hash and, for pre-deletion backups,
        the digest of every backup copy.
        """
        backup_path = self._find_backup_dir(backup_id)
        problems: List[str] = []

        manifest_bytes = (backup_path / MANIFEST_FILE).read_bytes()
        verification_file = backup_path / VERIFICATION_FILE
        if verification_file.exists():
            with open(verification_file, "r", encoding="utf-8") as f:
                expected = json.load(f).get("manifest_hash")
            if hashlib.sha256(manifest_bytes).hexdigest() != expected:
                problems.append("manifest hash does not match verification record")
        else:
            problems.append("verification record missing")

        manifest = BackupManifest.from_dict(json.loads(manifest_bytes.decode("utf-8")))
        if manifest.operation == BackupKind.PRE_DELETION:
            for entry in manifest.entries:
                try:
                    digest = self.hasher.digest(entry.backup_path)
                except (OSError, TypeError) as e:
                    problems.append(f"{entry.original_path}: backup unreadable ({e})")
                    continue
                if digest != entry.content_digest:
                    problems.append(f"{entry.original_path}: backup digest mismatch")

        if problems:
            logger.warning(f"Backup {backup_id} failed verification: {'; '.join(problems)}")
        return {"backup_id": backup_id, "valid": not problems, "problems": problems}

    def list_backups(self, kind: Optional[BackupKind] = None) -> List[Dict[str, Any]]:
        """
        List stored backups, newest first.

        Args:
            kind: Restrict to one operation kind
        """
        backups = []
        for backup_kind in [kind] if kind else list(BackupKind):
            kind_dir = self.backup_dir / backup_kind.value
            if not kind_dir.exists():
                continue
            for item in kind_dir.iterdir():
                manifest_file = item / MANIFEST_FILE
                if not manifest_file.exists():
                    continue
                try:
                    with open(manifest_file, "r", encoding="utf-8") as f:
                        data = json.load(f)
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(f"Failed to read backup manifest {item.name}: {e}")
                    continue
                backups.append(
                    {
                        "id": data["backup_id"],
                        "operation": data["operation"],
                        "created": data["created"],
                        "status": data.get("status", OperationStatus.COMPLETED.value),
                        "items": data.get("total_items", 0),
                        "bytes": data.get("total_bytes", 0),
                    }
                )
        return sorted(backups, key=lambda b: b["created"], reverse=True)

    def safety_report(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "emergency_stopped": self.is_stopped,
            "operation_log": [entry.to_dict() for entry in self.operation_log],
            "safety_checks": list(self.safety_checks),
            "backups": {
                kind.value: self.list_backups(kind) for kind in BackupKind
            },
        }

    def record_operation(self, entry: OperationLogEntry) -> None:
        """Append an entry to the audit trail."""
        self._record(entry)

    def _record(self, entry: OperationLogEntry) -> None:
        self.operation_log.append(entry)
        try:
            self.operations_log.parent.mkdir(parents=True, exist_ok=True)
            with open(self.operations_log, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry.to_dict()) + "\n")
        except OSError as e:
            logger.warning(f"Failed to log operation: {e}")
