"""Safety-gated deletion of duplicate images."""

import os
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

from send2trash import send2trash
from tqdm import tqdm

from dedup_guard.core.errors import SafetyViolation
from dedup_guard.core.models import (
    DeletionResult,
    DuplicateGroup,
    OperationLogEntry,
    OperationStatus,
)
from dedup_guard.core.safety import SafetyManager, WorkflowState
from dedup_guard.utils.config import Config
from dedup_guard.utils.logger import setup_logger

logger = setup_logger(__name__)

PathLike = Union[str, Path]


class SafeImageDeleter:
    """Deletes files only after every safety gate has passed."""

    def __init__(
        self,
        config: Config,
        safety: Optional[SafetyManager] = None,
        dispose: Optional[Callable[[str], None]] = None,
        show_progress: bool = True,
    ):
        """
        Initialize the deleter.

        Args:
            config: Configuration instance
            safety: Safety manager (created from config when None)
            dispose: File disposal function (default: recycle bin or unlink,
                per 'safety.use_recycle_bin')
            show_progress: Show a progress bar while deleting
        """
        self.config = config
        self.safety = safety or SafetyManager(config)
        self.show_progress = show_progress
        self.use_recycle_bin = config.get("safety.use_recycle_bin", True)
        self.dispose = dispose or self._default_dispose

    def _default_dispose(self, path: str) -> None:
        if self.use_recycle_bin:
            send2trash(path)
            logger.debug(f"Moved to recycle bin: {path}")
        else:
            Path(path).unlink()
            logger.debug(f"Permanently deleted: {path}")

    def delete_files(self, paths: Sequence[PathLike]) -> DeletionResult:
        """
        Delete files behind a verified backup.

        The batch is all-or-nothing up to the point of deletion: any missing
        file aborts it, and a BackupIntegrityError from the backup step
        propagates with nothing deleted.

        Returns:
            DeletionResult with deleted/failed paths and the backup id
        """
        requested = [os.path.abspath(p) for p in paths]
        result = DeletionResult(total=len(requested))

        targets = []
        for path in requested:
            if self.config.is_path_protected(Path(path)):
                logger.warning(f"Skipping protected file: {path}")
                result.failed.append({"path": path, "error": "Protected folder"})
            else:
                targets.append(path)

        if not targets:
            result.status = OperationStatus.FAILED if result.failed else OperationStatus.COMPLETED
            return result

        if self.safety.is_stopped:
            logger.warning("Emergency stop is active; deletion not started")
            result.status = OperationStatus.HALTED
            return result

        precheck = self.safety.verify_exist(targets)
        if not precheck.verified:
            return self._abort_missing(result, precheck.missing)

        # BackupIntegrityError propagates: nothing may be deleted
        manifest = self.safety.backup_before_deletion(targets)
        result.backup_id = manifest.backup_id

        if manifest.status == OperationStatus.HALTED:
            result.status = OperationStatus.HALTED
            self._log(result)
            return result

        # Files may have vanished while the backup ran
        recheck = self.safety.verify_exist(targets)
        if not recheck.verified:
            self.safety.transition(WorkflowState.FAILED)
            return self._abort_missing(result, recheck.missing)

        backed_up = {entry.original_path for entry in manifest.entries if entry.verified}

        self.safety.transition(WorkflowState.DELETING)
        iterator = tqdm(targets, desc="Deleting", unit="file") if self.show_progress else targets
        for path in iterator:
            if self.safety.is_stopped:
                result.status = OperationStatus.HALTED
                break
            if path not in backed_up:
                result.failed.append({"path": path, "error": "No verified backup"})
                continue
            try:
                self.dispose(path)
                result.deleted.append(path)
            except OSError as e:
                logger.error(f"Failed to delete {path}: {e}")
                result.failed.append({"path": path, "error": str(e)})

        if result.status != OperationStatus.HALTED:
            if not result.failed:
                result.status = OperationStatus.COMPLETED
            elif result.deleted:
                result.status = OperationStatus.PARTIAL
            else:
                result.status = OperationStatus.FAILED

        self.safety.transition(
            {
                OperationStatus.COMPLETED: WorkflowState.COMPLETED,
                OperationStatus.PARTIAL: WorkflowState.COMPLETED,
                OperationStatus.FAILED: WorkflowState.FAILED,
                OperationStatus.HALTED: WorkflowState.HALTED,
            }[result.status]
        )
        self._log(result)
        logger.info(
            f"Deleted {len(result.deleted)}/{result.total} files "
            f"({'recycle bin' if self.use_recycle_bin else 'permanent'}), backup {result.backup_id}"
        )
        return result

    def delete_groups(self, groups: Sequence[DuplicateGroup]) -> DeletionResult:
        """
        Delete the non-recommended images of each group.

        A group that fails its safety checks is skipped; the others proceed.
        """
        approved: List[DuplicateGroup] = []
        skipped = []

        for index, group in enumerate(groups):
            try:
                self.safety.run_safety_checks([group], start_index=index)
            except SafetyViolation as e:
                logger.error(f"Group {index} skipped: {e}")
                skipped.append({"group": index, "failed_checks": e.failed_checks, "error": str(e)})
                continue
            approved.append(group)

        candidates = [img.path for group in approved for img in group.deletion_candidates]
        result = self.delete_files(candidates) if candidates else DeletionResult(total=0)
        result.skipped_groups = skipped
        if skipped and result.status == OperationStatus.COMPLETED:
            result.status = OperationStatus.PARTIAL if result.deleted else OperationStatus.FAILED
        return result

    def _abort_missing(self, result: DeletionResult, missing: List[str]) -> DeletionResult:
        logger.error(f"Aborting deletion: {len(missing)} files missing")
        result.failed.extend({"path": path, "error": "File not found"} for path in missing)
        result.status = OperationStatus.FAILED
        self._log(result)
        return result

    def _log(self, result: DeletionResult) -> None:
        self.safety.record_operation(
            OperationLogEntry(
                operation="delete-files",
                status=result.status,
                counts={
                    "total": result.total,
                    "deleted": len(result.deleted),
                    "failed": len(result.failed),
                },
                backup_id=result.backup_id,
            )
        )
