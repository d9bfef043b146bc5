"""Exception types raised by the detection and safety engines.

Unreadable or unwritable files surface as the built-in ``OSError``.
"""

from typing import List, Optional


class DedupGuardError(Exception):
    """Base class for dedup-guard errors."""


class DecodeError(DedupGuardError):
    """An image could not be decoded for a perceptual method."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot decode {path}: {reason}")
        self.path = path
        self.reason = reason


class ProviderFailure(DedupGuardError):
    """An external similarity provider failed to produce a vote."""

    def __init__(self, provider: str, reason: str):
        super().__init__(f"Provider '{provider}' failed: {reason}")
        self.provider = provider
        self.reason = reason


class BackupIntegrityError(DedupGuardError):
    """A backup copy could not be made or does not match its source."""

    def __init__(
        self,
        path: str,
        reason: str,
        source_digest: Optional[str] = None,
        backup_digest: Optional[str] = None,
    ):
        super().__init__(f"Backup verification failed for {path}: {reason}")
        self.path = path
        self.reason = reason
        self.source_digest = source_digest
        self.backup_digest = backup_digest


class SafetyViolation(DedupGuardError):
    """A duplicate group failed one or more pre-deletion safety checks."""

    def __init__(self, failed_checks: List[str], group_index: Optional[int] = None, details: str = ""):
        where = f" in group {group_index}" if group_index is not None else ""
        message = f"Safety checks failed{where}: {', '.join(failed_checks)}"
        if details:
            message += f" ({details})"
        super().__init__(message)
        self.failed_checks = failed_checks
        self.group_index = group_index
        self.details = details


class EmergencyStopped(DedupGuardError):
    """The operation was halted by an emergency stop."""

    def __init__(self, operation: str = "operation"):
        super().__init__(f"Emergency stop: {operation} halted")
        self.operation = operation
