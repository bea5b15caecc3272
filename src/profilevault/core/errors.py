"""Typed failures raised by the backup and restore engines."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    LOCK_TIMEOUT = "LockTimeout"
    METADATA_CORRUPT = "MetadataCorrupt"
    METADATA_UNRECOVERABLE = "MetadataUnrecoverable"
    SNAPSHOT_FAILED = "SnapshotFailed"
    NOT_FOUND = "NotFound"
    RESTORE_FAILED = "RestoreFailed"
    INVALID_SETTINGS = "InvalidSettings"
    CORRUPT = "Corrupt"
    INTERNAL = "Internal"


class BackupError(Exception):
    """Base class for engine failures. Each subclass carries its ErrorKind."""

    kind: ErrorKind = ErrorKind.INTERNAL


class LockTimeout(BackupError):
    kind = ErrorKind.LOCK_TIMEOUT


class MetadataCorrupt(BackupError):
    kind = ErrorKind.METADATA_CORRUPT


class MetadataUnrecoverable(BackupError):
    kind = ErrorKind.METADATA_UNRECOVERABLE


class SnapshotFailed(BackupError):
    kind = ErrorKind.SNAPSHOT_FAILED


class NotFound(BackupError):
    kind = ErrorKind.NOT_FOUND


class RestoreFailed(BackupError):
    """Raised when the staged swap fails.

    ``safety_backup_id`` names the pre-restore snapshot, if one was taken,
    so the caller can point the user at it.
    """

    kind = ErrorKind.RESTORE_FAILED

    def __init__(self, message: str, safety_backup_id: str | None = None) -> None:
        super().__init__(message)
        self.safety_backup_id = safety_backup_id


class InvalidSettings(BackupError, ValueError):
    kind = ErrorKind.INVALID_SETTINGS
