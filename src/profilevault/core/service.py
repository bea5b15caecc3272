"""Profile backup service: the surface the UI and event bridge talk to.

Engines raise typed BackupError exceptions; this layer turns every outcome
into an OperationResult and notifies subscribers, so nothing unstructured
crosses into the caller.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from profilevault.core.config import DEFAULTS, profile_paths
from profilevault.core.engine import BackupEngine
from profilevault.core.errors import BackupError, ErrorKind, InvalidSettings
from profilevault.core.models import BackupEntry, BackupReason, BackupSettings
from profilevault.core.restore import RestoreEngine
from profilevault.core.snapshot import SnapshotCopier
from profilevault.core.store import AtomicFileStore

log = logging.getLogger(__name__)

EVENT_BACKUP_CREATED = "backup-created"
EVENT_BACKUP_SKIPPED = "backup-skipped"
EVENT_BACKUP_FAILED = "backup-failed"
EVENT_RESTORE_COMPLETED = "restore-completed"
EVENT_RESTORE_FAILED = "restore-failed"
EVENT_BACKUP_DELETED = "backup-deleted"
EVENT_DELETE_FAILED = "delete-failed"
EVENT_SETTINGS_CHANGED = "settings-changed"
EVENT_BACKUPS_ADOPTED = "backups-adopted"


@dataclass
class OperationResult:
    """Outcome of a service call, shaped for the UI."""

    success: bool
    entry: BackupEntry | None = None
    safety_entry: BackupEntry | None = None
    error_kind: ErrorKind | None = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    skipped: bool = False

    def to_dict(self) -> dict:
        if not self.success:
            data: dict = {
                "success": False,
                "errorKind": self.error_kind.value if self.error_kind else ErrorKind.INTERNAL.value,
                "message": self.message,
            }
        else:
            data = {"success": True, "message": self.message}
            if self.entry is not None:
                data["entry"] = self.entry.to_dict()
            if self.skipped:
                data["skipped"] = True
        if self.safety_entry is not None:
            data["safetyEntry"] = self.safety_entry.to_dict()
        if self.warnings:
            data["warnings"] = list(self.warnings)
        return data


@dataclass
class BackupEvent:
    name: str
    profile: str
    result: OperationResult


Listener = Callable[[BackupEvent], object]


def validate_settings(settings: BackupSettings, min_interval_ms: int) -> None:
    """Raise InvalidSettings if the settings cannot be applied."""
    if settings.max_count < 1:
        raise InvalidSettings("Keep at least one backup (max count must be 1 or more).")
    if settings.max_age_ms < 0:
        raise InvalidSettings("Maximum backup age cannot be negative.")
    if settings.enabled and settings.interval_ms < min_interval_ms:
        raise InvalidSettings(
            f"Backup interval must be at least {min_interval_ms // 1000} seconds."
        )


def _describe(entry: BackupEntry) -> str:
    return f"{entry.id} ({entry.file_count} files, {entry.size} bytes)"


class BackupService:
    """Backup, restore and settings operations for one profile."""

    def __init__(
        self,
        profile_name: str,
        profile_dir: Path,
        backup_root: Path,
        config: dict | None = None,
    ) -> None:
        self.profile_name = profile_name
        self.profile_dir = profile_dir
        self.config = config or DEFAULTS
        self.store = AtomicFileStore(
            backup_root,
            profile_name,
            default_settings=BackupSettings.from_config(self.config),
            lock_config=self.config.get("lock", {}),
        )
        self.engine = BackupEngine(self.store, SnapshotCopier.from_config(self.config))
        self.restorer = RestoreEngine(self.engine)
        self._listeners: list[Listener] = []

    @classmethod
    def for_profile(cls, home: Path, profile_name: str, config: dict | None = None) -> BackupService:
        """Build a service using the standard layout under ``home``."""
        profile_dir, backup_root = profile_paths(home, profile_name, config)
        return cls(profile_name, profile_dir, backup_root, config)

    # --- Notifications ---

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def _emit(self, name: str, result: OperationResult) -> None:
        event = BackupEvent(name=name, profile=self.profile_name, result=result)
        for listener in list(self._listeners):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                log.warning("Backup event listener failed on %s", name, exc_info=True)

    def _failure(self, exc: Exception) -> OperationResult:
        if isinstance(exc, BackupError):
            log.warning("%s for profile %s: %s", exc.kind.value, self.profile_name, exc)
            return OperationResult(success=False, error_kind=exc.kind, message=str(exc))
        log.error("Unexpected error in backup operation for %s", self.profile_name, exc_info=exc)
        return OperationResult(
            success=False,
            error_kind=ErrorKind.INTERNAL,
            message=f"Unexpected file system error: {exc}",
        )

    # --- Operations ---

    async def create_backup(
        self,
        reason: str = BackupReason.MANUAL.value,
        only_if_changed: bool = False,
        lock_timeout_ms: int | None = None,
    ) -> OperationResult:
        try:
            run = await self.engine.run_backup(
                self.profile_dir,
                reason=reason,
                only_if_changed=only_if_changed,
                lock_timeout_ms=lock_timeout_ms,
            )
        except (BackupError, OSError) as e:
            result = self._failure(e)
            await self._emit(EVENT_BACKUP_FAILED, result)
            return result

        if run.skipped:
            result = OperationResult(
                success=True,
                skipped=True,
                message="Profile unchanged since the last backup; no new backup needed.",
                warnings=run.warnings,
            )
            await self._emit(EVENT_BACKUP_SKIPPED, result)
            return result

        result = OperationResult(
            success=True,
            entry=run.entry,
            message=f"Backup {_describe(run.entry)} created.",
            warnings=run.warnings,
        )
        await self._emit(EVENT_BACKUP_CREATED, result)
        return result

    async def list_backups(self) -> list[BackupEntry]:
        return await self.engine.list_backups()

    async def restore(self, backup_id: str, lock_timeout_ms: int | None = None) -> OperationResult:
        try:
            outcome = await self.restorer.restore(
                backup_id, self.profile_dir, lock_timeout_ms=lock_timeout_ms,
            )
        except (BackupError, OSError) as e:
            result = self._failure(e)
            await self._emit(EVENT_RESTORE_FAILED, result)
            return result

        if outcome.safety_entry is not None:
            note = f" Your previous profile was saved first as backup {outcome.safety_entry.id}."
        else:
            note = " There was no existing profile to save first."
        result = OperationResult(
            success=True,
            entry=outcome.restored,
            safety_entry=outcome.safety_entry,
            message=f"Restored backup {outcome.restored.id}.{note}",
            warnings=outcome.warnings,
        )
        await self._emit(EVENT_RESTORE_COMPLETED, result)
        return result

    async def delete_backup(self, backup_id: str, lock_timeout_ms: int | None = None) -> OperationResult:
        try:
            entry = await self.engine.delete_backup(backup_id, lock_timeout_ms=lock_timeout_ms)
        except (BackupError, OSError) as e:
            result = self._failure(e)
            await self._emit(EVENT_DELETE_FAILED, result)
            return result

        result = OperationResult(success=True, entry=entry, message=f"Deleted backup {entry.id}.")
        await self._emit(EVENT_BACKUP_DELETED, result)
        return result

    async def verify_backup(self, backup_id: str) -> OperationResult:
        try:
            index = await self.store.read_index()
            problems = await self.engine.verify_backup(backup_id)
        except (BackupError, OSError) as e:
            return self._failure(e)

        entry = index.get(backup_id)
        if problems:
            return OperationResult(
                success=False,
                entry=entry,
                error_kind=ErrorKind.CORRUPT,
                message=f"Backup {backup_id} is damaged: " + "; ".join(problems),
            )
        return OperationResult(success=True, entry=entry, message=f"Backup {backup_id} is intact.")

    async def get_settings(self) -> BackupSettings:
        return await self.engine.get_settings()

    async def set_settings(
        self,
        settings: BackupSettings,
        lock_timeout_ms: int | None = None,
    ) -> OperationResult:
        min_interval = int(self.config.get("backup", {}).get("min_interval_ms", 60_000))
        try:
            validate_settings(settings, min_interval)
            await self.engine.update_settings(settings, lock_timeout_ms=lock_timeout_ms)
        except (BackupError, OSError) as e:
            return self._failure(e)

        result = OperationResult(success=True, message="Backup settings saved.")
        await self._emit(EVENT_SETTINGS_CHANGED, result)
        return result

    async def find_orphans(self) -> list[str]:
        return await self.engine.find_orphans()

    async def adopt_orphans(self, lock_timeout_ms: int | None = None) -> OperationResult:
        """Re-register backup folders that a lost index no longer lists."""
        try:
            adopted = await self.engine.adopt_orphans(lock_timeout_ms=lock_timeout_ms)
        except (BackupError, OSError) as e:
            return self._failure(e)

        if not adopted:
            return OperationResult(success=True, message="No orphaned backups to adopt.")
        result = OperationResult(
            success=True,
            entry=adopted[0],
            message=f"Adopted {len(adopted)} orphaned backup(s): " + ", ".join(e.id for e in adopted) + ".",
        )
        await self._emit(EVENT_BACKUPS_ADOPTED, result)
        return result

    async def is_busy(self) -> bool:
        """True while a backup, restore or settings change holds the lock."""
        return await self.store.is_locked()
