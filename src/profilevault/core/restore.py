"""Restore a profile from a backup via a staged directory swap."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path

import aiofiles.os

from profilevault.core.engine import BackupEngine, warnings_for
from profilevault.core.errors import NotFound, RestoreFailed, SnapshotFailed
from profilevault.core.fileutil import fsync_dir
from profilevault.core.models import BackupEntry, BackupReason
from profilevault.core.store import new_holder_id

log = logging.getLogger(__name__)


@dataclass
class RestoreOutcome:
    restored: BackupEntry
    safety_entry: BackupEntry | None = None
    warnings: list[str] = field(default_factory=list)


def _safety_note(safety_id: str | None) -> str:
    if not safety_id:
        return ""
    return f" A backup of your profile taken just before the restore is available as {safety_id}."


class RestoreEngine:
    """Replace a live profile directory with the contents of a backup.

    Sequence, all under the profile's lock:

    1. look up the target in the index and on disk
    2. snapshot the live profile (the pre-restore safety backup)
    3. copy the target into a staging directory next to the live one
    4. rename live aside, rename staging into place, delete the aside copy

    A failure before step 4 leaves the live profile untouched. A failure
    inside step 4 renames the aside copy back.
    """

    def __init__(self, engine: BackupEngine) -> None:
        self.engine = engine
        self.store = engine.store
        self.copier = engine.copier

    async def restore(
        self,
        backup_id: str,
        live_dir: Path,
        *,
        lock_timeout_ms: int | None = None,
    ) -> RestoreOutcome:
        backup_path = self.store.backup_path(backup_id)
        holder = new_holder_id("restore")

        async with self.store.locked(holder, lock_timeout_ms):
            index, status = await self.store.read_index_with_status()
            warnings = warnings_for(status)

            target = index.get(backup_id)
            if target is None:
                raise NotFound(f"Backup {backup_id} not found for profile {self.store.profile_name!r}")
            if not backup_path.is_dir():
                raise NotFound(f"Backup folder for {backup_id} is missing from {self.store.root}")

            safety = None
            if live_dir.exists():
                try:
                    safety, pruned = await self.engine.snapshot_locked(
                        index, status, live_dir, BackupReason.PRE_RESTORE.value,
                        protect={backup_id},
                    )
                except SnapshotFailed as e:
                    raise SnapshotFailed(
                        f"Restore cancelled: could not back up the current profile first ({e}). "
                        "Your profile was not changed."
                    ) from e
                await self.engine.delete_dirs(pruned)
                log.info("Took pre-restore backup %s of %s", safety.id, live_dir)
            else:
                log.warning("Live profile %s does not exist; nothing to protect before restore", live_dir)

            safety_id = safety.id if safety else None
            token = uuid.uuid4().hex[:8]
            staging = await self._stage(backup_path, target, live_dir, token, safety_id)
            await self._swap(staging, live_dir, token, safety_id)

        log.info("Restored %s from backup %s", live_dir, backup_id)
        return RestoreOutcome(restored=target, safety_entry=safety, warnings=warnings)

    async def _stage(
        self,
        backup_path: Path,
        target: BackupEntry,
        live_dir: Path,
        token: str,
        safety_id: str | None,
    ) -> Path:
        """Copy the backup next to the live directory and check it is complete."""
        staging = live_dir.parent / f".{live_dir.name}.restore-{token}"
        await aiofiles.os.makedirs(live_dir.parent, exist_ok=True)
        try:
            stats = await self.copier.copy(backup_path, staging, on_file=self.store.heartbeat)
        except SnapshotFailed as e:
            raise RestoreFailed(
                f"Could not prepare backup {target.id} for restore ({e}). "
                f"Your profile was not changed.{_safety_note(safety_id)}",
                safety_id,
            ) from e

        if (stats.size, stats.file_count) != (target.size, target.file_count):
            await self.copier.discard(staging)
            raise RestoreFailed(
                f"Backup {target.id} is incomplete: found {stats.file_count} files / "
                f"{stats.size} bytes, expected {target.file_count} files / {target.size} bytes. "
                f"Your profile was not changed.{_safety_note(safety_id)}",
                safety_id,
            )
        return staging

    async def _swap(self, staging: Path, live_dir: Path, token: str, safety_id: str | None) -> None:
        aside = live_dir.parent / f".{live_dir.name}.pre-restore-{token}"
        moved_aside = False
        try:
            if live_dir.exists():
                await aiofiles.os.rename(live_dir, aside)
                moved_aside = True
            await aiofiles.os.rename(staging, live_dir)
        except BaseException as e:
            rolled_back = await self._rollback(aside, live_dir) if moved_aside else True
            await self.copier.discard(staging)
            if not isinstance(e, OSError):
                raise
            where = "" if rolled_back else f" Your previous profile folder was left at {aside}."
            raise RestoreFailed(
                f"Restore failed while swapping in the backup ({e}).{where}{_safety_note(safety_id)}",
                safety_id,
            ) from e

        await fsync_dir(live_dir.parent)
        if moved_aside:
            await self.copier.discard(aside)

    async def _rollback(self, aside: Path, live_dir: Path) -> bool:
        if live_dir.exists():
            log.error("Restore swap failed and %s is occupied; previous profile kept at %s", live_dir, aside)
            return False
        try:
            await aiofiles.os.rename(aside, live_dir)
        except OSError:
            log.error("Restore rollback failed; previous profile left at %s", aside, exc_info=True)
            return False
        log.error("Restore swap failed; previous profile put back at %s", live_dir)
        return True
