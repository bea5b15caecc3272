"""Backup orchestration: lock, snapshot, record, prune, persist, release."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from pathlib import Path

from profilevault.core.errors import NotFound, SnapshotFailed
from profilevault.core.models import (
    BackupEntry,
    BackupIndex,
    BackupReason,
    BackupSettings,
    make_backup_id,
    now_ms,
    parse_backup_seq,
    parse_backup_timestamp,
)
from profilevault.core.retention import RetentionPolicy
from profilevault.core.snapshot import SnapshotCopier, profile_digest, tree_stats
from profilevault.core.store import AtomicFileStore, ReadStatus, new_holder_id

log = logging.getLogger(__name__)


@dataclass
class BackupRun:
    """Outcome of one create-backup call."""

    entry: BackupEntry | None = None
    pruned: list[BackupEntry] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skipped: bool = False


def warnings_for(status: ReadStatus) -> list[str]:
    """User-facing warnings for an index that needed recovery."""
    if status is ReadStatus.RECOVERED:
        return ["The backup index was damaged and has been recovered from its previous copy."]
    if status is ReadStatus.REINITIALIZED:
        return [
            "The backup index could not be read and has been started fresh. "
            "Earlier backup folders were left on disk and can be listed as orphans and adopted back."
        ]
    return []


class BackupEngine:
    """Creates and manages backups for a single profile.

    Every mutation runs inside the store's lock for its whole critical
    section. Pruned directories are deleted only after the index that no
    longer references them has been persisted.
    """

    def __init__(
        self,
        store: AtomicFileStore,
        copier: SnapshotCopier | None = None,
        policy: RetentionPolicy | None = None,
    ) -> None:
        self.store = store
        self.copier = copier or SnapshotCopier()
        self.policy = policy or RetentionPolicy()

    async def create_backup(
        self,
        source_dir: Path,
        *,
        reason: str = BackupReason.MANUAL.value,
        only_if_changed: bool = False,
        lock_timeout_ms: int | None = None,
    ) -> BackupEntry | None:
        """Snapshot ``source_dir``. Returns None only when skipped as unchanged."""
        run = await self.run_backup(
            source_dir,
            reason=reason,
            only_if_changed=only_if_changed,
            lock_timeout_ms=lock_timeout_ms,
        )
        return run.entry

    async def run_backup(
        self,
        source_dir: Path,
        *,
        reason: str = BackupReason.MANUAL.value,
        only_if_changed: bool = False,
        lock_timeout_ms: int | None = None,
    ) -> BackupRun:
        holder = new_holder_id("backup")
        async with self.store.locked(holder, lock_timeout_ms):
            index, status = await self.store.read_index_with_status()
            warnings = warnings_for(status)

            if only_if_changed and index.backups and index.last_backup_hash:
                if await self._digest(source_dir) == index.last_backup_hash:
                    log.info("Profile %s unchanged since last backup, skipping", self.store.profile_name)
                    return BackupRun(skipped=True, warnings=warnings)

            entry, pruned = await self.snapshot_locked(index, status, source_dir, reason)
            await self.delete_dirs(pruned)

        log.info(
            "Created backup %s for %s (%d files, %d bytes)",
            entry.id, self.store.profile_name, entry.file_count, entry.size,
        )
        return BackupRun(entry=entry, pruned=pruned, warnings=warnings)

    async def _digest(self, source_dir: Path) -> str:
        if not source_dir.is_dir():
            raise SnapshotFailed(f"Profile directory does not exist: {source_dir}")
        try:
            return await profile_digest(
                source_dir, self.copier.max_depth, self.copier.chunk_size, on_file=self.store.heartbeat,
            )
        except OSError as e:
            raise SnapshotFailed(f"Could not read profile {source_dir}: {e}") from e

    async def snapshot_locked(
        self,
        index: BackupIndex,
        status: ReadStatus,
        source_dir: Path,
        reason: str,
        *,
        protect: set[str] | None = None,
    ) -> tuple[BackupEntry, list[BackupEntry]]:
        """Copy, record, prune and persist. The caller must hold the lock.

        Returns the new entry and the entries pruned from the index, whose
        directories the caller deletes once it is safe to do so. On failure
        the index on disk is unchanged and no new directory remains.
        """
        if status in (ReadStatus.RECOVERED, ReadStatus.REINITIALIZED):
            await self._resume_counter(index)

        timestamp = now_ms()
        seq = index.backup_count + 1
        backup_id = make_backup_id(timestamp, seq)
        while self.store.backup_path(backup_id).exists():
            seq += 1
            backup_id = make_backup_id(timestamp, seq)
        backup_dir = self.store.backup_path(backup_id)

        stats = await self.copier.copy(source_dir, backup_dir, on_file=self.store.heartbeat)

        entry = BackupEntry(
            id=backup_id,
            timestamp=timestamp,
            size=stats.size,
            file_count=stats.file_count,
            reason=str(reason),
        )
        index.backups.insert(0, entry)
        index.backup_count = seq
        index.last_backup_hash = stats.digest
        if not index.profile_name:
            index.profile_name = self.store.profile_name

        plan = self.policy.prune(index.backups, index.settings, now=timestamp, protect=protect)
        index.backups = plan.keep

        try:
            await self.store.write_index(index)
        except OSError as e:
            await self.copier.discard(backup_dir)
            raise SnapshotFailed(f"Could not record backup {backup_id}: {e}") from e

        return entry, plan.remove

    async def _resume_counter(self, index: BackupIndex) -> None:
        """Keep ids unique after an index loss by skipping past orphan sequences."""
        orphans = await self.store.find_orphans(index)
        seqs = [s for s in (parse_backup_seq(name) for name in orphans) if s is not None]
        if seqs:
            index.backup_count = max(index.backup_count, max(seqs))
            log.warning(
                "Found %d orphaned backup folder(s) for %s; continuing ids after %d",
                len(orphans), self.store.profile_name, index.backup_count,
            )

    async def delete_dirs(self, entries: list[BackupEntry]) -> None:
        """Best-effort removal of backup directories no longer in the index."""
        for entry in entries:
            path = self.store.backup_path(entry.id)
            if not path.exists():
                continue
            await self.copier.discard(path)
        if entries:
            log.info("Pruned %d old backup(s) for %s", len(entries), self.store.profile_name)

    async def delete_backup(self, backup_id: str, *, lock_timeout_ms: int | None = None) -> BackupEntry:
        """Remove one backup from the index, then from disk."""
        self.store.backup_path(backup_id)
        holder = new_holder_id("delete")
        async with self.store.locked(holder, lock_timeout_ms):
            index = await self.store.read_index()
            entry = index.get(backup_id)
            if entry is None:
                raise NotFound(f"Backup {backup_id} not found for profile {self.store.profile_name!r}")
            was_newest = index.backups[0].id == backup_id
            index.backups = [b for b in index.backups if b.id != backup_id]
            if was_newest:
                # The stored digest described the snapshot just removed
                index.last_backup_hash = None
            await self.store.write_index(index)
            await self.delete_dirs([entry])
        log.info("Deleted backup %s for %s", backup_id, self.store.profile_name)
        return entry

    async def verify_backup(self, backup_id: str) -> list[str]:
        """Compare a backup directory against its index record."""
        index = await self.store.read_index()
        entry = index.get(backup_id)
        if entry is None:
            raise NotFound(f"Backup {backup_id} not found for profile {self.store.profile_name!r}")
        path = self.store.backup_path(backup_id)
        if not path.is_dir():
            return [f"backup folder {path} is missing"]

        size, count = await asyncio.to_thread(tree_stats, path)
        problems = []
        if size != entry.size:
            problems.append(f"size is {size} bytes, index records {entry.size}")
        if count != entry.file_count:
            problems.append(f"file count is {count}, index records {entry.file_count}")
        return problems

    async def list_backups(self) -> list[BackupEntry]:
        return (await self.store.read_index()).backups

    async def get_settings(self) -> BackupSettings:
        return (await self.store.read_index()).settings

    async def update_settings(
        self,
        settings: BackupSettings,
        *,
        lock_timeout_ms: int | None = None,
    ) -> BackupSettings:
        holder = new_holder_id("settings")
        async with self.store.locked(holder, lock_timeout_ms):
            index = await self.store.read_index()
            index.settings = replace(settings)
            await self.store.write_index(index)
        log.info("Updated backup settings for %s: %s", self.store.profile_name, settings.to_dict())
        return settings

    async def find_orphans(self) -> list[str]:
        return await self.store.find_orphans(await self.store.read_index())

    async def adopt_orphans(self, *, lock_timeout_ms: int | None = None) -> list[BackupEntry]:
        """Put orphaned backup directories back into the index.

        Size and file count are re-measured from disk and the timestamp is
        taken from the directory name (mtime if the name carries none).
        Adopted entries are merged newest-first and are not pruned here.
        """
        holder = new_holder_id("adopt")
        async with self.store.locked(holder, lock_timeout_ms):
            index = await self.store.read_index()
            adopted: list[BackupEntry] = []
            for name in await self.store.find_orphans(index):
                path = self.store.backup_path(name)
                try:
                    size, count = await asyncio.to_thread(tree_stats, path)
                    timestamp = parse_backup_timestamp(name)
                    if timestamp is None:
                        timestamp = int(path.stat().st_mtime * 1000)
                except OSError:
                    log.warning("Cannot read orphaned backup %s, leaving it alone", path, exc_info=True)
                    continue
                adopted.append(BackupEntry(
                    id=name,
                    timestamp=timestamp,
                    size=size,
                    file_count=count,
                    reason=BackupReason.ADOPTED.value,
                ))
                await self.store.heartbeat()

            if not adopted:
                return []

            index.backups = sorted(
                index.backups + adopted,
                key=lambda e: (e.timestamp, parse_backup_seq(e.id) or 0),
                reverse=True,
            )
            seqs = [s for s in (parse_backup_seq(e.id) for e in adopted) if s is not None]
            index.backup_count = max([index.backup_count, len(index.backups), *seqs])
            if index.backups[0] in adopted:
                # The stored digest no longer describes the newest entry
                index.last_backup_hash = None
            await self.store.write_index(index)

        log.info("Adopted %d orphaned backup(s) for %s", len(adopted), self.store.profile_name)
        return adopted
