"""Backup index persistence and the advisory lock file for one profile.

Layout under a profile's backup root::

    backup-metadata.json        current index
    backup-metadata.json.bak    previous valid index
    backup-metadata.lock        advisory lock (JSON: holder, pid, host, acquiredAt)
    backup-<id>/                one directory per retained backup
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import socket
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

import aiofiles
import aiofiles.os

from profilevault.core.errors import LockTimeout, NotFound
from profilevault.core.fileutil import atomic_write, ensure_dir, read_text
from profilevault.core.models import BACKUP_PREFIX, BackupIndex, BackupSettings, now_ms

log = logging.getLogger(__name__)

METADATA_NAME = "backup-metadata.json"
BAK_NAME = "backup-metadata.json.bak"
LOCK_NAME = "backup-metadata.lock"


class ReadStatus(str, Enum):
    OK = "ok"
    NEW = "new"
    RECOVERED = "recovered"
    REINITIALIZED = "reinitialized"


def new_holder_id(role: str = "engine") -> str:
    return f"{role}:{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


@dataclass
class LockInfo:
    """Contents of the lock file."""

    holder: str
    pid: int
    host: str
    acquired_at: int

    @classmethod
    def for_holder(cls, holder: str) -> LockInfo:
        return cls(holder=holder, pid=os.getpid(), host=socket.gethostname(), acquired_at=now_ms())

    def to_dict(self) -> dict:
        return {
            "holder": self.holder,
            "pid": self.pid,
            "host": self.host,
            "acquiredAt": self.acquired_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> LockInfo:
        if not isinstance(data, dict):
            raise ValueError(f"lock file must hold an object, got {type(data).__name__}")
        return cls(
            holder=str(data["holder"]),
            pid=int(data.get("pid", 0)),
            host=str(data.get("host", "")),
            acquired_at=int(data["acquiredAt"]),
        )


class AtomicFileStore:
    """Crash-safe storage of a BackupIndex plus lock-file mutual exclusion.

    Every index mutation must happen inside ``locked()``. Reads do not need
    the lock: writes are atomic renames, so a reader sees either the old or
    the new complete document.
    """

    def __init__(
        self,
        root: Path,
        profile_name: str,
        *,
        default_settings: BackupSettings | None = None,
        lock_config: dict | None = None,
    ) -> None:
        self.root = root
        self.profile_name = profile_name
        self.default_settings = default_settings or BackupSettings()
        lock_config = lock_config or {}
        self.lock_timeout_ms = int(lock_config.get("timeout_ms", 30_000))
        self.stale_after_ms = int(lock_config.get("stale_after_ms", 600_000))
        self.poll_ms = max(1, int(lock_config.get("poll_ms", 50)))
        self.max_poll_ms = max(self.poll_ms, int(lock_config.get("max_poll_ms", 1_000)))
        self._last_heartbeat: float | None = None

    @property
    def metadata_path(self) -> Path:
        return self.root / METADATA_NAME

    @property
    def bak_path(self) -> Path:
        return self.root / BAK_NAME

    @property
    def lock_path(self) -> Path:
        return self.root / LOCK_NAME

    def backup_path(self, backup_id: str) -> Path:
        """Resolve a backup id to its directory, rejecting anything path-like."""
        if (
            not backup_id.startswith(BACKUP_PREFIX)
            or "/" in backup_id
            or "\\" in backup_id
            or backup_id in (".", "..")
        ):
            raise NotFound(f"Invalid backup id: {backup_id!r}")
        return self.root / backup_id

    def fresh_index(self) -> BackupIndex:
        return BackupIndex(profile_name=self.profile_name, settings=replace(self.default_settings))

    # --- Index ---

    async def _load(self, path: Path) -> BackupIndex:
        raw = await read_text(path)
        index = BackupIndex.from_dict(json.loads(raw), self.default_settings)
        if not index.profile_name:
            index.profile_name = self.profile_name
        return index

    async def read_index_with_status(self) -> tuple[BackupIndex, ReadStatus]:
        """Read the index, falling back to .bak, then to a fresh empty index.

        Never raises for corrupt content. The returned status tells the
        caller whether recovery happened.
        """
        primary_missing = False
        try:
            return await self._load(self.metadata_path), ReadStatus.OK
        except FileNotFoundError:
            primary_missing = True
        except (OSError, ValueError, TypeError) as e:
            log.warning(
                "MetadataCorrupt: %s is unreadable (%s), trying %s",
                self.metadata_path, e, self.bak_path.name,
            )

        try:
            index = await self._load(self.bak_path)
        except FileNotFoundError:
            if primary_missing:
                return self.fresh_index(), ReadStatus.NEW
            bak_error = "no .bak file"
        except (OSError, ValueError, TypeError) as e:
            bak_error = str(e)
        else:
            log.warning("Recovered backup index for %s from %s", self.profile_name, self.bak_path)
            return index, ReadStatus.RECOVERED

        log.error(
            "MetadataUnrecoverable: index and .bak for %s are both unusable (%s); "
            "starting a fresh index, existing backup directories are orphaned",
            self.profile_name, bak_error,
        )
        return self.fresh_index(), ReadStatus.REINITIALIZED

    async def read_index(self) -> BackupIndex:
        index, _ = await self.read_index_with_status()
        return index

    async def write_index(self, index: BackupIndex) -> None:
        """Persist the index: current primary -> .bak, then atomic replace."""
        ensure_dir(self.root)

        try:
            current = await read_text(self.metadata_path)
        except FileNotFoundError:
            current = None
        except (OSError, ValueError):
            log.warning("Cannot read current index %s before overwrite", self.metadata_path, exc_info=True)
            current = None

        if current is not None:
            if self._is_valid(current):
                await atomic_write(self.bak_path, current)
            else:
                log.warning("Current index is corrupt; keeping existing %s", self.bak_path.name)

        await atomic_write(self.metadata_path, json.dumps(index.to_dict(), indent=2))
        log.debug("Wrote backup index for %s (%d entries)", self.profile_name, len(index.backups))

    @staticmethod
    def _is_valid(raw: str) -> bool:
        try:
            BackupIndex.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            return False
        return True

    async def find_orphans(self, index: BackupIndex) -> list[str]:
        """Backup directories on disk that the index does not reference."""
        known = {b.id for b in index.backups}

        def _scan() -> list[str]:
            if not self.root.is_dir():
                return []
            with os.scandir(self.root) as it:
                return sorted(
                    e.name for e in it
                    if e.is_dir() and e.name.startswith(BACKUP_PREFIX) and e.name not in known
                )

        return await asyncio.to_thread(_scan)

    # --- Lock ---

    async def _try_create_lock(self, info: LockInfo) -> bool:
        ensure_dir(self.root)
        try:
            async with aiofiles.open(self.lock_path, "x", encoding="utf-8") as f:
                await f.write(json.dumps(info.to_dict()))
                await f.flush()
        except FileExistsError:
            return False
        return True

    async def _inspect(self, path: Path) -> tuple[LockInfo | None, int] | None:
        """Return (parsed info or None, age in ms), or None if the file is gone."""
        try:
            raw = await read_text(path)
            st = await aiofiles.os.stat(path)
        except FileNotFoundError:
            return None
        mtime_ms = int(st.st_mtime * 1000)
        try:
            info = LockInfo.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            # Half-written or foreign content: age it by mtime
            return None, now_ms() - mtime_ms
        # the holder touches the file while it works; the newer mark wins
        return info, now_ms() - max(info.acquired_at, mtime_ms)

    async def _reclaim_if_stale(self, stale_after_ms: int) -> bool:
        """Remove a stale lock. Returns True if the caller should retry at once."""
        state = await self._inspect(self.lock_path)
        if state is None:
            return True
        info, age = state
        if age < stale_after_ms:
            return False

        aside = self.root / f"{LOCK_NAME}.stale-{uuid.uuid4().hex[:8]}"
        try:
            await aiofiles.os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return True

        moved = await self._inspect(aside)
        if moved is not None and moved[1] < stale_after_ms:
            # Lost a race: a live holder re-created the lock before our rename
            with contextlib.suppress(OSError):
                await asyncio.to_thread(os.link, aside, self.lock_path)
            with contextlib.suppress(OSError):
                await aiofiles.os.remove(aside)
            return False

        with contextlib.suppress(OSError):
            await aiofiles.os.remove(aside)
        log.warning(
            "Reclaimed stale backup lock for %s held by %s (age %d ms)",
            self.profile_name, info.holder if info else "<unreadable>", age,
        )
        return True

    async def acquire_lock(
        self,
        holder_id: str,
        timeout_ms: int | None = None,
        stale_after_ms: int | None = None,
    ) -> LockInfo:
        """Create the lock file exclusively, waiting with backoff.

        ``timeout_ms=0`` makes a single attempt (including a stale reclaim).
        Raises LockTimeout when the lock stays held past the timeout.
        """
        if timeout_ms is None:
            timeout_ms = self.lock_timeout_ms
        if stale_after_ms is None:
            stale_after_ms = self.stale_after_ms

        deadline = time.monotonic() + timeout_ms / 1000
        delay = self.poll_ms / 1000
        while True:
            info = LockInfo.for_holder(holder_id)
            if await self._try_create_lock(info):
                log.debug("Acquired backup lock for %s as %s", self.profile_name, holder_id)
                return info
            if await self._reclaim_if_stale(stale_after_ms):
                continue

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                current = await self._inspect(self.lock_path)
                holder = current[0].holder if current and current[0] else "unknown"
                raise LockTimeout(
                    f"Another backup or restore is running for {self.profile_name!r} "
                    f"(held by {holder}); gave up after {timeout_ms} ms"
                )
            log.debug("Backup lock busy for %s, retrying in %.0f ms", self.profile_name, delay * 1000)
            await asyncio.sleep(min(delay, remaining))
            delay = min(delay * 2, self.max_poll_ms / 1000)

    async def release_lock(self, holder_id: str) -> bool:
        """Remove the lock file only if ``holder_id`` still owns it."""
        state = await self._inspect(self.lock_path)
        if state is None:
            log.warning("Backup lock for %s was already gone at release", self.profile_name)
            return False
        info, _ = state
        if info is None or info.holder != holder_id:
            log.warning(
                "Not releasing backup lock for %s: owned by %s, not %s",
                self.profile_name, info.holder if info else "<unreadable>", holder_id,
            )
            return False
        try:
            await aiofiles.os.remove(self.lock_path)
        except FileNotFoundError:
            return False
        log.debug("Released backup lock for %s", self.profile_name)
        return True

    async def heartbeat(self) -> None:
        """Refresh the lock file's mtime so a long-running holder never looks stale.

        Called between files by long operations; throttled to a quarter of
        ``stale_after_ms``.
        """
        now = time.monotonic()
        if self._last_heartbeat is not None and now - self._last_heartbeat < self.stale_after_ms / 4000:
            return
        self._last_heartbeat = now
        try:
            await asyncio.to_thread(os.utime, self.lock_path)
        except FileNotFoundError:
            log.warning("Backup lock for %s disappeared while held", self.profile_name)

    async def is_locked(self) -> bool:
        """Non-blocking check: is a live (non-stale) lock held right now?"""
        state = await self._inspect(self.lock_path)
        if state is None:
            return False
        return state[1] < self.stale_after_ms

    @asynccontextmanager
    async def locked(self, holder_id: str, timeout_ms: int | None = None) -> AsyncIterator[LockInfo]:
        info = await self.acquire_lock(holder_id, timeout_ms)
        try:
            yield info
        finally:
            await self.release_lock(holder_id)
