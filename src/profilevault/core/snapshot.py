"""Full-copy snapshots of a profile directory tree."""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import aiofiles
import aiofiles.os

from profilevault.core.errors import SnapshotFailed

log = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 32
DEFAULT_CHUNK_SIZE = 1024 * 1024

FileHook = Callable[[], Awaitable[None]]


@dataclass
class SnapshotStats:
    """What a snapshot copied."""

    size: int
    file_count: int
    digest: str


def _raise(err: OSError) -> None:
    raise err


def _walk(source: Path, max_depth: int) -> list[tuple[Path, str]]:
    """List regular files under source as (path, posix relative path).

    Sorted at every level so the order (and so the digest) is stable.
    Symlinks are followed; depth beyond ``max_depth`` is an error.
    """
    found: list[tuple[Path, str]] = []
    for root, dirs, files in os.walk(source, onerror=_raise, followlinks=True):
        rel_root = Path(root).relative_to(source)
        depth = len(rel_root.parts)
        if depth > max_depth:
            raise SnapshotFailed(
                f"Directory nesting under {source} exceeds {max_depth} levels at {rel_root}"
            )
        dirs.sort()
        for fname in sorted(files):
            path = Path(root) / fname
            if not path.is_file():
                log.debug("Skipping non-regular file: %s", path)
                continue
            found.append((path, (rel_root / fname).as_posix()))
    return found


def tree_stats(path: Path) -> tuple[int, int]:
    """Return (total bytes, file count) of a directory tree."""
    size = 0
    count = 0
    for root, _dirs, files in os.walk(path, onerror=_raise, followlinks=True):
        for fname in files:
            fpath = Path(root) / fname
            if fpath.is_file():
                size += fpath.stat().st_size
                count += 1
    return size, count


async def _hash_file(path: Path, chunk_size: int) -> bytes:
    h = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while chunk := await f.read(chunk_size):
            h.update(chunk)
    return h.digest()


def _fold(outer, rel: str, content_digest: bytes) -> None:
    outer.update(rel.encode("utf-8"))
    outer.update(b"\0")
    outer.update(content_digest)


async def profile_digest(
    source: Path,
    max_depth: int = DEFAULT_MAX_DEPTH,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    on_file: FileHook | None = None,
) -> str:
    """SHA-256 over relative paths and contents, identical to a copy's digest."""
    files = await asyncio.to_thread(_walk, source, max_depth)
    outer = hashlib.sha256()
    for path, rel in files:
        _fold(outer, rel, await _hash_file(path, chunk_size))
        if on_file is not None:
            await on_file()
    return outer.hexdigest()


class SnapshotCopier:
    """Recursively copy a profile directory into a new backup directory.

    The destination is created lazily and removed again if anything fails,
    so a failed snapshot never leaves a partial backup behind.
    """

    def __init__(self, max_depth: int = DEFAULT_MAX_DEPTH, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.max_depth = max_depth
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, config: dict) -> SnapshotCopier:
        snap = config.get("snapshot", {})
        return cls(
            max_depth=int(snap.get("max_depth", DEFAULT_MAX_DEPTH)),
            chunk_size=int(snap.get("chunk_size", DEFAULT_CHUNK_SIZE)),
        )

    async def copy(
        self,
        source_dir: Path,
        dest_dir: Path,
        on_file: FileHook | None = None,
    ) -> SnapshotStats:
        """Copy source_dir into dest_dir. Raises SnapshotFailed on any error.

        ``on_file`` is awaited after each copied file (used to keep the lock fresh).
        """
        if not source_dir.is_dir():
            raise SnapshotFailed(f"Profile directory does not exist: {source_dir}")
        if dest_dir.exists():
            raise SnapshotFailed(f"Snapshot destination already exists: {dest_dir}")

        try:
            return await self._copy_tree(source_dir, dest_dir, on_file)
        except BaseException as e:
            await self.discard(dest_dir)
            if isinstance(e, OSError):
                raise SnapshotFailed(f"Snapshot of {source_dir} failed: {e}") from e
            raise

    async def _copy_tree(
        self,
        source_dir: Path,
        dest_dir: Path,
        on_file: FileHook | None,
    ) -> SnapshotStats:
        files = await asyncio.to_thread(_walk, source_dir, self.max_depth)
        outer = hashlib.sha256()
        size = 0

        for src, rel in files:
            dst = dest_dir / rel
            await aiofiles.os.makedirs(dst.parent, exist_ok=True)
            copied, content_digest = await self._copy_file(src, dst)
            _fold(outer, rel, content_digest)
            size += copied
            if on_file is not None:
                await on_file()

        # An empty profile still gets its (empty) backup directory
        await aiofiles.os.makedirs(dest_dir, exist_ok=True)
        log.debug("Copied %d files (%d bytes) from %s to %s", len(files), size, source_dir, dest_dir)
        return SnapshotStats(size=size, file_count=len(files), digest=outer.hexdigest())

    async def _copy_file(self, src: Path, dst: Path) -> tuple[int, bytes]:
        h = hashlib.sha256()
        copied = 0
        async with aiofiles.open(src, "rb") as fin, aiofiles.open(dst, "wb") as fout:
            while chunk := await fin.read(self.chunk_size):
                await fout.write(chunk)
                h.update(chunk)
                copied += len(chunk)
        await asyncio.to_thread(shutil.copystat, src, dst)
        return copied, h.digest()

    async def discard(self, path: Path) -> None:
        """Best-effort removal of a snapshot directory tree."""
        if not path.exists():
            return
        try:
            await asyncio.to_thread(shutil.rmtree, path)
        except OSError:
            log.warning("Could not remove %s", path, exc_info=True)
