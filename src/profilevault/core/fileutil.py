"""File system utilities: atomic writes, safe names, permissions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import platform
import re
import tempfile
from pathlib import Path

import aiofiles
import aiofiles.os

log = logging.getLogger(__name__)

FILE_MODE = 0o600
DIR_MODE = 0o700

TMP_PREFIX = ".tmp_"
TMP_SUFFIX = ".tmp"

_IS_WINDOWS = platform.system() == "Windows"


def safe_profile_name(name: str) -> str:
    """Sanitize a profile name for use as a directory name.

    Keeps letters, digits, spaces, hyphens and underscores.
    """
    cleaned = re.sub(r"[^A-Za-z0-9\s\-_]", "", name).strip()
    if not cleaned:
        raise ValueError(f"Profile name has no usable characters: {name!r}")
    return cleaned


def ensure_dir(path: Path) -> Path:
    """Create directory with secure permissions if it doesn't exist."""
    path.mkdir(parents=True, exist_ok=True)
    if not _IS_WINDOWS:
        path.chmod(DIR_MODE)
    return path


def ensure_file_permissions(path: Path) -> None:
    """Set file permissions to owner-only read/write."""
    if not _IS_WINDOWS and path.exists():
        path.chmod(FILE_MODE)


async def fsync_dir(path: Path) -> None:
    """Flush a directory entry to storage so a rename survives power loss.

    No-op on Windows, where directories cannot be opened for fsync.
    """
    if _IS_WINDOWS:
        return

    def _sync() -> None:
        fd = os.open(path, os.O_RDONLY)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)

    try:
        await asyncio.to_thread(_sync)
    except OSError:
        log.debug("Directory fsync not supported for %s", path, exc_info=True)


async def atomic_write(path: Path, content: str, encoding: str = "utf-8") -> None:
    """Write content to file atomically via temp file + fsync + rename.

    Readers see either the old complete file or the new complete file,
    and no temp file is left behind once this returns or raises.
    """
    ensure_dir(path.parent)

    # Temp file in the same directory so the rename is atomic on one FS
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent,
        prefix=TMP_PREFIX,
        suffix=TMP_SUFFIX,
    )
    os.close(fd)
    try:
        async with aiofiles.open(tmp_path, "w", encoding=encoding) as f:
            await f.write(content)
            await f.flush()
            await asyncio.to_thread(os.fsync, f.fileno())
        await aiofiles.os.replace(tmp_path, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp_path)
        raise

    ensure_file_permissions(path)
    await fsync_dir(path.parent)


async def read_text(path: Path, encoding: str = "utf-8") -> str:
    async with aiofiles.open(path, "r", encoding=encoding) as f:
        return await f.read()
