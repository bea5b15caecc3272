"""Tests for profilevault.core.restore: staged restore with a safety backup."""

import json
from pathlib import Path
from unittest.mock import patch

import aiofiles.os
import pytest

from profilevault.core.engine import BackupEngine
from profilevault.core.errors import LockTimeout, NotFound, RestoreFailed, SnapshotFailed
from profilevault.core.models import BackupSettings
from profilevault.core.restore import RestoreEngine
from profilevault.core.store import AtomicFileStore


def _restorer(tmp_path: Path, **settings) -> RestoreEngine:
    store = AtomicFileStore(
        tmp_path / "backups",
        "News",
        default_settings=BackupSettings(**settings),
        lock_config={"poll_ms": 5, "max_poll_ms": 20},
    )
    return RestoreEngine(BackupEngine(store))


def _write_profile(live: Path, version: int) -> None:
    live.mkdir(parents=True, exist_ok=True)
    (live / "profile.json").write_text(json.dumps({"version": version}), encoding="utf-8")


def _read_version(live: Path) -> int:
    return json.loads((live / "profile.json").read_text(encoding="utf-8"))["version"]


class TestRestore:
    @pytest.mark.asyncio
    async def test_restore_replaces_live_and_takes_safety_backup(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        _write_profile(live, 2)

        outcome = await restorer.restore(target.id, live)

        assert _read_version(live) == 1
        assert outcome.restored.id == target.id
        safety = outcome.safety_entry
        assert safety.reason == "pre-restore"
        assert _read_version(restorer.store.backup_path(safety.id)) == 2

        backups = await restorer.engine.list_backups()
        assert [b.id for b in backups] == [safety.id, target.id]
        assert not restorer.store.lock_path.exists()

    @pytest.mark.asyncio
    async def test_no_leftover_staging_dirs(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        (live / "extra.txt").write_text("added later", encoding="utf-8")

        await restorer.restore(target.id, live)

        assert sorted(p.name for p in live.parent.iterdir()) == ["News"]
        assert not (live / "extra.txt").exists()

    @pytest.mark.asyncio
    async def test_target_survives_safety_prune(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path, max_count=1)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        _write_profile(live, 2)

        outcome = await restorer.restore(target.id, live)

        assert _read_version(live) == 1
        ids = [b.id for b in await restorer.engine.list_backups()]
        assert ids == [outcome.safety_entry.id, target.id]

    @pytest.mark.asyncio
    async def test_missing_live_dir_skips_safety_backup(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        await restorer.copier.discard(live)

        outcome = await restorer.restore(target.id, live)

        assert outcome.safety_entry is None
        assert _read_version(live) == 1

    @pytest.mark.asyncio
    async def test_unknown_backup(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        _write_profile(live, 2)
        with pytest.raises(NotFound):
            await _restorer(tmp_path).restore("backup-1-000001", live)
        assert _read_version(live) == 2

    @pytest.mark.asyncio
    async def test_missing_backup_folder(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        await restorer.copier.discard(restorer.store.backup_path(target.id))

        with pytest.raises(NotFound):
            await restorer.restore(target.id, live)
        assert len(await restorer.engine.list_backups()) == 1

    @pytest.mark.asyncio
    async def test_safety_backup_failure_cancels_restore(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        _write_profile(live, 2)

        with patch.object(restorer.engine, "snapshot_locked", side_effect=SnapshotFailed("disk full")):
            with pytest.raises(SnapshotFailed, match="Restore cancelled"):
                await restorer.restore(target.id, live)

        assert _read_version(live) == 2

    @pytest.mark.asyncio
    async def test_incomplete_backup_is_rejected(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        (restorer.store.backup_path(target.id) / "profile.json").unlink()
        _write_profile(live, 2)

        with pytest.raises(RestoreFailed) as exc_info:
            await restorer.restore(target.id, live)

        assert _read_version(live) == 2
        assert exc_info.value.safety_backup_id is not None
        assert sorted(p.name for p in live.parent.iterdir()) == ["News"]

    @pytest.mark.asyncio
    async def test_swap_failure_rolls_back(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        _write_profile(live, 2)

        real_rename = aiofiles.os.rename
        calls = []

        async def flaky_rename(src, dst):
            calls.append((Path(src), Path(dst)))
            # second rename moves staging into place
            if len(calls) == 2:
                raise OSError("device busy")
            return await real_rename(src, dst)

        with patch("profilevault.core.restore.aiofiles.os.rename", side_effect=flaky_rename):
            with pytest.raises(RestoreFailed, match="device busy"):
                await restorer.restore(target.id, live)

        assert _read_version(live) == 2
        assert sorted(p.name for p in live.parent.iterdir()) == ["News"]

    @pytest.mark.asyncio
    async def test_lock_held(self, tmp_path: Path):
        live = tmp_path / "profiles" / "News"
        restorer = _restorer(tmp_path)
        _write_profile(live, 1)
        target = await restorer.engine.create_backup(live)
        await restorer.store.acquire_lock("someone-else")

        with pytest.raises(LockTimeout):
            await restorer.restore(target.id, live, lock_timeout_ms=0)
