"""Tests for profilevault.daemon.scheduler: BackupScheduler."""

import json
import shutil
from datetime import timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from profilevault.core.config import DEFAULTS
from profilevault.core.models import BackupSettings
from profilevault.core.service import BackupService
from profilevault.daemon.scheduler import BackupScheduler


def _service(tmp_path: Path, **backup) -> BackupService:
    config = {
        **DEFAULTS,
        "lock": {**DEFAULTS["lock"], "poll_ms": 5, "max_poll_ms": 20},
        "backup": {**DEFAULTS["backup"], **backup},
    }
    service = BackupService.for_profile(tmp_path, "News", config)
    service.profile_dir.mkdir(parents=True)
    (service.profile_dir / "profile.json").write_text(json.dumps({"version": 1}), encoding="utf-8")
    return service


class TestSchedulerInit:
    def test_defaults(self, tmp_path: Path):
        s = BackupScheduler(_service(tmp_path))
        assert s.job_id == "auto-backup:News"
        assert s.only_if_changed is True
        assert not s.is_running
        assert s.watch_job_id == "settings-watch:News"
        assert s.poll_ms == 30_000
        assert s.job is None

    def test_only_if_changed_from_config(self, tmp_path: Path):
        s = BackupScheduler(_service(tmp_path, only_if_changed=False))
        assert s.only_if_changed is False


class TestSchedulerTimer:
    @pytest.mark.asyncio
    async def test_start_schedules_job(self, tmp_path: Path):
        s = BackupScheduler(_service(tmp_path))
        await s.start()
        try:
            assert s.is_running
            assert s.job is not None
            assert s.job.trigger.interval == timedelta(minutes=30)
            assert s.interval_ms == 30 * 60 * 1000
        finally:
            s.stop()
        assert not s.is_running

    @pytest.mark.asyncio
    async def test_disabled_has_no_job(self, tmp_path: Path):
        service = _service(tmp_path)
        await service.set_settings(BackupSettings(enabled=False))
        s = BackupScheduler(service)
        await s.start()
        try:
            assert s.job is None
            assert s.interval_ms is None
        finally:
            s.stop()

    @pytest.mark.asyncio
    async def test_settings_change_reschedules(self, tmp_path: Path):
        service = _service(tmp_path)
        s = BackupScheduler(service)
        await s.start()
        try:
            await service.set_settings(BackupSettings(interval_ms=5 * 60 * 1000))
            assert s.job.trigger.interval == timedelta(minutes=5)

            await service.set_settings(BackupSettings(enabled=False))
            assert s.job is None
        finally:
            s.stop()

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, tmp_path: Path):
        service = _service(tmp_path)
        s = BackupScheduler(service)
        await s.start()
        s.stop()
        await service.set_settings(BackupSettings(interval_ms=5 * 60 * 1000))
        assert s.job is None

    @pytest.mark.asyncio
    async def test_settings_watch_runs_while_disabled(self, tmp_path: Path):
        service = _service(tmp_path)
        await service.set_settings(BackupSettings(enabled=False))
        s = BackupScheduler(service)
        await s.start()
        try:
            assert s.job is None
            assert s.watch_job is not None
            assert s.watch_job.trigger.interval == timedelta(seconds=30)
        finally:
            s.stop()

    @pytest.mark.asyncio
    async def test_reenabled_from_another_process(self, tmp_path: Path):
        service = _service(tmp_path)
        other = BackupService.for_profile(tmp_path, "News", service.config)
        s = BackupScheduler(service)
        await s.start()
        try:
            await other.set_settings(BackupSettings(enabled=False))
            await s.tick()
            assert s.job is None

            await other.set_settings(BackupSettings(interval_ms=5 * 60 * 1000))
            await s._watch()

            assert s.job is not None
            assert s.job.trigger.interval == timedelta(minutes=5)
            assert s.watch_job is not None
        finally:
            s.stop()

    @pytest.mark.asyncio
    async def test_settings_watch_survives_errors(self, tmp_path: Path):
        service = _service(tmp_path)
        s = BackupScheduler(service)
        await s.start()
        try:
            with patch.object(service, "get_settings", side_effect=OSError("gone")):
                await s._watch()
            assert s.job is not None
        finally:
            s.stop()

    @pytest.mark.asyncio
    async def test_missing_apscheduler(self, tmp_path: Path):
        s = BackupScheduler(_service(tmp_path))
        with patch.dict("sys.modules", {"apscheduler.schedulers.asyncio": None}):
            with pytest.raises(RuntimeError, match="APScheduler"):
                await s.start()


class TestTick:
    @pytest.mark.asyncio
    async def test_tick_creates_scheduled_backup(self, tmp_path: Path):
        service = _service(tmp_path)
        s = BackupScheduler(service)

        result = await s.tick()

        assert result.success
        assert result.entry.reason == "scheduled"
        assert s.last_result is result
        assert len(await service.list_backups()) == 1

    @pytest.mark.asyncio
    async def test_tick_skips_unchanged(self, tmp_path: Path):
        service = _service(tmp_path)
        s = BackupScheduler(service)
        await s.tick()

        result = await s.tick()

        assert result.skipped
        assert len(await service.list_backups()) == 1

    @pytest.mark.asyncio
    async def test_tick_always_backs_up_when_configured(self, tmp_path: Path):
        service = _service(tmp_path)
        s = BackupScheduler(service, only_if_changed=False)
        await s.tick()
        await s.tick()
        assert len(await service.list_backups()) == 2

    @pytest.mark.asyncio
    async def test_tick_skips_when_busy(self, tmp_path: Path):
        service = _service(tmp_path)
        await service.store.acquire_lock("restore:elsewhere")
        s = BackupScheduler(service)

        assert await s.tick() is None
        assert s.last_result is None
        assert not service.store.metadata_path.exists()

    @pytest.mark.asyncio
    async def test_tick_when_disabled(self, tmp_path: Path):
        service = _service(tmp_path)
        await service.set_settings(BackupSettings(enabled=False))
        s = BackupScheduler(service)

        assert await s.tick() is None
        assert await service.list_backups() == []

    @pytest.mark.asyncio
    async def test_tick_survives_errors(self, tmp_path: Path):
        service = _service(tmp_path)
        s = BackupScheduler(service)
        with patch.object(service, "get_settings", side_effect=RuntimeError("boom")):
            assert await s.tick() is None

    @pytest.mark.asyncio
    async def test_tick_reports_failure(self, tmp_path: Path):
        service = _service(tmp_path)
        s = BackupScheduler(service)
        shutil.rmtree(service.profile_dir)
        result = await s.tick()

        assert not result.success
        assert result.error_kind.value == "SnapshotFailed"
