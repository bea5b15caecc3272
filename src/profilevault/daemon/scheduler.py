"""APScheduler-based periodic auto-backup for one profile."""

from __future__ import annotations

import logging

from profilevault.core.errors import ErrorKind
from profilevault.core.models import BackupReason, BackupSettings
from profilevault.core.service import (
    EVENT_SETTINGS_CHANGED,
    BackupEvent,
    BackupService,
    OperationResult,
)

log = logging.getLogger(__name__)


class BackupScheduler:
    """Interval auto-backup using APScheduler's AsyncIOScheduler.

    Settings are re-read on every tick and by a separate settings-watch
    job that keeps running while auto-backup is disabled, so changes made
    from another process (enabling included) apply without a restart. A tick never queues behind a running backup
    or restore: it checks the lock and skips if it is held.
    """

    def __init__(self, service: BackupService, *, only_if_changed: bool | None = None) -> None:
        self.service = service
        if only_if_changed is None:
            only_if_changed = bool(service.config.get("backup", {}).get("only_if_changed", True))
        self.only_if_changed = only_if_changed
        self.job_id = f"auto-backup:{service.profile_name}"
        self.watch_job_id = f"settings-watch:{service.profile_name}"
        self.poll_ms = int(service.config.get("daemon", {}).get("settings_poll_ms", 30_000))
        self.last_result: OperationResult | None = None
        self._scheduler = None
        self._interval_ms: int | None = None

    async def start(self) -> None:
        """Start the timer. Must be called from inside a running event loop."""
        try:
            from apscheduler.schedulers.asyncio import AsyncIOScheduler
        except ImportError as e:
            raise RuntimeError(
                f"APScheduler not installed: {e}. Install with: pip install profilevault"
            ) from e

        from apscheduler.triggers.interval import IntervalTrigger

        self._scheduler = AsyncIOScheduler()
        self._scheduler.start()
        self._scheduler.add_job(
            self._watch,
            trigger=IntervalTrigger(seconds=self.poll_ms / 1000),
            id=self.watch_job_id,
            name=self.watch_job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.service.subscribe(self._on_event)
        await self.refresh()
        log.info("BackupScheduler started for %s", self.service.profile_name)

    def stop(self) -> None:
        self.service.unsubscribe(self._on_event)
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        self._interval_ms = None
        log.info("BackupScheduler stopped for %s", self.service.profile_name)

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    @property
    def job(self):
        if self._scheduler is None:
            return None
        return self._scheduler.get_job(self.job_id)

    @property
    def watch_job(self):
        if self._scheduler is None:
            return None
        return self._scheduler.get_job(self.watch_job_id)

    @property
    def interval_ms(self) -> int | None:
        return self._interval_ms

    async def refresh(self) -> None:
        """Re-apply current settings to the timer."""
        self._apply(await self.service.get_settings())

    def _apply(self, settings: BackupSettings) -> None:
        if self._scheduler is None:
            return
        if not settings.enabled:
            if self.job is not None:
                self._scheduler.remove_job(self.job_id)
                log.info("Auto-backup disabled for %s; timer cancelled", self.service.profile_name)
            self._interval_ms = None
            return
        if self.job is not None and settings.interval_ms == self._interval_ms:
            return

        from apscheduler.triggers.interval import IntervalTrigger

        self._scheduler.add_job(
            self.tick,
            trigger=IntervalTrigger(seconds=settings.interval_ms / 1000),
            id=self.job_id,
            name=self.job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self._interval_ms = settings.interval_ms
        log.info(
            "Auto-backup for %s every %.1f min",
            self.service.profile_name, settings.interval_ms / 60_000,
        )

    async def _watch(self) -> None:
        try:
            await self.refresh()
        except Exception:
            log.warning("Settings refresh failed for %s", self.service.profile_name, exc_info=True)

    async def _on_event(self, event: BackupEvent) -> None:
        if event.name == EVENT_SETTINGS_CHANGED:
            await self.refresh()

    async def tick(self) -> OperationResult | None:
        """One timer firing. Returns the backup result, or None if skipped."""
        try:
            settings = await self.service.get_settings()
            self._apply(settings)
            if not settings.enabled:
                return None

            if await self.service.is_busy():
                log.info("Auto-backup tick for %s skipped: another operation is running",
                         self.service.profile_name)
                return None

            result = await self.service.create_backup(
                reason=BackupReason.SCHEDULED.value,
                only_if_changed=self.only_if_changed,
                lock_timeout_ms=0,
            )
        except Exception:
            log.warning("Auto-backup tick failed for %s", self.service.profile_name, exc_info=True)
            return None

        if not result.success and result.error_kind is ErrorKind.LOCK_TIMEOUT:
            log.info("Auto-backup tick for %s skipped: lock taken", self.service.profile_name)
            return None
        if not result.success:
            log.warning("Scheduled backup failed for %s: %s", self.service.profile_name, result.message)
        self.last_result = result
        return result
