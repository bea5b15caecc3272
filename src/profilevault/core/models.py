"""Core data models for profilevault."""

from __future__ import annotations

import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

BACKUP_PREFIX = "backup-"

_MS_ID = re.compile(r"^backup-(\d+)-(\d+)$")
_ISO_ID = re.compile(r"^backup-(\d{4})-(\d{2})-(\d{2})T(\d{2})-(\d{2})-(\d{2})-(\d{3})Z$")


class BackupReason(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    PRE_RESTORE = "pre-restore"
    ADOPTED = "adopted"


# --- Helpers ---


def now_ms() -> int:
    return int(time.time() * 1000)


def make_backup_id(timestamp: int, seq: int) -> str:
    """Build a backup id that sorts by creation time, then by sequence."""
    return f"{BACKUP_PREFIX}{timestamp}-{seq:06d}"


def parse_backup_seq(backup_id: str) -> int | None:
    """Return the sequence number encoded in a backup id, or None."""
    m = _MS_ID.match(backup_id)
    return int(m.group(2)) if m else None


def parse_backup_timestamp(backup_id: str) -> int | None:
    """Return the creation time (epoch ms) encoded in a backup id, or None.

    Understands both `backup-<ms>-<seq>` and the older ISO form
    `backup-2024-01-31T09-15-00-123Z`.
    """
    m = _MS_ID.match(backup_id)
    if m:
        return int(m.group(1))
    m = _ISO_ID.match(backup_id)
    if m:
        year, month, day, hour, minute, second, ms = (int(g) for g in m.groups())
        try:
            dt = datetime(year, month, day, hour, minute, second, tzinfo=timezone.utc)
        except ValueError:
            return None
        return int(dt.timestamp()) * 1000 + ms
    return None


def _require_int(data: dict, key: str, default: int | None = None) -> int:
    value = data.get(key, default)
    # bool is an int subclass; it is never a valid count or timestamp
    if not isinstance(value, int) or isinstance(value, bool):
        raise ValueError(f"{key!r} must be an integer, got {value!r}")
    return value


# --- Core Models ---


@dataclass
class BackupSettings:
    """Auto-backup and retention settings for one profile."""

    enabled: bool = True
    interval_ms: int = 30 * 60 * 1000
    max_count: int = 25
    max_age_ms: int = 30 * 24 * 60 * 60 * 1000

    def to_dict(self) -> dict:
        return {
            "enabled": self.enabled,
            "intervalMs": self.interval_ms,
            "maxCount": self.max_count,
            "maxAgeMs": self.max_age_ms,
        }

    @classmethod
    def from_dict(cls, data: dict | None, defaults: BackupSettings | None = None) -> BackupSettings:
        """Build settings from a stored document, filling gaps from ``defaults``."""
        base = defaults or cls()
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"settings must be an object, got {type(data).__name__}")
        enabled = data.get("enabled", base.enabled)
        if not isinstance(enabled, bool):
            raise ValueError(f"'enabled' must be true or false, got {enabled!r}")
        return cls(
            enabled=enabled,
            interval_ms=_require_int(data, "intervalMs", base.interval_ms),
            max_count=_require_int(data, "maxCount", base.max_count),
            max_age_ms=_require_int(data, "maxAgeMs", base.max_age_ms),
        )

    @classmethod
    def from_config(cls, config: dict) -> BackupSettings:
        """Default settings from the ``backup.defaults`` section of config.yaml."""
        d = config.get("backup", {}).get("defaults", {})
        base = cls()
        return cls(
            enabled=bool(d.get("enabled", base.enabled)),
            interval_ms=int(d.get("interval_ms", base.interval_ms)),
            max_count=int(d.get("max_count", base.max_count)),
            max_age_ms=int(d.get("max_age_ms", base.max_age_ms)),
        )


@dataclass
class BackupEntry:
    """One retained snapshot of a profile directory."""

    id: str
    timestamp: int
    size: int
    file_count: int
    reason: str = BackupReason.MANUAL.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "size": self.size,
            "fileCount": self.file_count,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: dict) -> BackupEntry:
        if not isinstance(data, dict):
            raise ValueError(f"backup entry must be an object, got {type(data).__name__}")
        backup_id = data.get("id")
        if not isinstance(backup_id, str) or not backup_id.startswith(BACKUP_PREFIX):
            raise ValueError(f"invalid backup id: {backup_id!r}")
        return cls(
            id=backup_id,
            timestamp=_require_int(data, "timestamp"),
            size=_require_int(data, "size"),
            file_count=_require_int(data, "fileCount"),
            reason=str(data.get("reason", BackupReason.MANUAL.value)),
        )


@dataclass
class BackupIndex:
    """The persisted metadata document for one profile's backups.

    ``backups`` is most-recent-first and its order is authoritative.
    ``backup_count`` is a lifetime counter and never decreases.
    """

    profile_name: str
    backups: list[BackupEntry] = field(default_factory=list)
    backup_count: int = 0
    settings: BackupSettings = field(default_factory=BackupSettings)
    last_backup_hash: str | None = None

    @property
    def last_backup(self) -> int | None:
        return self.backups[0].timestamp if self.backups else None

    def get(self, backup_id: str) -> BackupEntry | None:
        for entry in self.backups:
            if entry.id == backup_id:
                return entry
        return None

    def to_dict(self) -> dict:
        return {
            "profileName": self.profile_name,
            "backups": [b.to_dict() for b in self.backups],
            "backupCount": self.backup_count,
            "lastBackup": self.last_backup,
            "lastBackupHash": self.last_backup_hash,
            "settings": self.settings.to_dict(),
        }

    @classmethod
    def from_dict(
        cls,
        data: dict,
        default_settings: BackupSettings | None = None,
    ) -> BackupIndex:
        """Parse and validate a stored index. Raises ValueError on a bad shape."""
        if not isinstance(data, dict):
            raise ValueError("index document must be an object")
        backups = data.get("backups")
        if not isinstance(backups, list):
            raise ValueError("'backups' must be a list")
        entries = [BackupEntry.from_dict(b) for b in backups]

        count = data.get("backupCount", len(entries))
        if not isinstance(count, int) or isinstance(count, bool) or count < 0:
            raise ValueError(f"invalid backupCount: {count!r}")

        last_hash = data.get("lastBackupHash")
        return cls(
            profile_name=str(data.get("profileName", "")),
            backups=entries,
            # an older writer may have stored a count below the live list length
            backup_count=max(count, len(entries)),
            settings=BackupSettings.from_dict(data.get("settings"), default_settings),
            last_backup_hash=last_hash if isinstance(last_hash, str) else None,
        )
