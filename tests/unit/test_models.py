"""Tests for profilevault.core.models."""

import pytest

from profilevault.core.models import (
    BackupEntry,
    BackupIndex,
    BackupSettings,
    make_backup_id,
    parse_backup_seq,
    parse_backup_timestamp,
)


def _entry(backup_id: str = "backup-1000-000001", ts: int = 1000) -> BackupEntry:
    return BackupEntry(id=backup_id, timestamp=ts, size=75, file_count=2)


class TestBackupIds:
    def test_format(self):
        assert make_backup_id(1700000000000, 7) == "backup-1700000000000-000007"

    def test_parse_seq(self):
        assert parse_backup_seq("backup-1700000000000-000007") == 7

    def test_parse_seq_rejects_foreign_names(self):
        assert parse_backup_seq("snapshot-1-2") is None
        assert parse_backup_seq("backup-abc") is None

    def test_parse_timestamp(self):
        assert parse_backup_timestamp("backup-1700000000000-000007") == 1700000000000

    def test_parse_timestamp_iso_form(self):
        assert parse_backup_timestamp("backup-2024-01-02T03-04-05-006Z") == 1704164645006

    def test_parse_timestamp_invalid(self):
        assert parse_backup_timestamp("backup-2024-02-30T00-00-00-000Z") is None
        assert parse_backup_timestamp("backup-abc") is None

    def test_ids_sort_by_time_then_seq(self):
        ids = [make_backup_id(2000, 1), make_backup_id(1000, 3), make_backup_id(1000, 2)]
        assert sorted(ids) == [make_backup_id(1000, 2), make_backup_id(1000, 3), make_backup_id(2000, 1)]


class TestBackupSettings:
    def test_defaults(self):
        s = BackupSettings()
        assert s.enabled is True
        assert s.interval_ms == 1_800_000
        assert s.max_count == 25
        assert s.max_age_ms == 2_592_000_000

    def test_to_dict_camel_case(self):
        assert BackupSettings().to_dict() == {
            "enabled": True,
            "intervalMs": 1_800_000,
            "maxCount": 25,
            "maxAgeMs": 2_592_000_000,
        }

    def test_from_dict_fills_gaps_from_defaults(self):
        defaults = BackupSettings(max_count=3)
        s = BackupSettings.from_dict({"enabled": False}, defaults)
        assert s.enabled is False
        assert s.max_count == 3

    def test_from_dict_rejects_non_object(self):
        with pytest.raises(ValueError, match="object"):
            BackupSettings.from_dict("x")
        with pytest.raises(ValueError):
            BackupSettings.from_dict([1])

    def test_from_dict_rejects_string_flag(self):
        with pytest.raises(ValueError, match="enabled"):
            BackupSettings.from_dict({"enabled": "false"})

    def test_from_dict_rejects_non_integer_interval(self):
        with pytest.raises(ValueError):
            BackupSettings.from_dict({"intervalMs": "60000"})

    def test_from_dict_none_is_defaults(self):
        assert BackupSettings.from_dict(None) == BackupSettings()

    def test_from_config(self):
        config = {"backup": {"defaults": {"max_count": 10, "interval_ms": 60_000}}}
        s = BackupSettings.from_config(config)
        assert s.max_count == 10
        assert s.interval_ms == 60_000
        assert s.max_age_ms == BackupSettings().max_age_ms


class TestBackupEntry:
    def test_to_dict(self):
        d = _entry().to_dict()
        assert d["fileCount"] == 2
        assert d["reason"] == "manual"

    def test_from_dict(self):
        e = BackupEntry.from_dict(
            {"id": "backup-5-000002", "timestamp": 5, "size": 10, "fileCount": 1, "reason": "scheduled"}
        )
        assert e.file_count == 1
        assert e.reason == "scheduled"

    def test_rejects_bad_id(self):
        with pytest.raises(ValueError):
            BackupEntry.from_dict({"id": "../etc", "timestamp": 1, "size": 1, "fileCount": 1})

    def test_rejects_non_int(self):
        with pytest.raises(ValueError):
            BackupEntry.from_dict({"id": "backup-1-000001", "timestamp": "1", "size": 1, "fileCount": 1})

    def test_rejects_bool(self):
        with pytest.raises(ValueError):
            BackupEntry.from_dict({"id": "backup-1-000001", "timestamp": 1, "size": True, "fileCount": 1})


class TestBackupIndex:
    def test_empty_last_backup(self):
        assert BackupIndex(profile_name="News").last_backup is None

    def test_last_backup_is_newest(self):
        idx = BackupIndex(profile_name="News", backups=[_entry("backup-2-000002", 2), _entry()])
        assert idx.last_backup == 2

    def test_get(self):
        idx = BackupIndex(profile_name="News", backups=[_entry()])
        assert idx.get("backup-1000-000001") is not None
        assert idx.get("backup-9-000009") is None

    def test_to_dict_keys(self):
        d = BackupIndex(profile_name="News", backups=[_entry()], backup_count=1).to_dict()
        assert set(d) == {"profileName", "backups", "backupCount", "lastBackup", "lastBackupHash", "settings"}
        assert d["lastBackup"] == 1000

    def test_from_dict(self):
        src = BackupIndex(profile_name="News", backups=[_entry()], backup_count=4, last_backup_hash="ab")
        parsed = BackupIndex.from_dict(src.to_dict())
        assert parsed == src

    def test_from_dict_raises_count_to_list_length(self):
        data = BackupIndex(profile_name="News", backups=[_entry()]).to_dict()
        data["backupCount"] = 0
        assert BackupIndex.from_dict(data).backup_count == 1

    def test_from_dict_requires_backups_list(self):
        with pytest.raises(ValueError):
            BackupIndex.from_dict({"profileName": "News", "backups": {}})

    def test_from_dict_rejects_negative_count(self):
        with pytest.raises(ValueError):
            BackupIndex.from_dict({"backups": [], "backupCount": -1})

    def test_from_dict_rejects_non_object(self):
        with pytest.raises(ValueError):
            BackupIndex.from_dict([])  # type: ignore[arg-type]

    def test_from_dict_rejects_wrong_typed_settings(self):
        with pytest.raises(ValueError, match="settings"):
            BackupIndex.from_dict({"backups": [], "settings": [1]})
