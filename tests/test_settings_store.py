"""
系统设置校验与持久化测试
"""

import json

import pytest

from config import ActiveCondition
from settings_store import SettingsStore, SystemSettings


class TestSystemSettingsClamping:
    """服务端取值修正。"""

    def test_defaults(self):
        settings = SystemSettings()
        assert settings.active_member_check_enabled is False
        assert settings.active_member_check_days == 30
        assert settings.active_member_condition == ActiveCondition.LAST_ACTIVE_AT
        assert settings.active_member_check_interval_hours == 24

    @pytest.mark.parametrize("days, expected", [(0, 30), (-5, 1), (1, 1), (45, 45), ("abc", 30), (None, 30)])
    def test_days_clamped(self, days, expected):
        assert SystemSettings(active_member_check_days=days).active_member_check_days == expected

    @pytest.mark.parametrize("hours, expected", [(0, 24), (-1, 1), (1, 1), (720, 720), (1000, 720), ("x", 24)])
    def test_interval_clamped(self, hours, expected):
        settings = SystemSettings(active_member_check_interval_hours=hours)
        assert settings.active_member_check_interval_hours == expected

    def test_unknown_condition_falls_back(self):
        assert SystemSettings(active_member_condition="lastLoginAt").active_member_condition == ActiveCondition.LAST_ACTIVE_AT
        assert SystemSettings(active_member_condition="lastOrderAt").active_member_condition == ActiveCondition.LAST_ORDER_AT

    def test_payload_is_camel_case(self):
        assert SystemSettings().to_payload() == {
            "activeMemberCheckEnabled": False,
            "activeMemberCheckDays": 30,
            "activeMemberCondition": "lastActiveAt",
            "activeMemberCheckIntervalHours": 24,
        }


class TestSettingsStore:
    """持久化。"""

    def test_missing_file_uses_defaults(self, tmp_path):
        store = SettingsStore(str(tmp_path / "absent.json"))
        assert store.load() == SystemSettings()

    def test_unreadable_file_uses_defaults(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        store = SettingsStore(str(path))
        assert store.load() == SystemSettings()

    def test_update_persists_and_clamps(self, settings_store):
        updated = settings_store.update({"activeMemberCheckEnabled": True, "activeMemberCheckIntervalHours": 5000})
        assert updated.active_member_check_enabled is True
        assert updated.active_member_check_interval_hours == 720

        with open(settings_store.path, encoding="utf-8") as f:
            saved = json.load(f)
        assert saved["system"]["activeMemberCheckIntervalHours"] == 720

        reloaded = SettingsStore(settings_store.path)
        assert reloaded.load() == updated

    def test_update_accepts_snake_case_and_ignores_none(self, settings_store):
        settings_store.update({"active_member_check_days": 7})
        updated = settings_store.update({"active_member_check_days": None, "active_member_condition": "lastOrderAt"})
        assert updated.active_member_check_days == 7
        assert updated.active_member_condition == ActiveCondition.LAST_ORDER_AT

    def test_other_sections_preserved(self, tmp_path):
        path = tmp_path / "app-config.json"
        path.write_text(json.dumps({"other": {"keep": 1}}), encoding="utf-8")
        store = SettingsStore(str(path))
        store.load()
        store.update({"activeMemberCheckDays": 10})
        saved = json.loads(path.read_text(encoding="utf-8"))
        assert saved["other"] == {"keep": 1}
        assert saved["system"]["activeMemberCheckDays"] == 10
