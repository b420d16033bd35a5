# settings_store.py - 系统设置（活跃会员检测）的读取、校验与持久化
import json
import logging
import os
import threading
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from config import SETTINGS_FILE, ActiveCondition

logger = logging.getLogger(__name__)

SECTION = 'system'

DEFAULT_CHECK_DAYS = 30
DEFAULT_INTERVAL_HOURS = 24
MAX_INTERVAL_HOURS = 720


class SystemSettings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    active_member_check_enabled: bool = False
    active_member_check_days: int = DEFAULT_CHECK_DAYS
    active_member_condition: ActiveCondition = ActiveCondition.LAST_ACTIVE_AT
    active_member_check_interval_hours: int = DEFAULT_INTERVAL_HOURS

    @field_validator('active_member_check_days', mode='before')
    @classmethod
    def clamp_days(cls, v):
        try:
            days = int(v)
        except (TypeError, ValueError):
            return DEFAULT_CHECK_DAYS
        if days == 0:
            return DEFAULT_CHECK_DAYS
        return max(1, days)

    @field_validator('active_member_check_interval_hours', mode='before')
    @classmethod
    def clamp_interval(cls, v):
        try:
            hours = int(v)
        except (TypeError, ValueError):
            return DEFAULT_INTERVAL_HOURS
        if hours == 0:
            return DEFAULT_INTERVAL_HOURS
        return max(1, min(hours, MAX_INTERVAL_HOURS))

    @field_validator('active_member_condition', mode='before')
    @classmethod
    def normalize_condition(cls, v):
        return ActiveCondition.LAST_ORDER_AT if v == ActiveCondition.LAST_ORDER_AT else ActiveCondition.LAST_ACTIVE_AT

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode='json')


class SettingsStore:
    """进程内唯一的系统设置缓存：启动时加载，显式更新时写回文件。"""

    def __init__(self, path: str = SETTINGS_FILE):
        self.path = path
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = {}
        self._settings = SystemSettings()

    def load(self) -> SystemSettings:
        data: Dict[str, Any] = {}
        try:
            if os.path.exists(self.path):
                with open(self.path, 'r', encoding='utf-8') as f:
                    data = json.load(f)
                logger.info(f"✅ 已从本地文件加载系统设置: {self.path}")
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️ 读取系统设置失败，使用默认值: {e}")
            data = {}

        with self._lock:
            self._data = data if isinstance(data, dict) else {}
            self._settings = SystemSettings.model_validate(self._data.get(SECTION) or {})
            return self._settings

    def get(self) -> SystemSettings:
        with self._lock:
            return self._settings

    def update(self, patch: Dict[str, Any]) -> SystemSettings:
        with self._lock:
            changes = {(to_camel(k) if '_' in k else k): v for k, v in patch.items() if v is not None}
            merged = {**self._settings.to_payload(), **changes}
            settings = SystemSettings.model_validate(merged)
            self._data[SECTION] = {**(self._data.get(SECTION) or {}), **settings.to_payload()}
            self._write()
            self._settings = settings
        logger.info(f"⚙️ 系统设置已更新: {settings.to_payload()}")
        return settings

    def _write(self) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)


_store: Optional[SettingsStore] = None


def get_settings_store() -> SettingsStore:
    global _store
    if _store is None:
        _store = SettingsStore()
        _store.load()
    return _store
