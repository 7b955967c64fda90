"""SystemConfigService: typed runtime configuration with a short-TTL cache."""

import json
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from membergate.config import settings
from membergate.models.system_config import ConfigDataType, SystemConfigEntry
from membergate.services.cache import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_DAILY_LIMIT_KEY = "ai_default_daily_limit"
DEFAULT_CYCLE_LIMIT_KEY = "ai_default_cycle_limit"


def _convert(raw: str, data_type: ConfigDataType) -> Any:
    if data_type == ConfigDataType.NUMBER:
        number = float(raw)
        return int(number) if number.is_integer() else number
    if data_type == ConfigDataType.BOOLEAN:
        return raw in ("true", "1")
    if data_type == ConfigDataType.JSON:
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


def _serialize(value: Any) -> tuple[str, ConfigDataType]:
    # bool first: bool is an int subclass
    if isinstance(value, bool):
        return ("true" if value else "false"), ConfigDataType.BOOLEAN
    if isinstance(value, int | float):
        return str(value), ConfigDataType.NUMBER
    if isinstance(value, dict | list):
        return json.dumps(value), ConfigDataType.JSON
    return str(value), ConfigDataType.STRING


class SystemConfigService:
    def __init__(self, cache: TTLCache | None = None):
        self._cache = cache or TTLCache(settings.config_cache_ttl_seconds)

    def get(self, session: Session, key: str, default: Any = None, use_cache: bool = True) -> Any:
        if use_cache:
            cached = self._cache.get(key)
            if cached is not None:
                return cached

        entry = session.execute(
            select(SystemConfigEntry).where(SystemConfigEntry.config_key == key)
        ).scalar_one_or_none()
        if entry is None:
            return default

        try:
            value = _convert(entry.config_value, entry.data_type)
        except ValueError:
            logger.warning("Config key %r has an unparseable value, using default", key)
            return default

        self._cache.set(key, value)
        return value

    def get_default_limits(self, session: Session) -> dict[str, int]:
        return {
            "daily": self.get(session, DEFAULT_DAILY_LIMIT_KEY, settings.default_daily_limit),
            "cycle": self.get(session, DEFAULT_CYCLE_LIMIT_KEY, settings.default_cycle_limit),
        }

    def get_all(self, session: Session) -> dict[str, Any]:
        entries = session.execute(
            select(SystemConfigEntry).order_by(SystemConfigEntry.config_key)
        ).scalars()
        result = {}
        for entry in entries:
            try:
                result[entry.config_key] = _convert(entry.config_value, entry.data_type)
            except ValueError:
                result[entry.config_key] = entry.config_value
        return result

    def update(
        self, session: Session, key: str, value: Any, description: str | None = None
    ) -> SystemConfigEntry:
        raw, data_type = _serialize(value)
        entry = session.execute(
            select(SystemConfigEntry).where(SystemConfigEntry.config_key == key)
        ).scalar_one_or_none()
        if entry is None:
            entry = SystemConfigEntry(config_key=key, config_value=raw, data_type=data_type)
            session.add(entry)
        else:
            entry.config_value = raw
            entry.data_type = data_type
        if description is not None:
            entry.description = description
        session.flush()
        self._cache.invalidate_on_commit(session, key)
        return entry

    def clear_cache(self, key: str | None = None) -> None:
        if key:
            self._cache.invalidate(key)
        else:
            self._cache.clear()
