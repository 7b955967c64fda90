"""SystemConfigEntry model: typed runtime configuration overrides."""

import enum

from sqlalchemy import Enum, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from membergate.models.base import Base, TimestampMixin


class ConfigDataType(enum.StrEnum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"


class SystemConfigEntry(Base, TimestampMixin):
    __tablename__ = "system_config"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    config_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    config_value: Mapped[str] = mapped_column(Text, nullable=False)
    data_type: Mapped[ConfigDataType] = mapped_column(
        Enum(ConfigDataType, native_enum=False, length=20),
        nullable=False,
        default=ConfigDataType.STRING,
    )
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)
