"""Redeemable keys: access keys extend membership, boost keys raise AI quota."""

import enum
from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, Float, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from membergate.models.base import Base, TimestampMixin


class BoostScope(enum.StrEnum):
    DAILY = "daily"
    CYCLE = "cycle"


class KeyType(enum.StrEnum):
    ACCESS = "access"
    BOOST = "boost"


class RedeemableKeyMixin:
    """Identity, use-count and activation-deadline columns shared by both key tables."""

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # None means unlimited
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True, default=1)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    activation_deadline: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    description: Mapped[str | None] = mapped_column(String(500), nullable=True)

    @declared_attr
    def redeemed_by_account_id(cls) -> Mapped[int | None]:
        return mapped_column(BigInteger, ForeignKey("accounts.id"), nullable=True)

    @property
    def is_single_use(self) -> bool:
        return self.max_uses == 1


class AccessKey(Base, TimestampMixin, RedeemableKeyMixin):
    __tablename__ = "access_keys"

    grant_duration_hours: Mapped[float] = mapped_column(Float, nullable=False)


class BoostKey(Base, TimestampMixin, RedeemableKeyMixin):
    __tablename__ = "boost_keys"

    scope: Mapped[BoostScope] = mapped_column(
        Enum(BoostScope, native_enum=False, length=20), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    is_temporary: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    temporary_duration_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
