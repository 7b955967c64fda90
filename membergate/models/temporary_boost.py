"""TemporaryBoost model: a time-boxed additive quota grant."""

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column

from membergate.models.access_key import BoostScope
from membergate.models.base import Base, TimestampMixin


class TemporaryBoost(Base, TimestampMixin):
    __tablename__ = "temporary_boosts"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("accounts.id"), nullable=False, index=True
    )
    boost_key_id: Mapped[int | None] = mapped_column(
        BigInteger, ForeignKey("boost_keys.id"), nullable=True
    )
    scope: Mapped[BoostScope] = mapped_column(
        Enum(BoostScope, native_enum=False, length=20), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_to: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
