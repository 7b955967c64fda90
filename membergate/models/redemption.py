"""KeyRedemption model: audit trail linking accounts, keys and operations."""

import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, String
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from membergate.models.access_key import KeyType
from membergate.models.base import Base, utcnow


class RedemptionType(enum.StrEnum):
    SIGNUP = "signup"
    RENEW = "renew"
    BOOST = "boost"


class KeyRedemption(Base):
    __tablename__ = "key_redemptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("accounts.id"), nullable=False, index=True
    )
    key_type: Mapped[KeyType] = mapped_column(
        Enum(KeyType, native_enum=False, length=20), nullable=False
    )
    key_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    key_code: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[RedemptionType] = mapped_column(
        Enum(RedemptionType, native_enum=False, length=20), nullable=False
    )
    previous_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    new_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
