"""QuotaLedgerEntry model: append-only log of metered actions."""

import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Enum, ForeignKey, Index, String
from sqlalchemy.dialects.postgresql import JSON
from sqlalchemy.orm import Mapped, mapped_column

from membergate.models.base import Base, utcnow


class UsageOutcome(enum.StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


class QuotaLedgerEntry(Base):
    __tablename__ = "quota_ledger"
    __table_args__ = (
        Index("ix_quota_ledger_window", "account_id", "feature", "outcome", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    account_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("accounts.id"), nullable=False)
    feature: Mapped[str] = mapped_column(String(100), nullable=False)
    outcome: Mapped[UsageOutcome] = mapped_column(
        Enum(UsageOutcome, native_enum=False, length=20), nullable=False
    )
    request_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    response_data: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
