from membergate.models.access_key import AccessKey, BoostKey, BoostScope, KeyType
from membergate.models.account import Account
from membergate.models.base import Base, TimestampMixin, as_utc, utcnow
from membergate.models.quota_ledger import QuotaLedgerEntry, UsageOutcome
from membergate.models.redemption import KeyRedemption, RedemptionType
from membergate.models.system_config import ConfigDataType, SystemConfigEntry
from membergate.models.temporary_boost import TemporaryBoost

__all__ = [
    "Base",
    "TimestampMixin",
    "as_utc",
    "utcnow",
    "Account",
    "AccessKey",
    "BoostKey",
    "BoostScope",
    "KeyType",
    "TemporaryBoost",
    "QuotaLedgerEntry",
    "UsageOutcome",
    "KeyRedemption",
    "RedemptionType",
    "SystemConfigEntry",
    "ConfigDataType",
]
