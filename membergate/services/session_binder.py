"""SessionBinder: single active device per account.

The account row stores one ``current_session_id`` that encodes which device
holds the session. A request from that device continues; a login from another
device takes the binding over; any other request from a non-matching device
is rejected and must re-authenticate. The superseded device only finds out on
its next request, so no revocation list is needed.
"""

import enum
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from membergate import hooks
from membergate.config import settings
from membergate.models.account import Account
from membergate.models.base import utcnow
from membergate.services.cache import TTLCache, account_cache
from membergate.services.database import translate_errors
from membergate.services.errors import AccountNotFound, PersistenceConflict

logger = logging.getLogger(__name__)

SESSION_PREFIX = "sess"
LEGACY_PROVISIONAL_PREFIX = "init"
UNKNOWN_DEVICE = "unknown"
FINGERPRINT_LENGTH = 12
BIND_ATTEMPTS = 3


class BindReason(enum.StrEnum):
    FIRST_LOGIN = "first_login"
    DEVICE_MATCHED = "device_matched"
    DEVICE_TAKEOVER = "device_takeover"
    DEVICE_SUPERSEDED = "device_superseded"


@dataclass(frozen=True)
class BindResult:
    allowed: bool
    reason: BindReason
    session_id: str | None
    device_id: str
    redirect_to: str | None = None

    def to_dict(self) -> dict:
        data = {"allowed": self.allowed, "reason": str(self.reason), "deviceId": self.device_id}
        if self.redirect_to:
            data["redirectTo"] = self.redirect_to
        return data


def token_fingerprint(auth_token: str) -> str:
    # JWT prefixes are the same for every token (the encoded header), so hash it.
    return hashlib.sha256(auth_token.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def normalize_device_id(device_id: str | None) -> str:
    device_id = (device_id or "").strip()
    return device_id or UNKNOWN_DEVICE


def make_session_id(account_id: int, device_id: str, auth_token: str) -> str:
    return f"{SESSION_PREFIX}_{account_id}_{device_id}_{token_fingerprint(auth_token)}"


def extract_device_id(session_id: str | None) -> str | None:
    """Device id encoded in a stored session id, or None when nothing usable is bound.

    ``sess_{account}_{device}_{fingerprint}``; device ids may contain
    underscores. Legacy provisional ids (``init_...``) written at signup and
    unparseable values count as "no session".
    """
    if not session_id:
        return None
    parts = session_id.split("_")
    if len(parts) < 4 or parts[0] != SESSION_PREFIX:
        if parts[0] == LEGACY_PROVISIONAL_PREFIX:
            logger.debug("Provisional session id treated as unbound: %s", session_id)
        return None
    return "_".join(parts[2:-1])


class SessionBinder:
    def __init__(self, cache: TTLCache | None = None):
        self._cache = cache if cache is not None else account_cache

    def bind(
        self,
        session: Session,
        account_id: int,
        device_id: str | None,
        auth_token: str,
        is_login_flow: bool,
        now: datetime | None = None,
    ) -> BindResult:
        device_id = normalize_device_id(device_id)
        now = now or utcnow()

        with translate_errors():
            for _ in range(BIND_ATTEMPTS):
                account = self._load_account(session, account_id)
                observed = account.current_session_id
                stored_device = extract_device_id(observed)

                if stored_device is None:
                    new_id = make_session_id(account_id, device_id, auth_token)
                    if self._swap(session, account, observed, new_id, now):
                        self._cache.invalidate_on_commit(session, account_id)
                        logger.info("Account %s bound to device %s", account_id, device_id)
                        hooks.emit(hooks.SESSION_BOUND, account_id=account_id, device_id=device_id)
                        return BindResult(True, BindReason.FIRST_LOGIN, new_id, device_id)
                    continue

                if stored_device == device_id:
                    if self._swap(session, account, observed, observed, now):
                        return BindResult(True, BindReason.DEVICE_MATCHED, observed, device_id)
                    continue

                if not is_login_flow:
                    logger.info(
                        "Rejected stale device %s for account %s (bound to %s)",
                        device_id,
                        account_id,
                        stored_device,
                    )
                    hooks.emit(
                        hooks.SESSION_REJECTED,
                        account_id=account_id,
                        device_id=device_id,
                        bound_device_id=stored_device,
                    )
                    return BindResult(
                        False,
                        BindReason.DEVICE_SUPERSEDED,
                        None,
                        device_id,
                        redirect_to=settings.session_expired_path,
                    )

                new_id = make_session_id(account_id, device_id, auth_token)
                if self._swap(session, account, observed, new_id, now):
                    self._cache.invalidate_on_commit(session, account_id)
                    logger.info(
                        "Account %s moved from device %s to %s",
                        account_id,
                        stored_device,
                        device_id,
                    )
                    hooks.emit(
                        hooks.SESSION_SUPERSEDED,
                        account_id=account_id,
                        device_id=device_id,
                        previous_device_id=stored_device,
                    )
                    return BindResult(True, BindReason.DEVICE_TAKEOVER, new_id, device_id)

        raise PersistenceConflict(f"Session binding for account {account_id} kept changing")

    def current_device(self, session: Session, account_id: int) -> str | None:
        return extract_device_id(self._load_account(session, account_id).current_session_id)

    def _load_account(self, session: Session, account_id: int) -> Account:
        stmt = (
            select(Account)
            .where(Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        account = session.execute(stmt).scalar_one_or_none()
        if account is None:
            raise AccountNotFound(f"Account {account_id} not found")
        return account

    def _swap(
        self,
        session: Session,
        account: Account,
        observed: str | None,
        new_id: str,
        now: datetime,
    ) -> bool:
        """Compare-and-swap ``current_session_id``; also stamps last activity."""
        guard = (
            Account.current_session_id.is_(None)
            if observed is None
            else Account.current_session_id == observed
        )
        values = {"current_session_id": new_id, "last_active_at": now}
        if new_id != observed:
            values["version"] = Account.version + 1
        result = session.execute(
            update(Account)
            .where(Account.id == account.id, guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False
        session.expire(account)
        return True
