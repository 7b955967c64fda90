"""Error taxonomy shared by the redemption, quota and session engines.

Every error carries a stable ``kind`` (what callers switch on), an HTTP
``status_code``, a ``retryable`` flag and an i18n ``message_key`` for the
user-facing reason.
"""


class MembergateError(Exception):
    kind = "internal_error"
    status_code = 500
    retryable = False
    message_key = "error.internal"

    def __init__(self, message: str | None = None, **context):
        super().__init__(message or self.kind)
        self.context = context

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self), "retryable": self.retryable}


# -- Validation errors: rejected before any store access --


class ValidationError(MembergateError, ValueError):
    kind = "invalid_request"
    status_code = 400
    message_key = "error.invalid_request"


class InvalidKeyCode(ValidationError):
    kind = "invalid_key_code"
    message_key = "error.invalid_key_code"


# -- Business-rule errors: deterministic, never retried --


class RedemptionError(MembergateError):
    """Base class for key redemption failures."""

    status_code = 400


class KeyNotFound(RedemptionError):
    kind = "key_not_found"
    status_code = 404
    message_key = "error.key_not_found"


class KeyDisabled(RedemptionError):
    kind = "key_disabled"
    message_key = "error.key_disabled"


class KeyExhausted(RedemptionError):
    kind = "key_exhausted"
    message_key = "error.key_exhausted"


class KeyAlreadyUsed(KeyExhausted):
    """A single-use key that has already been consumed."""

    kind = "key_already_used"
    status_code = 409
    message_key = "error.key_already_used"


class KeyExpiredForActivation(RedemptionError):
    kind = "key_expired_for_activation"
    message_key = "error.key_expired_for_activation"


class KeyInUse(RedemptionError):
    """Raised when deleting a key that has already been redeemed."""

    kind = "key_in_use"
    status_code = 409
    message_key = "error.key_in_use"


class AccountNotFound(MembergateError):
    kind = "account_not_found"
    status_code = 404
    message_key = "error.account_not_found"


class AccountError(ValidationError):
    """Registration / login input problems."""

    kind = "account_error"
    message_key = "error.account_error"


class InvalidCredentials(MembergateError):
    kind = "invalid_credentials"
    status_code = 401
    message_key = "error.invalid_credentials"


class Unauthorized(MembergateError):
    kind = "unauthorized"
    status_code = 401
    message_key = "error.unauthorized"


class QuotaExceeded(MembergateError):
    kind = "quota_exceeded"
    status_code = 429
    message_key = "error.quota_exceeded"

    def __init__(self, message: str | None = None, decision=None, **context):
        super().__init__(message, **context)
        self.decision = decision


class DeviceSuperseded(MembergateError):
    kind = "device_superseded"
    status_code = 403
    message_key = "error.device_superseded"


# -- Transient infrastructure errors: safe to retry where idempotent --


class PersistenceConflict(MembergateError):
    kind = "persistence_conflict"
    status_code = 409
    retryable = True
    message_key = "error.persistence_conflict"


class Unavailable(PersistenceConflict):
    kind = "unavailable"
    status_code = 503
    message_key = "error.unavailable"


# -- Fatal / programmer errors --


class IntegrityViolation(MembergateError):
    """An impossible stored state (for example ``used_count > max_uses``)."""

    kind = "integrity_violation"
    message_key = "error.internal"
