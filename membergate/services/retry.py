"""Bounded retry with exponential backoff for transient datastore errors.

Only reads and idempotency-guarded redemptions go through here; a mutation
that is not provably idempotent must never be retried blindly.
"""

import logging
from collections.abc import Callable
from typing import TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from membergate.config import settings
from membergate.services.errors import PersistenceConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retrying(attempts: int | None = None) -> Retrying:
    return Retrying(
        retry=retry_if_exception_type(PersistenceConflict),
        stop=stop_after_attempt(attempts or settings.retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_wait_min_seconds,
            min=settings.retry_wait_min_seconds,
            max=settings.retry_wait_max_seconds,
        ),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def call_with_retry(fn: Callable[..., T], *args, attempts: int | None = None, **kwargs) -> T:
    """Call ``fn`` and retry it on :class:`PersistenceConflict`."""
    return retrying(attempts)(fn, *args, **kwargs)
