"""Engine/session construction with bounded timeouts and error translation."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from membergate.config import settings
from membergate.services.errors import PersistenceConflict, Unavailable

logger = logging.getLogger(__name__)


def build_engine(url: str, timeout_seconds: float) -> Engine:
    """Create an engine whose connects and statements cannot block indefinitely."""
    connect_args: dict = {}
    if url.startswith("sqlite"):
        connect_args["timeout"] = timeout_seconds
    elif url.startswith("postgresql"):
        connect_args["connect_timeout"] = max(1, int(timeout_seconds))
        connect_args["options"] = f"-c statement_timeout={int(timeout_seconds * 1000)}"
    return create_engine(
        url,
        connect_args=connect_args,
        pool_pre_ping=True,
        **({} if url.startswith("sqlite") else {"pool_timeout": timeout_seconds}),
    )


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return build_engine(settings.database_url, settings.database_timeout_seconds)


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker[Session]:
    return sessionmaker(bind=get_engine(), expire_on_commit=False)


@contextmanager
def translate_errors() -> Iterator[None]:
    """Surface timeouts and lost optimistic updates as retryable errors."""
    try:
        yield
    except StaleDataError as exc:
        raise PersistenceConflict("Concurrent update detected") from exc
    except (OperationalError, PoolTimeoutError) as exc:
        logger.warning("Datastore unavailable: %s", exc)
        raise Unavailable("Datastore timed out or is unavailable") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise Unavailable("Datastore connection lost") from exc
        raise
