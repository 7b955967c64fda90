"""In-process event hooks fired by the redemption and session engines.

Handlers run synchronously inside the emitting request, after the mutation
has been flushed but before the caller commits.
"""

from collections.abc import Callable

KEY_REDEEMED = "key.redeemed"
BOOST_REDEEMED = "boost.redeemed"
SESSION_BOUND = "session.bound"
SESSION_SUPERSEDED = "session.superseded"
SESSION_REJECTED = "session.rejected"

_handlers: dict[str, list[Callable]] = {}


def on(event: str, handler: Callable) -> None:
    """Subscribe ``handler`` to ``event``. Handlers receive keyword arguments only."""
    _handlers.setdefault(event, []).append(handler)


def off(event: str, handler: Callable) -> None:
    handlers = _handlers.get(event, [])
    if handler in handlers:
        handlers.remove(handler)


def emit(event: str, **payload) -> None:
    for handler in list(_handlers.get(event, [])):
        handler(**payload)


def clear() -> None:
    _handlers.clear()
