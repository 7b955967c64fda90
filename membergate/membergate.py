"""ASGI application: the membership API behind the device-session middleware."""

import logging

from starlette.applications import Starlette
from starlette.middleware import Middleware

from membergate.config import settings
from membergate.services.api_routes import api_routes
from membergate.services.session_middleware import DeviceSessionMiddleware

logger = logging.getLogger(__name__)


def create_app(extra_routes: list | None = None) -> Starlette:
    """Build the app. ``extra_routes`` (pages under protected prefixes) go behind the middleware."""
    app = Starlette(
        debug=settings.debug,
        routes=[*api_routes, *(extra_routes or [])],
        middleware=[Middleware(DeviceSessionMiddleware)],
    )
    logger.info(
        "%s app created (protected: %s)", settings.app_name, settings.protected_path_prefixes
    )
    return app


app = create_app()
