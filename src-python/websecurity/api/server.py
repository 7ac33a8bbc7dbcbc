"""FastAPI application — wires the CORS and CSRF gates around the token endpoint."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI
from starlette.middleware.sessions import SessionMiddleware

from websecurity import __version__
from websecurity.api.cors import CorsGateMiddleware, CorsProtection
from websecurity.api.csrf import AccessDeniedHandler, CsrfGateMiddleware, SessionCsrfProtection
from websecurity.api.routers.token import create_token_router
from websecurity.core.config import Settings, settings as default_settings
from websecurity.core.policy import AggregatedConfiguration
from websecurity.models.schemas import HealthResponse

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    cors_configuration: Optional[AggregatedConfiguration] = None,
    csrf_configuration: Optional[AggregatedConfiguration] = None,
    access_denied_handler: Optional[AccessDeniedHandler] = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Service settings.  Defaults to the environment-loaded ones.
        cors_configuration: Live CORS policy.  Defaults to an empty (disabled) one.
        csrf_configuration: Live CSRF policy.  Defaults to an empty (disabled) one.
        access_denied_handler: Response builder for requests failing CSRF validation.
    """
    settings = settings or default_settings
    cors_configuration = cors_configuration or AggregatedConfiguration(label="cors")
    csrf_configuration = csrf_configuration or AggregatedConfiguration(label="csrf")

    # Global switches, independent of the fragment lists
    cors_configuration.set_enabled(settings.cors_enabled)
    csrf_configuration.set_enabled(settings.csrf_enabled)

    app = FastAPI(
        title="websecurity",
        version=__version__,
        description="Policy-driven CORS and CSRF protection",
    )
    app.state.settings = settings
    app.state.cors_configuration = cors_configuration
    app.state.csrf_configuration = csrf_configuration

    # Middleware runs outermost-last-added: session -> CORS -> CSRF -> routes
    app.add_middleware(
        CsrfGateMiddleware,
        configuration=csrf_configuration,
        protection=SessionCsrfProtection(
            header_name=settings.csrf_header_name,
            parameter_name=settings.csrf_parameter_name,
            access_denied_handler=access_denied_handler,
        ),
    )
    app.add_middleware(
        CorsGateMiddleware,
        configuration=cors_configuration,
        protection=CorsProtection(),
    )
    app.add_middleware(
        SessionMiddleware,
        secret_key=settings.session_secret,
        session_cookie=settings.session_cookie,
        max_age=settings.session_max_age,
    )

    app.include_router(create_token_router(settings.token_path))

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        return HealthResponse(
            status="ok",
            version=__version__,
            cors_enabled=cors_configuration.is_enabled,
            csrf_enabled=csrf_configuration.is_enabled,
        )

    logger.info(
        "Application created (cors_enabled=%s, csrf_enabled=%s)",
        cors_configuration.is_enabled, csrf_configuration.is_enabled,
    )
    return app
