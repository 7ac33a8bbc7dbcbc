"""Main entry point: ``python -m websecurity.main``.

Starts the token service with a CSRF policy protecting every request and no
CORS policy.
"""

from __future__ import annotations

import logging

import uvicorn

from websecurity.api.server import create_app
from websecurity.core.config import settings, validate_settings
from websecurity.core.policy import ROOT_NAME, AggregatedConfiguration, DeclarativePolicySource
from websecurity.core.structured_logging import setup_logging

log = logging.getLogger("websecurity")

# Protect every request; safe methods stay exempt.
DEFAULT_CSRF_POLICY = [
    {"name": ROOT_NAME, "matcher": {"type": "regex", "pattern": ".*"}},
]


def build_default_app():
    csrf_configuration = AggregatedConfiguration(
        source=DeclarativePolicySource(DEFAULT_CSRF_POLICY, "csrf"),
        label="csrf",
    )
    return create_app(settings, csrf_configuration=csrf_configuration)


def main() -> None:
    setup_logging(settings.log_format, settings.log_level)
    validate_settings()

    log.info("Starting on %s:%d", settings.host, settings.port)
    uvicorn.run(
        build_default_app(),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
