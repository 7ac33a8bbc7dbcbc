"""CSRF token endpoint.

``GET <token path>?url=<protected url>`` answers 204 with no body.  When the
CSRF layer placed a token on the request, three headers describe it; without
them the caller must assume CSRF protection is off.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request, Response

from websecurity.core.token import (
    RESPONSE_HEADER_HEADER,
    RESPONSE_HEADER_PARAM,
    RESPONSE_HEADER_TOKEN,
    CsrfToken,
)

logger = logging.getLogger(__name__)


def create_token_router(token_path: str = "/csrf/token") -> APIRouter:
    router = APIRouter(tags=["csrf"])

    @router.get(token_path, status_code=204, response_class=Response)
    async def get_csrf_token(
        request: Request,
        url: Optional[str] = Query(default=None, description="The protected URL the token is for"),
    ) -> Response:
        response = Response(status_code=204)

        # Set by the CSRF gate; absent when CSRF protection does not run.
        token: Optional[CsrfToken] = getattr(request.state, "csrf_token", None)
        if token is not None:
            response.headers[RESPONSE_HEADER_HEADER] = token.header
            response.headers[RESPONSE_HEADER_PARAM] = token.parameter
            response.headers[RESPONSE_HEADER_TOKEN] = token.token
        else:
            logger.debug("No CSRF token for %s", url, extra={"url": url})

        return response

    return router
