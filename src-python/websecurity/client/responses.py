"""Reading token endpoint responses."""

from __future__ import annotations

from typing import Optional

import httpx

from websecurity.core import config
from websecurity.core.token import (
    RESPONSE_HEADER_HEADER,
    RESPONSE_HEADER_PARAM,
    RESPONSE_HEADER_TOKEN,
    CsrfToken,
)


def legacy_ok_or_default(accept_legacy_ok: Optional[bool]) -> bool:
    """*accept_legacy_ok*, falling back to ``WEBSEC_ACCEPT_LEGACY_OK`` when unset."""
    if accept_legacy_ok is None:
        return config.settings.accept_legacy_ok
    return accept_legacy_ok


def is_token_response_successful(response: httpx.Response, accept_legacy_ok: bool = False) -> bool:
    """A token response has no body and status 204 (200 too, for legacy services)."""
    if response.status_code == 204:
        return True
    return accept_legacy_ok and response.status_code == 200


def read_response_token(response: httpx.Response) -> Optional[CsrfToken]:
    """Token carried by a successful token response.

    ``None`` when the token header is missing or empty, meaning CSRF
    protection is disabled for the requested URL.
    """
    token = response.headers.get(RESPONSE_HEADER_TOKEN)
    if not token:
        return None
    return CsrfToken(
        header=response.headers.get(RESPONSE_HEADER_HEADER, ""),
        parameter=response.headers.get(RESPONSE_HEADER_PARAM, ""),
        token=token,
    )
