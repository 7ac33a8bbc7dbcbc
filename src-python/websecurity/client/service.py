"""Token service client and a preconfigured CSRF-aware httpx client."""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from websecurity.client.responses import (
    is_token_response_successful,
    legacy_ok_or_default,
    read_response_token,
)
from websecurity.client.transports import CsrfTokenTransport, SessionCookiesTransport
from websecurity.core.token import QUERY_PARAM_URL, CsrfToken

logger = logging.getLogger(__name__)


class CsrfTokenServiceClient:
    """Ask a token endpoint for the CSRF token of a protected URL.

    The session cookie matters: a token is only valid within the session it
    was issued for, so the same *client* (or its cookies) must be used for the
    protected calls.

    Args:
        service_url: URL of the token endpoint.
        client: The httpx client to use.  A new one is created (and owned)
            when omitted.
        accept_legacy_ok: Treat a 200 token response as successful.
            Defaults to the ``accept_legacy_ok`` setting.
    """

    def __init__(
        self,
        service_url: httpx.URL | str,
        client: Optional[httpx.Client] = None,
        accept_legacy_ok: Optional[bool] = None,
    ) -> None:
        if service_url is None:
            raise TypeError("The argument 'service_url' is required.")
        self.service_url = httpx.URL(service_url)
        self._owns_client = client is None
        self.client = client if client is not None else httpx.Client()
        self.accept_legacy_ok = legacy_ok_or_default(accept_legacy_ok)

    def get_token(self, url: httpx.URL | str) -> Optional[CsrfToken]:
        """Token for *url*, or ``None`` when the fetch fails or CSRF is disabled."""
        if url is None:
            raise TypeError("The argument 'url' is required.")

        response = self.client.get(self.service_url, params={QUERY_PARAM_URL: str(url)})
        if not is_token_response_successful(response, self.accept_legacy_ok):
            logger.info(
                "Token service %s answered HTTP %d for %s",
                self.service_url, response.status_code, url,
                extra={"url": str(url), "status_code": response.status_code},
            )
            return None
        return read_response_token(response)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()

    def __enter__(self) -> CsrfTokenServiceClient:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def create_csrf_client(
    token_service_url: httpx.URL | str,
    base_url: httpx.URL | str = "",
    transport: Optional[httpx.BaseTransport] = None,
    accept_legacy_ok: Optional[bool] = None,
    **client_kwargs: Any,
) -> httpx.Client:
    """Build an ``httpx.Client`` that sends CSRF tokens automatically.

    Args:
        token_service_url: URL of the token endpoint.
        base_url: Base URL of the protected service.
        transport: Innermost transport.  Defaults to ``httpx.HTTPTransport()``.
        accept_legacy_ok: Treat a 200 token response as successful.
            Defaults to the ``accept_legacy_ok`` setting.
        **client_kwargs: Passed on to ``httpx.Client``.
    """
    inner = transport if transport is not None else httpx.HTTPTransport()
    chain = CsrfTokenTransport(
        SessionCookiesTransport(inner),
        token_service_url,
        accept_legacy_ok=accept_legacy_ok,
    )
    return httpx.Client(base_url=base_url, transport=chain, **client_kwargs)
