"""httpx transports adding CSRF tokens and session cookies to outbound calls.

Transports wrap an inner transport and are chained like filters::

    CsrfTokenTransport -> SessionCookiesTransport -> HTTPTransport

The CSRF transport fetches its token through the same inner chain as the
protected calls, so the token and the calls share one server session.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from websecurity.client.responses import (
    is_token_response_successful,
    legacy_ok_or_default,
    read_response_token,
)
from websecurity.core.errors import CookieStoreError
from websecurity.core.token import QUERY_PARAM_URL, CsrfToken

logger = logging.getLogger(__name__)

# Caller headers describing the caller's own request body or target, not
# copied to the token fetch.
_NON_PROPAGATED_HEADERS = frozenset({
    "host", "content-type", "content-length", "transfer-encoding", "content-encoding",
})


class _TokenHolder:
    """Result of a successful token fetch.  ``token`` is ``None`` when CSRF is off."""

    __slots__ = ("token",)

    def __init__(self, token: Optional[CsrfToken]) -> None:
        self.token = token


class CsrfTokenTransport(httpx.BaseTransport):
    """Attach a CSRF token to every request, fetching it on first use.

    On a 403 answered to a request that carried a token, the token is
    discarded, a fresh one fetched and the request retried once.  A failed
    token fetch (anything but 204, or 200 with *accept_legacy_ok*) is returned
    to the caller as is.

    Instances assume a single user session and are not meant to be shared
    between concurrent callers.

    Args:
        transport: Inner transport that performs the calls.
        token_service_url: URL of the token endpoint.
        accept_legacy_ok: Treat a 200 token response as successful.
            Defaults to the ``accept_legacy_ok`` setting.
    """

    def __init__(
        self,
        transport: httpx.BaseTransport,
        token_service_url: httpx.URL | str,
        accept_legacy_ok: Optional[bool] = None,
    ) -> None:
        self._transport = transport
        self.token_service_url = httpx.URL(token_service_url)
        self.accept_legacy_ok = legacy_ok_or_default(accept_legacy_ok)
        self._holder: Optional[_TokenHolder] = None

    @property
    def current_token(self) -> Optional[CsrfToken]:
        holder = self._holder
        return holder.token if holder is not None else None

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        failed = self._ensure_token(request)
        if failed is not None:
            return failed

        response = self._handle_with_current_token(request)
        if response.status_code == 403 and self.current_token is not None:
            logger.debug("403 with CSRF token for %s; retrying with a fresh token", request.url)
            response.close()

            failed = self._refresh_token(request)
            if failed is not None:
                return failed
            response = self._handle_with_current_token(request)

        return response

    def close(self) -> None:
        self._transport.close()

    # ------------------------------------------------------------------

    def _ensure_token(self, request: httpx.Request) -> Optional[httpx.Response]:
        """Fetch a token unless one is held.  Returns the failed token response, if any."""
        if self._holder is not None:
            return None

        response = self._transport.handle_request(self._create_token_request(request))
        if not is_token_response_successful(response, self.accept_legacy_ok):
            logger.warning(
                "CSRF token fetch from %s failed with HTTP %d",
                self.token_service_url, response.status_code,
                extra={"url": str(self.token_service_url), "status_code": response.status_code},
            )
            return response

        try:
            self._holder = _TokenHolder(read_response_token(response))
        finally:
            response.close()
        return None

    def _refresh_token(self, request: httpx.Request) -> Optional[httpx.Response]:
        self._holder = None
        return self._ensure_token(request)

    def _create_token_request(self, request: httpx.Request) -> httpx.Request:
        headers = [
            (name, value) for name, value in request.headers.multi_items()
            if name.lower() not in _NON_PROPAGATED_HEADERS
        ]
        return httpx.Request(
            "GET",
            self.token_service_url,
            params={QUERY_PARAM_URL: str(request.url)},
            headers=headers,
            extensions=dict(request.extensions),
        )

    def _handle_with_current_token(self, request: httpx.Request) -> httpx.Response:
        outbound = _clone_request(request)
        token = self.current_token
        if token is not None:
            outbound.headers[token.header] = token.token
        return self._transport.handle_request(outbound)


def _clone_request(request: httpx.Request) -> httpx.Request:
    """Copy of *request* that can be modified and sent again."""
    content = request.read()
    headers = request.headers.copy()
    headers.pop("transfer-encoding", None)
    return httpx.Request(
        request.method,
        request.url,
        headers=headers,
        content=content,
        extensions=dict(request.extensions),
    )


class SessionCookiesTransport(httpx.BaseTransport):
    """Keep the server session across calls made below the client's own cookie handling.

    Adds stored cookies to each request and stores the cookies set by each
    response.  Failures of the cookie jar raise :class:`CookieStoreError` and
    leave the call unanswered.
    """

    def __init__(self, transport: httpx.BaseTransport, cookies: Optional[httpx.Cookies] = None) -> None:
        self._transport = transport
        self.cookies = cookies if cookies is not None else httpx.Cookies()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        try:
            self.cookies.set_cookie_header(request)
        except Exception as exc:
            raise CookieStoreError("Could not add cookies to request.") from exc

        response = self._transport.handle_request(request)

        if "set-cookie" in response.headers:
            response.request = request
            try:
                self.cookies.extract_cookies(response)
            except Exception as exc:
                response.close()
                raise CookieStoreError("Could not save response cookies.") from exc

        return response

    def close(self) -> None:
        self._transport.close()
