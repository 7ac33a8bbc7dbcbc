"""The CSRF token triple shared by the token endpoint and its clients."""

from __future__ import annotations

from dataclasses import dataclass

# Response headers of the token endpoint.
RESPONSE_HEADER_HEADER = "X-CSRF-HEADER"   # name of the request header to send the token in
RESPONSE_HEADER_PARAM = "X-CSRF-PARAM"     # name of the request parameter alternative
RESPONSE_HEADER_TOKEN = "X-CSRF-TOKEN"     # the token value

# Query parameter of the token endpoint naming the protected URL.
QUERY_PARAM_URL = "url"


@dataclass(frozen=True)
class CsrfToken:
    """A CSRF token and where a request should carry it."""

    header: str
    parameter: str
    token: str

    def __repr__(self) -> str:
        return f"CsrfToken(header={self.header!r}, parameter={self.parameter!r}, token=***)"
