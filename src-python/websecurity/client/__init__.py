"""Clients of CSRF-protected services."""

from websecurity.client.responses import is_token_response_successful, read_response_token
from websecurity.client.service import CsrfTokenServiceClient, create_csrf_client
from websecurity.client.transports import CsrfTokenTransport, SessionCookiesTransport

__all__ = [
    "CsrfTokenServiceClient",
    "CsrfTokenTransport",
    "SessionCookiesTransport",
    "create_csrf_client",
    "is_token_response_successful",
    "read_response_token",
]
