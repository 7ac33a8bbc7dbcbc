"""CSRF protection backed by the session.

:class:`SessionCsrfProtection` keeps one random token per session (stored in
``request.session`` by Starlette's ``SessionMiddleware``), exposes it to the
application as ``request.state.csrf_token`` and rejects protected requests that
do not echo it back in the token header (or, discouraged, the token query
parameter).

:class:`CsrfGateMiddleware` scopes the protection to the requests resolved to
an enabled fragment of the CSRF policy tree.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from typing import Any, Awaitable, Callable, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from websecurity.api.gate import CallNext, GateMiddleware
from websecurity.core.matchers import RequestMatcher
from websecurity.core.policy import AggregatedConfiguration, CompiledPolicyTree
from websecurity.core.token import CsrfToken

logger = logging.getLogger(__name__)

# Methods that never change state and so never need a token
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})

# Session key of the stored token value
SESSION_TOKEN_KEY = "_csrf_token"

AccessDeniedHandler = Callable[[Request, str], Awaitable[Response]]


async def default_access_denied_handler(request: Request, reason: str) -> Response:
    return JSONResponse(status_code=403, content={"detail": reason})


class _UnsafeMethodMatcher(RequestMatcher):
    """Matches state-changing requests."""

    __slots__ = ()

    def test(self, request: Any) -> bool:
        return request.method.upper() not in SAFE_METHODS

    def __repr__(self) -> str:
        return "UNSAFE_METHODS"


UNSAFE_METHODS: RequestMatcher = _UnsafeMethodMatcher()


class PolicyTreeMatcher(RequestMatcher):
    """Matches requests that resolve to an enabled node of a compiled tree."""

    __slots__ = ("tree",)

    def __init__(self, tree: CompiledPolicyTree) -> None:
        self.tree = tree

    def test(self, request: Any) -> bool:
        node = self.tree.resolve(request)
        return node is not None and node.enabled

    def __repr__(self) -> str:
        return f"PolicyTreeMatcher({self.tree!r})"


class SessionCsrfProtection:
    """Session-backed CSRF token validation.

    Args:
        header_name: Request header expected to carry the token.
        parameter_name: Query parameter accepted instead of the header.
        access_denied_handler: Builds the response for a rejected request.
            Defaults to a JSON 403.
        exempt_safe_methods: Never require a token for safe methods, even when
            the protection matcher matches them.
    """

    def __init__(
        self,
        header_name: str = "X-CSRF-TOKEN",
        parameter_name: str = "_csrf",
        access_denied_handler: Optional[AccessDeniedHandler] = None,
        exempt_safe_methods: bool = True,
    ) -> None:
        self.header_name = header_name
        self.parameter_name = parameter_name
        self.access_denied_handler = access_denied_handler or default_access_denied_handler
        self.exempt_safe_methods = exempt_safe_methods
        self.require_protection_matcher: RequestMatcher = UNSAFE_METHODS

    def set_access_denied_handler(self, handler: AccessDeniedHandler) -> None:
        self.access_denied_handler = handler

    def configure(self, tree: CompiledPolicyTree) -> None:
        self.require_protection_matcher = PolicyTreeMatcher(tree)

    # ------------------------------------------------------------------
    # Token repository
    # ------------------------------------------------------------------

    def load_token(self, request: Request) -> CsrfToken:
        """Return the session's token, generating and saving one if missing."""
        value = request.session.get(SESSION_TOKEN_KEY)
        if not value:
            value = secrets.token_urlsafe(32)
            request.session[SESSION_TOKEN_KEY] = value
        return CsrfToken(header=self.header_name, parameter=self.parameter_name, token=value)

    def _actual_token(self, request: Request) -> Optional[str]:
        return request.headers.get(self.header_name) or request.query_params.get(self.parameter_name)

    def _fragment_name(self, request: Request) -> Optional[str]:
        matcher = self.require_protection_matcher
        if not isinstance(matcher, PolicyTreeMatcher):
            return None
        node = matcher.tree.resolve(request)
        return node.name if node is not None else None

    def _requires_protection(self, request: Request) -> bool:
        if self.exempt_safe_methods and request.method.upper() in SAFE_METHODS:
            return False
        return self.require_protection_matcher.test(request)

    # ------------------------------------------------------------------

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        token = self.load_token(request)
        request.state.csrf_token = token

        if not self._requires_protection(request):
            return await call_next(request)

        actual = self._actual_token(request)
        if not actual:
            reason = "Missing CSRF token"
        elif not hmac.compare_digest(actual.encode(), token.token.encode()):
            reason = "Invalid CSRF token"
        else:
            return await call_next(request)

        logger.warning(
            "CSRF: Blocked %s %s (%s, origin=%s)",
            request.method, request.url.path, reason, request.headers.get("origin", "unknown"),
            extra={"fragment": self._fragment_name(request), "status_code": 403},
        )
        return await self.access_denied_handler(request, reason)


class CsrfGateMiddleware(GateMiddleware):
    """Gate running :class:`SessionCsrfProtection` for the CSRF policy tree."""

    def __init__(
        self,
        app: Any,
        configuration: AggregatedConfiguration,
        protection: Optional[SessionCsrfProtection] = None,
    ) -> None:
        super().__init__(app, configuration, protection or SessionCsrfProtection())
