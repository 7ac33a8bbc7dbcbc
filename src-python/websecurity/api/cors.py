"""CORS negotiation driven by the CORS policy tree.

Each request is resolved against the compiled tree.  The effective settings of
the resolved node (unset values take the defaults) configure a Starlette
``CORSMiddleware``, which answers preflight requests and decorates actual
responses.  Requests resolving to nothing, or to a disabled or abstract node,
get no CORS handling at all.
"""

from __future__ import annotations

import logging
import threading
import weakref
from typing import Any, Optional

from fastapi.middleware.cors import CORSMiddleware
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.types import ASGIApp, Receive, Scope, Send

from websecurity.api.gate import ASGIGateMiddleware
from websecurity.core.policy import (
    DEFAULT_CORS_ALLOW_CREDENTIALS,
    DEFAULT_CORS_ALLOWED_METHODS,
    DEFAULT_CORS_MAX_AGE,
    AggregatedConfiguration,
    CompiledNode,
    CompiledPolicyTree,
    CorsSettings,
)

logger = logging.getLogger(__name__)


def build_cors_middleware(app: ASGIApp, settings: CorsSettings) -> CORSMiddleware:
    """A ``CORSMiddleware`` around *app* configured from effective *settings*."""
    methods = settings.allowed_methods
    if methods is None:
        methods = DEFAULT_CORS_ALLOWED_METHODS
    credentials = settings.allow_credentials
    if credentials is None:
        credentials = DEFAULT_CORS_ALLOW_CREDENTIALS

    return CORSMiddleware(
        app,
        allow_origins=sorted(settings.allowed_origins or ()),
        allow_methods=sorted(m.upper() for m in methods),
        allow_headers=sorted(settings.allowed_headers or ()),
        allow_credentials=credentials,
        expose_headers=sorted(settings.exposed_headers or ()),
        max_age=settings.max_age if settings.max_age is not None else DEFAULT_CORS_MAX_AGE,
    )


def is_preflight(request_headers: Headers, method: str) -> bool:
    return (
        method == "OPTIONS"
        and "origin" in request_headers
        and "access-control-request-method" in request_headers
    )


class PolicyTreeCorsSource:
    """Map requests to a configured ``CORSMiddleware`` using a compiled CORS tree.

    Middlewares are cached per compiled node with weak keys, so the cache of an
    older tree generation goes away together with that generation.
    """

    def __init__(self, tree: CompiledPolicyTree) -> None:
        self.tree = tree
        self._cache: weakref.WeakKeyDictionary[CompiledNode, Optional[CORSMiddleware]] = (
            weakref.WeakKeyDictionary()
        )
        self._lock = threading.Lock()

    def __call__(self, request: Any, app: ASGIApp) -> Optional[CORSMiddleware]:
        node = self.tree.resolve(request)
        if node is None:
            return None
        with self._lock:
            try:
                return self._cache[node]
            except KeyError:
                middleware = self._build(node, app)
                self._cache[node] = middleware
                return middleware

    @staticmethod
    def _build(node: CompiledNode, app: ASGIApp) -> Optional[CORSMiddleware]:
        if not node.enabled or node.abstract:
            return None
        settings = node.settings
        if not isinstance(settings, CorsSettings):
            return None
        return build_cors_middleware(app, settings)


class CorsProtection:
    """Hand cross-origin requests to the ``CORSMiddleware`` of their policy node."""

    def __init__(self) -> None:
        self.configuration_source: Optional[PolicyTreeCorsSource] = None

    def configure(self, tree: CompiledPolicyTree) -> None:
        self.configuration_source = PolicyTreeCorsSource(tree)

    def _fragment_name(self, request: Request) -> Optional[str]:
        source = self.configuration_source
        node = source.tree.resolve(request) if source is not None else None
        return node.name if node is not None else None

    def get_middleware(self, request: Request, app: ASGIApp) -> Optional[CORSMiddleware]:
        source = self.configuration_source
        return source(request, app) if source is not None else None

    async def __call__(self, scope: Scope, receive: Receive, send: Send, app: ASGIApp) -> None:
        headers = Headers(scope=scope)
        origin = headers.get("origin")
        if origin is None:
            await app(scope, receive, send)
            return

        request = Request(scope)
        middleware = self.get_middleware(request, app)
        if middleware is None:
            await app(scope, receive, send)
            return

        if is_preflight(headers, request.method):
            response = middleware.preflight_response(request_headers=headers)
            if response.status_code != 200:
                logger.warning(
                    "CORS: Rejected preflight %s from origin %s (%s)",
                    request.url.path, origin, response.body.decode(),
                    extra={"fragment": self._fragment_name(request), "origin": origin,
                           "status_code": response.status_code},
                )
            await response(scope, receive, send)
            return

        await middleware.simple_response(scope, receive, send, request_headers=headers)


class CorsGateMiddleware(ASGIGateMiddleware):
    """Gate running :class:`CorsProtection` for the CORS policy tree."""

    def __init__(
        self,
        app: ASGIApp,
        configuration: AggregatedConfiguration,
        protection: Optional[CorsProtection] = None,
    ) -> None:
        super().__init__(app, configuration, protection or CorsProtection())
