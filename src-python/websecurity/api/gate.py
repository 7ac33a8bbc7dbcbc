"""Gate middleware — decides per configuration whether a protection runs.

A gate wraps a *protection* (CSRF token validation, CORS negotiation) and an
:class:`~websecurity.core.policy.AggregatedConfiguration`.  On initialisation
it snapshots the configuration's compiled tree, decides whether the layer is
enabled and configures the protection from that snapshot.  Every change of the
configuration marks the gate uninitialised again; the next request
re-initialises it inline.  A state built from a tree that is no longer the
published one is never served.

Failures while initialising never reach the request path: they are logged and
the gate passes requests through (this layer only; any baseline behaviour of
the protection itself is untouched).

Two flavours share that lifecycle: :class:`GateMiddleware` works on Starlette
requests through ``call_next``, :class:`ASGIGateMiddleware` hands the raw ASGI
call to protections that are ASGI applications themselves.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Awaitable, Callable, Optional, Protocol

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Receive, Scope, Send

from websecurity.core.policy import AggregatedConfiguration, CompiledPolicyTree
from websecurity.core.structured_logging import log_context

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]


class Protection(Protocol):
    """An enforcement primitive a request-level gate can switch on and off."""

    def configure(self, tree: CompiledPolicyTree) -> None:
        """Scope the protection to the policy described by *tree*."""

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        ...


class ASGIProtection(Protocol):
    """An enforcement primitive working on the raw ASGI call."""

    def configure(self, tree: CompiledPolicyTree) -> None:
        """Scope the protection to the policy described by *tree*."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send, app: ASGIApp) -> None:
        ...


class _GateState:
    """Published state of an initialised gate, tied to the tree it was built from."""

    __slots__ = ("enabled", "tree")

    def __init__(self, enabled: bool, tree: CompiledPolicyTree) -> None:
        self.enabled = enabled
        self.tree = tree


class _GateLifecycle:
    """Initialisation state machine shared by both gate flavours."""

    configuration: AggregatedConfiguration
    protection: Any

    def _start(self, configuration: AggregatedConfiguration, protection: Any) -> None:
        self.configuration = configuration
        self.protection = protection
        self._lock = threading.Lock()
        # None while uninitialised; replaced as a whole, never mutated.
        self._state: Optional[_GateState] = None
        self.init()

    @property
    def initialized(self) -> bool:
        return self._is_current(self._state)

    @property
    def enabled(self) -> bool:
        state = self._state
        return self._is_current(state) and state.enabled

    def init(self) -> None:
        """Subscribe to configuration changes, then initialise."""
        self.configuration.add_listener(self._configuration_changed)
        self.do_init()

    def do_init(self) -> _GateState:
        """Initialise from the current configuration unless already up to date."""
        with self._lock:
            state = self._state
            # configure() may itself publish a new tree; go again until current.
            while not self._is_current(state):
                state = self._build_state(self.configuration.tree)
                self._state = state
            return state

    def _build_state(self, tree: CompiledPolicyTree) -> _GateState:
        label = self.configuration.label
        enabled = False
        try:
            if tree.enabled:
                self.protection.configure(tree)
                enabled = True
        except Exception:
            logger.exception(
                "%s gate: failed to apply the policy configuration. "
                "Requests pass through this layer unprotected.", label,
                extra={"policy": label},
            )
            enabled = False

        logger.debug("%s gate initialised (enabled=%s)", label, enabled)
        return _GateState(enabled, tree)

    def _is_current(self, state: Optional[_GateState]) -> bool:
        return state is not None and state.tree is self.configuration.tree

    def _configuration_changed(self) -> None:
        self._state = None

    def _current_state(self) -> _GateState:
        state = self._state
        if not self._is_current(state):
            state = self.do_init()
        return state


class GateMiddleware(_GateLifecycle, BaseHTTPMiddleware):
    """Run *protection* only while *configuration* is enabled.

    Args:
        app: The ASGI application.
        configuration: The live policy configuration of this layer.
        protection: The enforcement primitive to delegate to.
    """

    def __init__(
        self,
        app: Any,
        configuration: AggregatedConfiguration,
        protection: Protection,
    ) -> None:
        BaseHTTPMiddleware.__init__(self, app)
        self._start(configuration, protection)

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:  # type: ignore[override]
        state = self._current_state()
        if state.enabled:
            with log_context(policy=self.configuration.label,
                             method=request.method, path=request.url.path):
                return await self.protection(request, call_next)
        return await call_next(request)


class ASGIGateMiddleware(_GateLifecycle):
    """Pure ASGI gate: run *protection* around *app* while *configuration* is enabled."""

    def __init__(
        self,
        app: ASGIApp,
        configuration: AggregatedConfiguration,
        protection: ASGIProtection,
    ) -> None:
        self.app = app
        self._start(configuration, protection)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        state = self._current_state()
        if state.enabled:
            with log_context(policy=self.configuration.label,
                             method=scope.get("method"), path=scope.get("path")):
                await self.protection(scope, receive, send, self.app)
        else:
            await self.app(scope, receive, send)
