"""Tests for the gate middleware state machine."""

import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from websecurity.api.gate import ASGIGateMiddleware, GateMiddleware
from websecurity.core.matchers import ALL
from websecurity.core.policy import AggregatedConfiguration, PolicyFragment


class FakeProtection:
    """Records configuration and answers every request it handles with 418."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.configured = []
        self.handled = 0

    def configure(self, tree):
        if self.fail:
            raise RuntimeError("boom")
        self.configured.append(tree)

    async def __call__(self, request, call_next):
        self.handled += 1
        return PlainTextResponse("protected", status_code=418)


def _enabled_configuration() -> AggregatedConfiguration:
    return AggregatedConfiguration([PolicyFragment(name="root", request_matcher=ALL)], label="test")


def _request() -> Request:
    return Request({
        "type": "http",
        "method": "POST",
        "path": "/x",
        "headers": [],
        "query_string": b"",
    })


def _gate(configuration: AggregatedConfiguration, protection: FakeProtection) -> GateMiddleware:
    return GateMiddleware(MagicMock(), configuration=configuration, protection=protection)


class TestGateLifecycle:
    def test_init_configures_enabled_protection(self):
        configuration = _enabled_configuration()
        protection = FakeProtection()
        gate = _gate(configuration, protection)
        assert gate.initialized
        assert gate.enabled
        assert protection.configured == [configuration.tree]

    def test_init_with_disabled_configuration(self):
        protection = FakeProtection()
        gate = _gate(AggregatedConfiguration(), protection)
        assert gate.initialized
        assert not gate.enabled
        assert protection.configured == []

    def test_configuration_change_resets_state(self):
        configuration = _enabled_configuration()
        gate = _gate(configuration, FakeProtection())
        configuration.set_enabled(False)
        assert not gate.initialized

        gate.do_init()
        assert gate.initialized
        assert not gate.enabled

    def test_do_init_is_idempotent(self):
        configuration = _enabled_configuration()
        protection = FakeProtection()
        gate = _gate(configuration, protection)
        gate.do_init()
        gate.do_init()
        assert len(protection.configured) == 1

    def test_failure_degrades_to_pass_through(self, caplog):
        with caplog.at_level(logging.ERROR):
            gate = _gate(_enabled_configuration(), FakeProtection(fail=True))
        assert gate.initialized
        assert not gate.enabled
        assert "unprotected" in caplog.text


class TestGateDispatch:
    @pytest.mark.asyncio
    async def test_enabled_delegates_to_protection(self):
        protection = FakeProtection()
        gate = _gate(_enabled_configuration(), protection)
        call_next = AsyncMock(return_value=PlainTextResponse("app"))

        response = await gate.dispatch(_request(), call_next)

        assert response.status_code == 418
        assert protection.handled == 1
        call_next.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_passes_through(self):
        protection = FakeProtection()
        gate = _gate(AggregatedConfiguration(), protection)
        call_next = AsyncMock(return_value=PlainTextResponse("app"))

        response = await gate.dispatch(_request(), call_next)

        assert response.status_code == 200
        assert protection.handled == 0
        call_next.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_lazy_reinit_after_change(self):
        configuration = AggregatedConfiguration(label="test")
        protection = FakeProtection()
        gate = _gate(configuration, protection)
        call_next = AsyncMock(return_value=PlainTextResponse("app"))

        configuration.replace([PolicyFragment(name="root", request_matcher=ALL)])
        assert not gate.initialized

        response = await gate.dispatch(_request(), call_next)

        assert gate.initialized
        assert response.status_code == 418
        assert protection.configured == [configuration.tree]

    @pytest.mark.asyncio
    async def test_change_during_init_is_not_lost(self):
        configuration = _enabled_configuration()

        class SwitchingProtection(FakeProtection):
            def configure(self, tree):
                super().configure(tree)
                if len(self.configured) == 1:
                    configuration.set_enabled(False)

        protection = SwitchingProtection()
        gate = _gate(configuration, protection)

        assert not configuration.is_enabled
        assert gate.initialized
        assert not gate.enabled

        call_next = AsyncMock(return_value=PlainTextResponse("app"))
        response = await gate.dispatch(_request(), call_next)
        assert response.status_code == 200
        assert protection.handled == 0

    @pytest.mark.asyncio
    async def test_state_from_replaced_tree_is_not_served(self):
        configuration = _enabled_configuration()
        protection = FakeProtection()
        gate = _gate(configuration, protection)

        # A state built from an older tree that slipped past the change listener
        stale = gate._state
        configuration.set_enabled(False)
        gate._state = stale

        assert not gate.initialized
        call_next = AsyncMock(return_value=PlainTextResponse("app"))
        response = await gate.dispatch(_request(), call_next)
        assert response.status_code == 200
        assert gate.initialized
        assert not gate.enabled


class FakeASGIProtection:
    def __init__(self):
        self.configured = []

    def configure(self, tree):
        self.configured.append(tree)

    async def __call__(self, scope, receive, send, app):
        await PlainTextResponse("protected", status_code=418)(scope, receive, send)


class TestASGIGate:
    async def _call(self, gate: ASGIGateMiddleware, scope_type: str = "http") -> list[dict]:
        messages = []

        async def receive():
            return {"type": "http.request", "body": b""}

        async def send(message):
            messages.append(message)

        scope = {"type": scope_type, "method": "GET", "path": "/x", "headers": [], "query_string": b""}
        await gate(scope, receive, send)
        return messages

    @pytest.mark.asyncio
    async def test_enabled_delegates(self):
        app = AsyncMock()
        protection = FakeASGIProtection()
        gate = ASGIGateMiddleware(app, _enabled_configuration(), protection)

        messages = await self._call(gate)

        assert messages[0]["status"] == 418
        app.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_passes_through(self):
        app = AsyncMock()
        gate = ASGIGateMiddleware(app, AggregatedConfiguration(), FakeASGIProtection())

        await self._call(gate)

        app.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_non_http_scope_passes_through(self):
        app = AsyncMock()
        gate = ASGIGateMiddleware(app, _enabled_configuration(), FakeASGIProtection())

        await self._call(gate, scope_type="lifespan")

        app.assert_awaited_once()
