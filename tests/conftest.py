"""Shared fixtures: settings without .env, and an in-memory transport."""

import inspect

import pytest

from trendmate.api import TrendmateApi
from trendmate.config import Settings
from trendmate.resilience import ResilientClient


class FakeTransport:
    """Transport double; ``responder(operation_id, query)`` returns an outcome
    or an awaitable of one.  Every call is recorded."""

    def __init__(self, responder):
        self.responder = responder
        self.calls: list[tuple[str, object]] = []

    async def send(self, operation_id, query):
        self.calls.append((operation_id, query))
        result = self.responder(operation_id, query)
        if inspect.isawaitable(result):
            result = await result
        return result


async def no_sleep(_delay):
    return None


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        app_id="app",
        widget_key="key",
        agent_id="agent",
        request_timeout=240.0,
        max_attempts=3,
        backoff_base=1.0,
        backoff_cap=10.0,
    )


@pytest.fixture
def fake_transport():
    return FakeTransport


@pytest.fixture
def make_api(settings):
    """Build a TrendmateApi over a FakeTransport; returns ``(api, transport)``."""

    def factory(responder):
        transport = FakeTransport(responder)
        client = ResilientClient(transport, settings, sleep=no_sleep)
        return TrendmateApi(settings, client=client), transport

    return factory
