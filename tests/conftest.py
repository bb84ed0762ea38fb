"""Global pytest configuration."""

from __future__ import annotations

import asyncio
import copy
import inspect
import json

import httpx
import pytest

from logonguard.analyzer.metrics import metrics
from logonguard.rules.lifecycle import BUNDLED_RULES_PATH, RulesGeneration, RulesSource, utcnow
from logonguard.rules.schema import parse_rule_store

with open(BUNDLED_RULES_PATH, encoding="utf-8") as _f:
    _BUNDLED = json.load(_f)


@pytest.fixture(autouse=True)
def _reset_metrics():
    """Metrics are a process-wide singleton; start every test from zero."""
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def bundled_payload() -> dict:
    """A fresh, mutable copy of the bundled rule file."""
    return copy.deepcopy(_BUNDLED)


@pytest.fixture
def make_generation():
    """Build a RulesGeneration from a rule payload."""

    def _make(payload: dict, generation: int = 1) -> RulesGeneration:
        return RulesGeneration(
            generation=generation,
            store=parse_rule_store(payload),
            source=RulesSource.REMOTE,
            source_url="https://rules.example/rules.json",
            loaded_at=utcnow(),
        )

    return _make


@pytest.fixture
def mock_client_factory():
    """Client factory whose requests are answered by `handler` (httpx.MockTransport)."""

    def _make(handler):
        transport = httpx.MockTransport(handler)

        def factory(timeout: float) -> httpx.AsyncClient:
            return httpx.AsyncClient(transport=transport, timeout=timeout)

        return factory

    return _make


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem):  # type: ignore[override]
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        testargs = {
            name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
        }
        asyncio.run(pyfuncitem.obj(**testargs))
        return True
    return None


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "asyncio: mark test as requiring asyncio support")
