"""Tests for the rules lifecycle: fetch, cache, fallback and generation swaps."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import httpx
import pytest

from logonguard.config import ConfigResolver
from logonguard.constants import DEFAULT_RULES_URL, LOCAL_CONFIG_KEY, RULES_CACHE_KEY
from logonguard.rules import RulesManager, RulesState
from logonguard.rules.lifecycle import RulesSource, parse_timestamp
from logonguard.storage import MemoryStore

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


class _RulesServer:
    """MockTransport handler serving one rule payload (or failing)."""

    def __init__(self, payload=None, status: int = 200, offline: bool = False):
        self.payload = payload
        self.status = status
        self.offline = offline
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        if self.offline:
            raise httpx.ConnectError("network unreachable", request=request)
        if self.status != 200:
            return httpx.Response(self.status, text="unavailable")
        return httpx.Response(200, json=self.payload)


def _versioned(payload: dict, version: str) -> dict:
    return dict(payload, version=version)


def _cache_entry(payload: dict, age: timedelta, url: str = DEFAULT_RULES_URL) -> dict:
    return {"rules": payload, "fetched_at": (NOW - age).isoformat(), "source_url": url}


def _manager(store, server, mock_client_factory, **kwargs) -> RulesManager:
    return RulesManager(
        store,
        ConfigResolver(store, branding={}),
        fetch_timeout=1.0,
        client_factory=mock_client_factory(server),
        clock=lambda: NOW,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_remote_fetch_activates_and_caches(bundled_payload, mock_client_factory):
    store = MemoryStore()
    server = _RulesServer(_versioned(bundled_payload, "remote-1"))
    manager = _manager(store, server, mock_client_factory)

    generation = await manager.initialize()

    assert generation.source is RulesSource.REMOTE
    assert generation.version == "remote-1"
    assert manager.state is RulesState.READY
    assert manager.get_active_rules() is generation
    assert server.requests == [DEFAULT_RULES_URL]

    cached = await store.get(RULES_CACHE_KEY)
    assert cached["source_url"] == DEFAULT_RULES_URL
    assert cached["rules"]["version"] == "remote-1"
    assert parse_timestamp(cached["fetched_at"]) == NOW


@pytest.mark.asyncio
async def test_before_load_minimal_rules_are_served(mock_client_factory):
    manager = _manager(MemoryStore(), _RulesServer(status=500), mock_client_factory)
    active = manager.get_active_rules()
    assert manager.state is RulesState.UNLOADED
    assert active.source is RulesSource.MINIMAL
    assert active.store.is_trusted_origin("https://login.microsoftonline.com")


@pytest.mark.asyncio
async def test_no_cache_and_failed_fetch_falls_back_to_bundled(mock_client_factory):
    manager = _manager(MemoryStore(), _RulesServer(status=503), mock_client_factory)

    generation = await manager.initialize()

    assert generation.source is RulesSource.BUNDLED
    assert manager.state is RulesState.DEGRADED
    assert generation.store.indicators
    assert "HTTP 503" in manager.status()["last_error"]


@pytest.mark.asyncio
async def test_everything_failing_still_yields_minimal_rules(tmp_path, mock_client_factory):
    manager = _manager(
        MemoryStore(),
        _RulesServer(offline=True),
        mock_client_factory,
        bundled_path=tmp_path / "missing.json",
    )

    generation = await manager.initialize()

    assert generation.source is RulesSource.MINIMAL
    assert generation.version == "minimal"
    assert manager.state is RulesState.DEGRADED
    assert generation.store.trusted_login_patterns


@pytest.mark.asyncio
async def test_expired_cache_beats_bundled_when_offline(bundled_payload, mock_client_factory):
    store = MemoryStore(
        {RULES_CACHE_KEY: _cache_entry(_versioned(bundled_payload, "cached-1"), timedelta(days=3))}
    )
    manager = _manager(store, _RulesServer(offline=True), mock_client_factory)

    generation = await manager.initialize()

    assert generation.source is RulesSource.CACHE
    assert generation.version == "cached-1"
    assert manager.state is RulesState.READY


@pytest.mark.asyncio
async def test_fresh_cache_served_then_refreshed_in_background(bundled_payload, mock_client_factory):
    store = MemoryStore(
        {RULES_CACHE_KEY: _cache_entry(_versioned(bundled_payload, "cached-1"), timedelta(hours=1))}
    )
    server = _RulesServer(_versioned(bundled_payload, "remote-2"))
    manager = _manager(store, server, mock_client_factory)

    first = await manager.initialize()
    assert first.source is RulesSource.CACHE
    assert first.version == "cached-1"

    await manager.wait_idle()
    current = manager.get_active_rules()
    assert current.version == "remote-2"
    assert current.generation == first.generation + 1
    # A generation already handed out never changes underneath its holder.
    assert first.store.version == "cached-1"


@pytest.mark.asyncio
async def test_cache_from_another_url_is_discarded(bundled_payload, mock_client_factory):
    store = MemoryStore(
        {
            RULES_CACHE_KEY: _cache_entry(
                _versioned(bundled_payload, "old-source"),
                timedelta(hours=1),
                url="https://old.example/rules.json",
            )
        }
    )
    manager = _manager(store, _RulesServer(status=500), mock_client_factory)

    generation = await manager.initialize()

    assert generation.source is RulesSource.BUNDLED
    assert await store.get(RULES_CACHE_KEY) is None


@pytest.mark.asyncio
async def test_invalid_cache_is_discarded(mock_client_factory):
    store = MemoryStore(
        {RULES_CACHE_KEY: {"rules": {"version": "junk"}, "fetched_at": NOW.isoformat(), "source_url": DEFAULT_RULES_URL}}
    )
    manager = _manager(store, _RulesServer(status=500), mock_client_factory)

    generation = await manager.initialize()

    assert generation.source is RulesSource.BUNDLED
    assert await store.get(RULES_CACHE_KEY) is None


@pytest.mark.asyncio
async def test_invalid_remote_payload_falls_back(bundled_payload, mock_client_factory):
    broken = dict(bundled_payload, thresholds={"legitimate": 10, "suspicious": 60, "phishing": 30})
    manager = _manager(MemoryStore(), _RulesServer(broken), mock_client_factory)

    generation = await manager.initialize()

    assert generation.source is RulesSource.BUNDLED
    assert "thresholds" in manager.status()["last_error"]


@pytest.mark.asyncio
async def test_failed_update_keeps_current_remote_rules(bundled_payload, mock_client_factory):
    server = _RulesServer(_versioned(bundled_payload, "remote-1"))
    manager = _manager(MemoryStore(), server, mock_client_factory)
    loaded = await manager.initialize()

    server.status = 500
    after = await manager.force_update()

    assert after is loaded
    assert manager.state is RulesState.READY


@pytest.mark.asyncio
async def test_reload_after_url_change_fetches_new_source(bundled_payload, mock_client_factory):
    store = MemoryStore()
    server = _RulesServer(_versioned(bundled_payload, "remote-1"))
    manager = _manager(store, server, mock_client_factory)
    await manager.initialize()

    await store.set(LOCAL_CONFIG_KEY, {"customRulesUrl": "https://org.example/rules.json"})
    server.payload = _versioned(bundled_payload, "org-1")
    generation = await manager.reload_configuration()
    await manager.wait_idle()

    assert server.requests[-1] == "https://org.example/rules.json"
    assert generation.version == "org-1"
    assert generation.source_url == "https://org.example/rules.json"
    assert (await store.get(RULES_CACHE_KEY))["source_url"] == "https://org.example/rules.json"


@pytest.mark.asyncio
async def test_listeners_notified_and_isolated(bundled_payload, mock_client_factory):
    manager = _manager(MemoryStore(), _RulesServer(_versioned(bundled_payload, "remote-1")), mock_client_factory)
    seen = []

    def broken_listener(generation):
        raise RuntimeError("listener bug")

    async def async_listener(generation):
        seen.append(("async", generation.version))

    manager.add_listener(broken_listener)
    manager.add_listener(lambda g: seen.append(("sync", g.generation)))
    manager.add_listener(async_listener)

    await manager.initialize()

    assert seen == [("sync", 1), ("async", "remote-1")]


@pytest.mark.asyncio
async def test_status_reports_active_generation(bundled_payload, mock_client_factory):
    manager = _manager(MemoryStore(), _RulesServer(_versioned(bundled_payload, "remote-1")), mock_client_factory)
    await manager.initialize()

    status = manager.status()
    assert status["state"] == "ready"
    assert status["generation"] == 1
    assert status["source"] == "remote"
    assert status["version"] == "remote-1"
    assert status["update_interval_hours"] == 24
    assert status["last_error"] is None


@pytest.mark.asyncio
async def test_periodic_task_starts_and_stops(bundled_payload, mock_client_factory):
    manager = _manager(MemoryStore(), _RulesServer(_versioned(bundled_payload, "remote-1")), mock_client_factory)
    await manager.initialize()
    manager.start()
    await manager.stop()
    assert manager.get_active_rules().version == "remote-1"


@pytest.mark.asyncio
async def test_remote_rules_with_mistyped_fields_still_activate(bundled_payload, mock_client_factory):
    payload = _versioned(bundled_payload, "remote-typed")
    payload["phishing_indicators"].extend(
        [
            {"id": "null_confidence", "pattern": "x", "confidence": None},
            {"id": "numeric_context", "pattern": "x", "context_required": 5},
        ]
    )
    payload["m365_detection_requirements"]["primary_elements"].append(
        {"id": "numeric_patterns", "type": "source_content", "patterns": 5}
    )
    manager = _manager(MemoryStore(), _RulesServer(payload), mock_client_factory)

    generation = await manager.initialize()

    assert generation.source is RulesSource.REMOTE
    assert generation.version == "remote-typed"
    assert manager.state is RulesState.READY
    assert generation.store.diagnostics.dropped_count == 3


def test_parse_timestamp_formats():
    assert parse_timestamp("2026-01-10T12:00:00+00:00") == NOW
    assert parse_timestamp("2026-01-10T12:00:00") == NOW
    assert parse_timestamp(NOW.timestamp()) == NOW
    assert parse_timestamp(NOW.timestamp() * 1000) == NOW
    assert parse_timestamp("yesterday") is None
    assert parse_timestamp(None) is None
