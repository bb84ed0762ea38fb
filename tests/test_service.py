"""End-to-end tests for the wired service (network answered by MockTransport)."""

import json

import httpx
import pytest

from logonguard.analyzer import Decision, VerdictAction
from logonguard.config import Settings
from logonguard.constants import DEFAULT_RULES_URL
from logonguard.main import LogonGuardService
from logonguard.storage import MemoryStore, StaticPolicySource

WEBHOOK_URL = "https://cipp.example/api/events"
PHISH_PAGE = {
    "url": "https://secure-login-office365-verify.example.net/",
    "domExcerpt": '<input type="email" name="loginfmt"><p>Microsoft 365</p>',
    "title": "Sign in",
}


class FakeBackend:
    """Serves the rule file and rogue app feed, and records webhook posts."""

    def __init__(self, rules: dict):
        self.rules = rules
        self.fetched: list[str] = []
        self.events: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if request.method == "POST" and url == WEBHOOK_URL:
            self.events.append(json.loads(request.content))
            return httpx.Response(200)
        self.fetched.append(url)
        if url == DEFAULT_RULES_URL:
            return httpx.Response(200, json=self.rules)
        if url.endswith("rogueapps.json"):
            return httpx.Response(200, json=[])
        return httpx.Response(404)


@pytest.fixture
def backend(bundled_payload):
    return FakeBackend(bundled_payload)


def _service(tmp_path, backend, mock_client_factory, policy=None):
    settings = Settings(data_dir=tmp_path, health_enabled=False)
    return LogonGuardService(
        settings,
        store=MemoryStore(),
        policy_source=StaticPolicySource(
            policy if policy is not None else {"enableCippReporting": True, "cippServerUrl": WEBHOOK_URL}
        ),
        client_factory=mock_client_factory(backend),
    )


@pytest.mark.asyncio
async def test_start_loads_remote_rules(tmp_path, backend, mock_client_factory):
    service = _service(tmp_path, backend, mock_client_factory)
    await service.start()
    try:
        health = service._health_snapshot()
        assert health["status"] == "ok"
        assert health["rules_ready"] is True
        assert health["rules"]["source"] == "remote"
        assert backend.fetched[0] == DEFAULT_RULES_URL
        assert service.current_config().is_locked("cippServerUrl")
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_blocked_page_is_reported(tmp_path, backend, mock_client_factory):
    service = _service(tmp_path, backend, mock_client_factory)
    await service.start()
    try:
        verdict = await service.analyze_page(1, PHISH_PAGE)
    finally:
        await service.stop()

    assert verdict.decision is Decision.PHISHING_BLOCKED
    assert verdict.action is VerdictAction.BLOCK
    (event,) = backend.events
    assert event["type"] == "page_blocked"
    assert event["data"]["threshold"] == 30
    assert event["data"]["context"]["pageTitle"] == "Sign in"


@pytest.mark.asyncio
async def test_verdicts_and_false_positives_are_logged_locally(tmp_path, backend, mock_client_factory):
    service = _service(tmp_path, backend, mock_client_factory, policy={})
    await service.start()
    try:
        await service.analyze_page(3, PHISH_PAGE)
        await service.report_false_positive("https://sso.contoso.com/", "our ADFS")
        entries = await service.event_log.recent()
    finally:
        await service.stop()

    # Reporting is off, the local log still has both.
    assert backend.events == []
    assert [e["event"]["type"] for e in entries] == ["false_positive_report", "page_blocked"]
    blocked = entries[1]
    assert blocked["tabId"] == 3
    assert blocked["event"]["url"] == "https[:]//secure-login-office365-verify.example.net/"


@pytest.mark.asyncio
async def test_update_config_applies_immediately(tmp_path, backend, mock_client_factory):
    service = _service(tmp_path, backend, mock_client_factory)
    await service.start()
    try:
        config = await service.update_config({"enablePageBlocking": False})
        verdict = await service.analyze_page(1, PHISH_PAGE)
        stored = await service.store.get("config")
    finally:
        await service.stop()

    assert config.enable_page_blocking is False
    assert verdict.action is VerdictAction.WARN
    assert stored == {"enablePageBlocking": False}


@pytest.mark.asyncio
async def test_malformed_payload_gets_cautious_verdict(tmp_path, backend, mock_client_factory):
    service = _service(tmp_path, backend, mock_client_factory, policy={})
    await service.start()
    try:
        verdict = await service.analyze_page(1, {"domExcerpt": "<p>hi</p>"})
    finally:
        await service.stop()

    assert verdict.decision is Decision.SUSPICIOUS
    assert verdict.score is None
    assert backend.events == []


@pytest.mark.asyncio
async def test_unreachable_rules_degrade_to_bundled(tmp_path, mock_client_factory):
    service = _service(tmp_path, lambda request: httpx.Response(503), mock_client_factory, policy={})
    await service.start()
    try:
        health = service._health_snapshot()
        verdict = await service.analyze_page(1, PHISH_PAGE)
    finally:
        await service.stop()

    assert health["rules_ready"] is False
    assert health["rules"]["source"] == "bundled"
    assert verdict.decision is Decision.PHISHING_BLOCKED


@pytest.mark.asyncio
async def test_stop_is_idempotent(tmp_path, backend, mock_client_factory):
    service = _service(tmp_path, backend, mock_client_factory)
    await service.start()
    await service.stop()
    await service.stop()
    assert service._health_snapshot()["status"] == "stopped"
