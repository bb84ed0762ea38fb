"""Tests for the verdict engine."""

import pytest

from logonguard.analyzer import Decision, PageSnapshot, VerdictAction, VerdictEngine
from logonguard.analyzer.engine import has_oauth_context
from logonguard.analyzer.metrics import MAX_TRACKED_DOMAINS, metrics
from logonguard.config import DEFAULT_CONFIG, merge_layers

PHISH_URL = "https://secure-login-office365-verify.example.net"

# loginfmt field plus Microsoft branding, no form and no external resources.
PHISH_DOM = '<div><input type="email" name="loginfmt"><p>Microsoft 365</p></div>'


def _engine(generation, **local):
    config = merge_layers(DEFAULT_CONFIG, local=local)
    return VerdictEngine(lambda: generation, lambda: config)


@pytest.fixture
def generation(bundled_payload, make_generation):
    return make_generation(bundled_payload)


@pytest.fixture
def unblocked_generation(bundled_payload, make_generation):
    """Bundled rules without blocking rules, so only scores decide."""
    bundled_payload["blocking_rules"] = []
    return make_generation(bundled_payload)


class TestTrustedOrigins:
    def test_trusted_login_origin(self, generation):
        verdict = _engine(generation).analyze_url("https://login.microsoftonline.com")
        assert verdict.decision is Decision.TRUSTED
        assert verdict.score == 100
        assert verdict.action is VerdictAction.NONE
        assert verdict.rules_generation == 1

    def test_trusted_regardless_of_page_content(self, generation):
        verdict = _engine(generation).analyze_snapshot(
            {
                "url": "https://login.microsoftonline.com/common/login",
                "dom_excerpt": '<input name="loginfmt"><script src="https://api.telegram.org/bot1/x"></script>',
            }
        )
        assert verdict.decision is Decision.TRUSTED
        assert verdict.matched_indicator_ids == ()

    def test_lookalike_origin_is_not_trusted(self, generation):
        verdict = _engine(generation).analyze_url("https://login.microsoftonline.com.evil.net/")
        assert verdict.decision is not Decision.TRUSTED

    def test_extra_trusted_origin_with_badge(self, generation):
        engine = _engine(
            generation,
            extraTrustedOrigins=["https://sso.contoso.com"],
            enableValidPageBadge=True,
        )
        verdict = engine.analyze_url("https://sso.contoso.com/adfs/ls")
        assert verdict.decision is Decision.TRUSTED_EXTRA
        assert verdict.action is VerdictAction.BADGE


class TestExclusions:
    def test_rule_exclusion(self, generation):
        verdict = _engine(generation).analyze_url("https://portal.azure.com/#home")
        assert verdict.decision is Decision.NOT_EVALUATED
        assert verdict.score is None
        assert verdict.reason == "excluded by rule set"

    def test_allowlisted_url_is_not_scanned(self, bundled_payload, make_generation):
        bundled_payload["phishing_indicators"].append(
            {"id": "sim_path", "type": "url", "pattern": "/sim\\?", "severity": "high", "category": "training"}
        )
        generation = make_generation(bundled_payload)
        url = "https://training.partner.com/sim?x=1"

        unlisted = _engine(generation).analyze_url(url)
        assert "sim_path" in unlisted.matched_indicator_ids

        metrics.reset()
        listed = _engine(generation, urlAllowlist="https://training.partner.com/*").analyze_url(url)
        assert listed.decision is Decision.NOT_EVALUATED
        assert listed.matched_indicator_ids == ()
        assert listed.reason.startswith("allowlisted")
        assert metrics.get_summary()["categories"] == {}

    def test_host_allowlist_covers_www(self, generation):
        engine = _engine(generation, urlAllowlist=["phish-sim.example"])
        verdict = engine.analyze_snapshot({"url": "https://www.phish-sim.example/", "dom_excerpt": PHISH_DOM})
        assert verdict.decision is Decision.NOT_EVALUATED


class TestIndicators:
    def test_block_indicator_wins_over_score(self, generation):
        verdict = _engine(generation).analyze_snapshot({"url": PHISH_URL, "dom_excerpt": PHISH_DOM})
        assert verdict.decision is Decision.PHISHING_BLOCKED
        # phi_001 critical + phi_002 high + phi_004 medium
        assert verdict.score == 50
        assert verdict.matched_indicator_ids == ("phi_001", "phi_002", "phi_004")
        assert verdict.blocking_rule_ids == ()
        assert verdict.reason.startswith("indicator phi_001")
        assert verdict.action is VerdictAction.BLOCK
        assert verdict.confidence == pytest.approx(0.9)

    def test_blocking_disabled_downgrades_to_warning(self, generation):
        engine = _engine(generation, enablePageBlocking=False)
        verdict = engine.analyze_snapshot({"url": PHISH_URL, "dom_excerpt": PHISH_DOM})
        assert verdict.decision is Decision.PHISHING_BLOCKED
        assert verdict.action is VerdictAction.WARN

    def test_context_required_gates_indicator(self, generation):
        verdict = _engine(generation).analyze_snapshot(
            {"url": "https://portal-signin.example.net/", "dom_excerpt": '<input name="loginfmt">'}
        )
        assert "phi_001" not in verdict.matched_indicator_ids
        assert verdict.decision is Decision.MS_LOGIN_UNKNOWN
        assert verdict.score == 100

    def test_not_a_login_page(self, generation):
        verdict = _engine(generation).analyze_snapshot(
            {"url": "https://news.example.org/story", "dom_excerpt": "<p>Office 365 outage report</p>"}
        )
        assert verdict.decision is Decision.NOT_EVALUATED
        assert verdict.reason.startswith("not a login page")

    def test_url_only_analysis_without_matches(self, generation):
        verdict = _engine(generation).analyze_url("https://example.org/")
        assert verdict.decision is Decision.NOT_EVALUATED
        assert verdict.score is None


class TestThresholds:
    BASE = {
        "url": "http://10.0.0.5/secure-login",
        "dom_excerpt": (
            '<input name="loginfmt"><script>atob("eA==")</script>'
            "<p>Your account has been suspended</p>"
        ),
        "form_actions": [{"action": "/login.php", "method": "post"}],
    }

    def test_suspicious_band(self, unblocked_generation):
        verdict = _engine(unblocked_generation).analyze_snapshot(self.BASE)
        # phi_002 15 + phi_003 10 + phi_006 10 + phi_007 10 + phi_008 15
        assert verdict.score == 40
        assert verdict.decision is Decision.SUSPICIOUS
        assert verdict.action is VerdictAction.WARN
        assert verdict.matched_indicator_ids == ("phi_002", "phi_003", "phi_006", "phi_007", "phi_008")

    def test_phishing_threshold_is_inclusive(self, unblocked_generation):
        snapshot = dict(
            self.BASE,
            dom_excerpt=self.BASE["dom_excerpt"] + '<link href="https://aadcdn.msftauth.net/x.css">',
            headers={"X-Powered-By": "PHP/8.1"},
        )
        verdict = _engine(unblocked_generation).analyze_snapshot(snapshot)
        assert verdict.score == 30
        assert verdict.decision is Decision.PHISHING_BLOCKED
        assert "phishing threshold 30" in verdict.reason
        assert "phi_009" in verdict.matched_indicator_ids

    def test_indicator_threshold_blocking_rule(self, generation):
        verdict = _engine(generation).analyze_snapshot(self.BASE)
        assert verdict.decision is Decision.PHISHING_BLOCKED
        assert verdict.blocking_rule_ids == ("many_indicators",)


class TestBlockingRules:
    URL = "https://portal-signin.example.net/"
    DOM = '<input name="loginfmt"><input type="password" name="passwd">'

    def test_password_form_posting_off_platform(self, generation):
        verdict = _engine(generation).analyze_snapshot(
            {
                "url": self.URL,
                "dom_excerpt": self.DOM,
                "formActions": [{"action": "https://collector.example.net/post", "hasPassword": True}],
            }
        )
        assert verdict.decision is Decision.PHISHING_BLOCKED
        assert verdict.blocking_rule_ids == ("form_posts_off_platform",)
        assert verdict.reason.startswith("blocking rule form_posts_off_platform")

    def test_password_form_posting_to_microsoft(self, generation):
        verdict = _engine(generation).analyze_snapshot(
            {
                "url": self.URL,
                "dom_excerpt": self.DOM,
                "formActions": [{"action": "https://login.microsoftonline.com/common/login", "hasPassword": True}],
            }
        )
        assert verdict.blocking_rule_ids == ()
        assert verdict.decision is Decision.MS_LOGIN_UNKNOWN

    def test_branding_css_from_wrong_origin(self, generation):
        dom = self.DOM + '<link rel="stylesheet" href="https://cdn.evil.example/customcss/converged.css">'
        verdict = _engine(generation).analyze_snapshot({"url": self.URL, "dom_excerpt": dom})
        assert verdict.blocking_rule_ids == ("branding_css_wrong_origin",)

    def test_branding_css_from_microsoft(self, generation):
        dom = self.DOM + (
            '<link rel="stylesheet" href="https://aadcdn.msftauthimages.net/abc/customcss/converged.css">'
        )
        verdict = _engine(generation).analyze_snapshot({"url": self.URL, "dom_excerpt": dom})
        assert verdict.blocking_rule_ids == ()


class TestFailureModes:
    @pytest.mark.parametrize("url", ["chrome://settings", "about:blank", "file:///etc/passwd"])
    def test_unsupported_schemes(self, generation, url):
        verdict = _engine(generation).analyze_url(url)
        assert verdict.decision is Decision.NOT_EVALUATED
        assert verdict.reason == "unsupported URL scheme"

    @pytest.mark.parametrize("url", ["/relative/path", "", "https://"])
    def test_malformed_url_fails_toward_caution(self, generation, url):
        verdict = _engine(generation).analyze_url(url)
        assert verdict.decision is Decision.SUSPICIOUS
        assert verdict.score is None
        assert verdict.action is VerdictAction.WARN
        assert verdict.reason.startswith("analysis unavailable")
        assert metrics.get_summary()["analysis_errors"] == 1

    def test_malformed_snapshot(self, generation):
        verdict = _engine(generation).analyze_snapshot({"dom_excerpt": "<p>no url</p>"})
        assert verdict.decision is Decision.SUSPICIOUS
        assert verdict.reason == "analysis unavailable: snapshot has no url"

    @pytest.mark.parametrize(
        "payload, message",
        [
            ({"url": "https://phish.example/", "formActions": 5}, "form_actions must be a list"),
            ({"url": "https://phish.example/", "form_actions": "https://x/"}, "form_actions must be a list"),
            ({"url": "https://phish.example/", "resources": 5}, "resources must be a list"),
            ({"url": "https://phish.example/", "headers": ["a"]}, "headers must be an object"),
        ],
    )
    def test_mistyped_snapshot_fields(self, generation, payload, message):
        verdict = _engine(generation).analyze_snapshot(payload)
        assert verdict.decision is Decision.SUSPICIOUS
        assert verdict.score is None
        assert verdict.reason == f"analysis unavailable: {message}"

    def test_directly_built_snapshot_with_missing_dom(self, generation):
        snapshot = PageSnapshot(url="https://phish.example/login", dom_excerpt=None)
        verdict = _engine(generation).analyze_snapshot(snapshot)
        assert verdict.decision is Decision.SUSPICIOUS
        assert verdict.score is None
        assert verdict.action is VerdictAction.WARN
        assert verdict.reason.startswith("analysis unavailable: malformed snapshot")
        assert metrics.get_summary()["analysis_errors"] == 1


def test_analysis_is_pure(generation):
    engine = _engine(generation)
    snapshot = PageSnapshot.from_dict({"url": PHISH_URL, "dom_excerpt": PHISH_DOM, "title": "Sign in"})
    first = engine.analyze_snapshot(snapshot)
    second = engine.analyze_snapshot(snapshot)
    assert first == second


def test_explicit_generation_overrides_provider(generation, bundled_payload, make_generation):
    bundled_payload["trusted_login_patterns"] = ["https://sso.fabrikam.example"]
    other = make_generation(bundled_payload, generation=7)
    engine = _engine(generation)

    verdict = engine.analyze_url("https://sso.fabrikam.example", rules=other)
    assert verdict.decision is Decision.TRUSTED
    assert verdict.rules_generation == 7


def test_metrics_record_verdicts(generation):
    engine = _engine(generation)
    engine.analyze_url("https://login.microsoftonline.com")
    engine.analyze_snapshot({"url": PHISH_URL, "dom_excerpt": PHISH_DOM})
    summary = metrics.get_summary()
    assert summary["total_analyses"] == 2
    assert summary["verdicts"] == {"trusted": 1, "phishing-blocked": 1}
    assert summary["categories"]["credential_harvesting"]["total_hits"] == 1


def test_metrics_domain_tracking_is_bounded():
    for index in range(MAX_TRACKED_DOMAINS + 250):
        metrics.record_indicator_hit("credential_harvesting", "phi_001", f"host{index}.example")
    top = metrics.get_summary()["categories"]["credential_harvesting"]["top_indicators"][0]
    assert top["hits"] == MAX_TRACKED_DOMAINS + 250
    assert top["unique_domains"] == MAX_TRACKED_DOMAINS
    assert top["domains_capped"] is True


def test_verdict_to_dict(generation):
    verdict = _engine(generation).analyze_snapshot({"url": PHISH_URL, "dom_excerpt": PHISH_DOM})
    data = verdict.to_dict()
    assert data["decision"] == "phishing-blocked"
    assert data["action"] == "block"
    assert data["matched_indicator_ids"] == ["phi_001", "phi_002", "phi_004"]
    assert data["rogue_app"] is None


@pytest.mark.parametrize(
    "url,expected",
    [
        ("https://login.microsoftonline.com/common/oauth2/v2.0/authorize?client_id=a", True),
        ("https://login.microsoftonline.com/common/adminconsent?client_id=a", True),
        ("https://app.example/start?client_id=a&response_type=code", True),
        ("https://app.example/start?client_id=a", False),
        ("https://login.microsoftonline.com/common/oauth2/v2.0/authorize", False),
    ],
)
def test_has_oauth_context(url, expected):
    assert has_oauth_context(url) is expected


class TestReferrer:
    def test_referrer_from_trusted_login_origin(self, generation):
        verdict = _engine(generation).analyze_snapshot(
            {"url": PHISH_URL, "dom_excerpt": PHISH_DOM, "referrer": "https://login.microsoftonline.com/common/reprocess"}
        )
        assert verdict.referrer_trusted is True
        assert verdict.to_dict()["referrer_trusted"] is True

    def test_referrer_under_valid_prefix(self, generation):
        verdict = _engine(generation).analyze_snapshot(
            {"url": PHISH_URL, "dom_excerpt": PHISH_DOM, "referrer": "https://myapps.microsoft.com/signin/x"}
        )
        assert verdict.referrer_trusted is True

    @pytest.mark.parametrize(
        "referrer",
        ["https://mail.example.com/", "https://myapps.microsoft.com.evil.net/", "https://login.live.com.evil.net/"],
    )
    def test_untrusted_referrer(self, generation, referrer):
        verdict = _engine(generation).analyze_snapshot(
            {"url": PHISH_URL, "dom_excerpt": PHISH_DOM, "referrer": referrer}
        )
        assert verdict.referrer_trusted is False
        assert verdict.decision is Decision.PHISHING_BLOCKED

    def test_referer_header_used_when_no_referrer_field(self, generation):
        verdict = _engine(generation).analyze_snapshot(
            {"url": PHISH_URL, "dom_excerpt": PHISH_DOM, "headers": {"Referer": "https://login.live.com/"}}
        )
        assert verdict.referrer_trusted is True

    def test_no_referrer(self, generation):
        verdict = _engine(generation).analyze_url("https://login.microsoftonline.com")
        assert verdict.referrer_trusted is None
