"""Tests for rule pattern compilation and allowlist entries."""

import time

import pytest

from logonguard.errors import RuleCompileError
from logonguard.rules.patterns import (
    compile_allowlist_entry,
    compile_origin_pattern,
    compile_rule_pattern,
    parse_flags,
)


class TestParseFlags:
    def test_javascript_only_flags_are_ignored(self):
        assert parse_flags("gi") == "i"

    def test_combined_flags(self):
        assert parse_flags("mi") == "im"
        assert parse_flags("iis") == "is"

    def test_missing_flags_use_default(self):
        assert parse_flags(None) == "i"
        assert parse_flags("") == ""

    def test_unknown_flag_rejected(self):
        with pytest.raises(ValueError):
            parse_flags("iq")

    def test_verbose_flag_rejected(self):
        with pytest.raises(ValueError):
            parse_flags("x")


class TestCompileRulePattern:
    def test_valid_pattern(self):
        regex = compile_rule_pattern("r1", r"loginfmt")
        assert regex.search("NAME=LOGINFMT")

    def test_case_sensitive_without_flags(self):
        regex = compile_rule_pattern("r1", r"loginfmt", "")
        assert regex.search("name=loginfmt")
        assert not regex.search("NAME=LOGINFMT")

    def test_multiline_flag(self):
        regex = compile_rule_pattern("r1", r"^password$", "im")
        assert regex.search("user\nPassword\nnext")

    def test_repeated_subdomain_groups_compile(self):
        regex = compile_rule_pattern("sub", r"https://(?:[a-z0-9-]+\.)+evil\.example")
        assert regex.search("https://login.microsoft.evil.example/")
        assert not regex.search("https://evil.example.com/")

    @pytest.mark.parametrize("pattern", [r"(a+)+$", r"(a|aa)*b", r"(x*y*)*z"])
    def test_backtracking_shapes_run_in_linear_time(self, pattern):
        regex = compile_rule_pattern("heavy", pattern)
        started = time.monotonic()
        assert regex.search("a" * 50_000 + "!") is None
        assert time.monotonic() - started < 2.0

    @pytest.mark.parametrize("pattern", [r"login(?=fmt)", r"(?<!safe)login", r"(a)\1"])
    def test_lookaround_and_backreferences_rejected(self, pattern):
        with pytest.raises(RuleCompileError, match="invalid regex") as exc:
            compile_rule_pattern("unsupported", pattern)
        assert exc.value.rule_id == "unsupported"

    def test_invalid_regex_rejected(self):
        with pytest.raises(RuleCompileError, match="invalid regex"):
            compile_rule_pattern("broken", "([a-")

    def test_empty_and_oversized_rejected(self):
        with pytest.raises(RuleCompileError):
            compile_rule_pattern("empty", "")
        with pytest.raises(RuleCompileError):
            compile_rule_pattern("huge", "a" * 1001)
        with pytest.raises(RuleCompileError):
            compile_rule_pattern("number", 5)

    def test_bounded_quantified_groups_allowed(self):
        regex = compile_rule_pattern("ip", r"^https?://\d{1,3}(?:\.\d{1,3}){3}(?::\d+)?/")
        assert regex.search("http://10.1.2.3:8080/login")


class TestOriginPatterns:
    def test_plain_origin_is_literal(self):
        matcher = compile_origin_pattern("https://login.live.com")
        assert matcher.fullmatch("https://login.live.com")
        assert not matcher.fullmatch("https://loginXlive.com")
        assert not matcher.fullmatch("https://login.live.com.evil.net")

    def test_regex_origin_anchors_are_stripped(self):
        matcher = compile_origin_pattern(r"^https://login\.microsoftonline\.com$")
        assert matcher.fullmatch("https://login.microsoftonline.com")
        assert not matcher.fullmatch("https://login.microsoftonline.com.attacker.io")


class TestAllowlistEntries:
    def test_blank_and_comment_entries_skipped(self):
        assert compile_allowlist_entry("") is None
        assert compile_allowlist_entry("   ") is None
        assert compile_allowlist_entry("# training sites") is None

    def test_scheme_wildcard_matches_full_url(self):
        entry = compile_allowlist_entry("https://training.partner.com/*")
        assert not entry.host_only
        assert entry.matches("https://training.partner.com/sim?x=1", "training.partner.com")
        assert not entry.matches("https://training.partner.com.evil.net/", "training.partner.com.evil.net")
        assert not entry.matches("http://training.partner.com/sim", "training.partner.com")

    def test_host_wildcard_matches_hostname_only(self):
        entry = compile_allowlist_entry("*.contoso.com")
        assert entry.host_only
        assert entry.matches("https://sso.contoso.com/login", "sso.contoso.com")
        assert not entry.matches("https://contoso.com.phish.net/", "contoso.com.phish.net")

    def test_regex_entry_searches_url(self):
        entry = compile_allowlist_entry(r"^https://[a-z]+\.corp\.example/")
        assert entry.matches("https://intranet.corp.example/home", "intranet.corp.example")

    def test_broken_regex_entry_ignored(self):
        assert compile_allowlist_entry("([unclosed") is None
