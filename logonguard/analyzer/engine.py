"""Verdict engine: scores a page against one rules generation.

Pipeline (short-circuiting):

1. exclusion / allowlist -> not-evaluated, nothing else is scanned
2. trusted login origin  -> trusted (or trusted-extra), score 100
3. login-page shape      -> not-evaluated below the element weight floor
4. indicators            -> severity points accumulate into a threat total
5. blocking rules / block-action indicators -> phishing-blocked
6. trust score = 100 - threat, compared against the rule thresholds
"""

from __future__ import annotations

import dataclasses
import logging
import re
import time
from functools import lru_cache
from typing import Any, Callable, Mapping, Optional, Union
from urllib.parse import urlparse

from ..config import DEFAULT_CONFIG, EffectiveConfig, merge_layers
from ..constants import MAX_TRUST_SCORE, MAX_URL_SCAN_CHARS, MIN_TRUST_SCORE, IndicatorAction
from ..errors import AnalysisError, RuleCompileError
from ..rules.lifecycle import RulesGeneration
from ..rules.patterns import AllowlistPattern, compile_allowlist_entry, compile_origin_pattern
from ..rules.rogue_apps import RogueAppsManager
from ..rules.schema import Indicator, RuleStore, Surface
from ..utils.domains import canonicalize_domain, query_param, redirect_hostname, url_origin
from .blocking import evaluate_blocking_rules
from .context import ScanContext, build_scan_context
from .metrics import DetectionMetrics, metrics as default_metrics
from .models import Decision, PageSnapshot, RogueAppSignal, Verdict, VerdictAction

logger = logging.getLogger(__name__)

_OAUTH_PATH = re.compile(r"/(?:oauth2/(?:v2\.0/)?authorize|authorize|adminconsent|consent)\b", re.I)


@lru_cache(maxsize=32)
def compile_allowlist(entries: tuple[str, ...]) -> tuple[AllowlistPattern, ...]:
    compiled = (compile_allowlist_entry(e) for e in entries)
    return tuple(p for p in compiled if p is not None)


@lru_cache(maxsize=32)
def compile_extra_origins(entries: tuple[str, ...]) -> tuple[re.Pattern, ...]:
    patterns = []
    for entry in entries:
        try:
            patterns.append(compile_origin_pattern(entry))
        except RuleCompileError as exc:
            logger.warning("Ignoring extra trusted origin %r: %s", entry, exc)
    return tuple(patterns)


def has_oauth_context(url: str) -> bool:
    """client_id plus an authorize/consent path or redirect_uri/response_type parameter."""
    if not query_param(url, "client_id"):
        return False
    path = urlparse(url).path or ""
    if _OAUTH_PATH.search(path):
        return True
    return bool(query_param(url, "redirect_uri") or query_param(url, "response_type"))


def decide_action(decision: Decision, config: EffectiveConfig, rogue: Optional[RogueAppSignal]) -> VerdictAction:
    if decision is Decision.PHISHING_BLOCKED:
        return VerdictAction.BLOCK if config.enable_page_blocking else VerdictAction.WARN
    if decision in (Decision.SUSPICIOUS, Decision.MS_LOGIN_UNKNOWN):
        action = VerdictAction.WARN
    elif decision in (Decision.TRUSTED, Decision.TRUSTED_EXTRA) and config.enable_valid_page_badge:
        action = VerdictAction.BADGE
    else:
        action = VerdictAction.NONE
    if rogue is not None:
        if rogue.action == "block" and config.enable_page_blocking:
            return VerdictAction.BLOCK
        return VerdictAction.WARN
    return action


SnapshotInput = Union[PageSnapshot, Mapping[str, Any]]


class VerdictEngine:
    """
    Stateless scorer. Every call borrows one RulesGeneration and one
    EffectiveConfig and never looks at the providers again mid-analysis.
    """

    def __init__(
        self,
        rules_provider: Callable[[], RulesGeneration],
        config_provider: Optional[Callable[[], EffectiveConfig]] = None,
        rogue_apps: Optional[RogueAppsManager] = None,
        metrics: Optional[DetectionMetrics] = None,
    ):
        self.rules_provider = rules_provider
        self.config_provider = config_provider or (lambda: merge_layers(DEFAULT_CONFIG))
        self.rogue_apps = rogue_apps
        self.metrics = metrics or default_metrics

    # -- public API ----------------------------------------------------------

    def analyze_url(
        self,
        url: str,
        rules: Optional[RulesGeneration] = None,
        config: Optional[EffectiveConfig] = None,
    ) -> Verdict:
        """URL-only verdict: exclusions, trusted origins and URL indicators."""
        generation = rules or self.rules_provider()
        config = config or self.config_provider()
        return self._run(lambda: PageSnapshot(url=url), generation, config, url_only=True)

    def analyze_snapshot(
        self,
        snapshot: SnapshotInput,
        rules: Optional[RulesGeneration] = None,
        config: Optional[EffectiveConfig] = None,
    ) -> Verdict:
        """Full verdict for a page snapshot (object or inspector payload)."""
        generation = rules or self.rules_provider()
        config = config or self.config_provider()

        def build() -> PageSnapshot:
            if isinstance(snapshot, PageSnapshot):
                return snapshot
            return PageSnapshot.from_dict(snapshot)

        return self._run(build, generation, config, url_only=False)

    # -- pipeline ------------------------------------------------------------

    def _run(
        self,
        build: Callable[[], PageSnapshot],
        generation: RulesGeneration,
        config: EffectiveConfig,
        url_only: bool,
    ) -> Verdict:
        started = time.perf_counter()
        try:
            verdict = self._evaluate(build(), generation, config, url_only)
        except AnalysisError as exc:
            logger.warning("Analysis unavailable: %s", exc)
            verdict = self._unavailable(generation, str(exc))
        except (TypeError, ValueError) as exc:
            # Malformed snapshot fields built by callers, e.g. dom_excerpt=None.
            logger.warning("Analysis failed on malformed snapshot: %s", exc, exc_info=True)
            verdict = self._unavailable(generation, f"malformed snapshot: {exc}")
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.metrics.record_verdict(verdict.decision.value, elapsed_ms)
        return verdict

    def _unavailable(self, generation: RulesGeneration, message: str) -> Verdict:
        self.metrics.record_error()
        return Verdict(
            decision=Decision.SUSPICIOUS,
            score=None,
            reason=f"analysis unavailable: {message}",
            action=VerdictAction.WARN,
            rules_generation=generation.generation,
            rules_version=generation.version,
        )

    def _evaluate(
        self,
        snapshot: PageSnapshot,
        generation: RulesGeneration,
        config: EffectiveConfig,
        url_only: bool,
    ) -> Verdict:
        store = generation.store
        url = snapshot.url
        referrer = self._referrer(snapshot)
        referrer_trusted = store.is_trusted_referrer(referrer) if referrer else None

        def verdict(decision: Decision, score: Optional[int], reason: str, **kwargs) -> Verdict:
            rogue = kwargs.pop("rogue_app", None)
            return Verdict(
                decision=decision,
                score=score,
                reason=reason,
                action=decide_action(decision, config, rogue),
                rules_generation=generation.generation,
                rules_version=generation.version,
                rogue_app=rogue,
                referrer_trusted=referrer_trusted,
                **kwargs,
            )

        origin = self._checked_origin(url)
        if origin is None:
            return verdict(Decision.NOT_EVALUATED, None, "unsupported URL scheme")

        # 1. Exclusions: stop before any page content is looked at.
        excluded = self._exclusion_reason(url, store, config)
        if excluded:
            logger.debug("Not evaluating %s: %s", url, excluded)
            return verdict(Decision.NOT_EVALUATED, None, excluded)

        rogue = self._rogue_signal(url, generation)

        # 2. Trusted origins.
        if store.is_trusted_origin(origin):
            return verdict(Decision.TRUSTED, MAX_TRUST_SCORE, "trusted login origin", rogue_app=rogue)
        if any(p.fullmatch(origin) for p in compile_extra_origins(config.extra_trusted_origins)):
            return verdict(
                Decision.TRUSTED_EXTRA, MAX_TRUST_SCORE, "organization-trusted origin", rogue_app=rogue
            )

        context = build_scan_context(snapshot, store, url_only=url_only)

        # 3. Login-page shape.
        if not url_only:
            weight = self._element_weight(context)
            minimum = store.requirements.minimum_weight
            if weight < minimum:
                return verdict(
                    Decision.NOT_EVALUATED,
                    None,
                    f"not a login page (element weight {weight} < {minimum})",
                    rogue_app=rogue,
                )

        # 4. Indicators.
        matched = self._match_indicators(context, url_only)
        context = dataclasses.replace(context, matched=tuple(matched))
        if url_only and not matched:
            return verdict(Decision.NOT_EVALUATED, None, "no URL indicators matched", rogue_app=rogue)

        domain = canonicalize_domain(url)
        for indicator in matched:
            self.metrics.record_indicator_hit(indicator.category, indicator.id, domain)

        threat = sum(i.points for i in matched)
        score = max(MIN_TRUST_SCORE, MAX_TRUST_SCORE - threat)
        details = dict(
            matched_indicator_ids=tuple(i.id for i in matched),
            confidence=max((i.confidence for i in matched), default=0.0),
            categories=tuple(sorted({i.category for i in matched})),
            rogue_app=rogue,
        )

        # 5. One smoking gun blocks.
        blocking = evaluate_blocking_rules(context)
        for result in blocking:
            self.metrics.record_blocking_rule(result.rule_id)
        block_indicators = [i for i in matched if i.action is IndicatorAction.BLOCK]
        if blocking or block_indicators:
            if blocking:
                reason = f"blocking rule {blocking[0].rule_id}: {blocking[0].reason}"
            else:
                first = block_indicators[0]
                reason = f"indicator {first.id}: {first.description or first.category}"
            return verdict(
                Decision.PHISHING_BLOCKED,
                score,
                reason,
                blocking_rule_ids=tuple(r.rule_id for r in blocking),
                **details,
            )

        # 6. Thresholds (descending trust).
        thresholds = store.thresholds
        if score <= thresholds.phishing:
            return verdict(
                Decision.PHISHING_BLOCKED,
                score,
                f"trust score {score} at or below phishing threshold {thresholds.phishing}",
                **details,
            )
        if score <= thresholds.suspicious:
            return verdict(
                Decision.SUSPICIOUS,
                score,
                f"trust score {score} at or below suspicious threshold {thresholds.suspicious}",
                **details,
            )
        return verdict(
            Decision.MS_LOGIN_UNKNOWN,
            score,
            f"login page on untrusted origin (trust score {score})",
            **details,
        )

    # -- steps ---------------------------------------------------------------

    @staticmethod
    def _referrer(snapshot: PageSnapshot) -> str:
        referrer = snapshot.referrer or snapshot.headers.get("referer", "")
        return referrer.strip() if isinstance(referrer, str) else ""

    @staticmethod
    def _checked_origin(url: str) -> Optional[str]:
        """Origin of an http(s) URL; None for other schemes; AnalysisError if malformed."""
        if not isinstance(url, str) or not url.strip():
            raise AnalysisError("empty URL")
        try:
            scheme = urlparse(url).scheme.lower()
        except ValueError as exc:
            raise AnalysisError(f"unparseable URL: {exc}") from exc
        if scheme in ("http", "https"):
            origin = url_origin(url)
            if not origin:
                raise AnalysisError(f"malformed URL: {url[:200]}")
            return origin
        if scheme:
            return None
        raise AnalysisError(f"relative or malformed URL: {url[:200]}")

    @staticmethod
    def _exclusion_reason(url: str, store: RuleStore, config: EffectiveConfig) -> str:
        context_url = url[:MAX_URL_SCAN_CHARS]
        for pattern in store.exclusion_patterns:
            if pattern.search(context_url):
                return "excluded by rule set"
        host = canonicalize_domain(url)
        raw_host = (urlparse(url).hostname or "").lower()
        for entry in compile_allowlist(config.url_allowlist):
            if entry.matches(context_url, raw_host) or (host != raw_host and entry.matches(context_url, host)):
                return f"allowlisted ({entry.source})"
        return ""

    @staticmethod
    def _element_weight(context: ScanContext) -> int:
        weight = 0
        for element in context.store.requirements.elements:
            text = context.element_text(element)
            if text and any(p.search(text) for p in element.patterns):
                weight += element.weight
        return weight

    @staticmethod
    def _match_indicators(context: ScanContext, url_only: bool) -> list[Indicator]:
        matched = []
        page_text = context.page_text
        for indicator in context.store.indicators:
            if url_only and indicator.surface not in (Surface.URL, Surface.PAGE):
                continue
            text = context.surface_text(indicator.surface)
            if not text or not indicator.regex.search(text):
                continue
            if not all(p.search(page_text) for p in indicator.context_required):
                logger.debug("Indicator %s matched without required context", indicator.id)
                continue
            logger.debug("Indicator %s matched (%s)", indicator.id, indicator.severity)
            matched.append(indicator)
        return matched

    def _rogue_signal(self, url: str, generation: RulesGeneration) -> Optional[RogueAppSignal]:
        if self.rogue_apps is None or not has_oauth_context(url):
            return None
        client_id = query_param(url, "client_id")
        app = self.rogue_apps.check(client_id)
        if app is None:
            return None
        settings = generation.store.rogue_apps
        logger.warning("Rogue OAuth application %s (%s) in consent flow", app.name or app.app_id, client_id)
        return RogueAppSignal(
            client_id=client_id,
            app_name=app.name,
            risk=app.risk,
            description=app.description,
            tags=app.tags,
            references=app.references,
            redirect_host=redirect_hostname(url),
            action=settings.detection_action,
            severity=settings.severity,
        )
