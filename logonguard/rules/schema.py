"""Rule store data model and load-time validation.

A rule file is parsed exactly once into immutable objects. Structural
problems (missing indicator list, bad thresholds, no trusted origins)
reject the whole payload with RuleValidationError; a bad individual rule
is dropped and recorded in the store diagnostics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping

from ..constants import (
    DEFAULT_MINIMUM_ELEMENT_WEIGHT,
    MAX_TRUST_SCORE,
    MIN_TRUST_SCORE,
    IndicatorAction,
    Severity,
)
from ..errors import RuleCompileError, RuleValidationError
from ..utils.domains import url_origin
from .patterns import compile_origin_pattern, compile_rule_pattern, parse_flags

logger = logging.getLogger(__name__)


class Surface(str, Enum):
    """Page surface an indicator is matched against."""

    URL = "url"
    DOM = "dom"
    CONTENT = "content"
    HEADER = "header"
    FORM_ACTION = "form_action"
    PAGE = "page"


class ElementType(str, Enum):
    SOURCE_CONTENT = "source_content"
    CSS_PATTERN = "css_pattern"
    URL_PATTERN = "url_pattern"
    TEXT_CONTENT = "text_content"


class BlockingRuleType(str, Enum):
    FORM_ACTION_VALIDATION = "form_action_validation"
    RESOURCE_VALIDATION = "resource_validation"
    INDICATOR_THRESHOLD = "indicator_threshold"


@dataclass(frozen=True)
class Indicator:
    """A single weighted, pattern-based phishing indicator."""

    id: str
    pattern: str
    regex: Any = field(repr=False, compare=False)
    severity: Severity
    action: IndicatorAction
    surface: Surface = Surface.PAGE
    category: str = "general"
    confidence: float = 0.5
    description: str = ""
    context_required: tuple[Any, ...] = field(default=(), repr=False, compare=False)

    @property
    def points(self) -> int:
        return self.severity.points


@dataclass(frozen=True)
class Element:
    """A login-page detection requirement."""

    id: str
    type: ElementType
    patterns: tuple[Any, ...] = field(repr=False, compare=False)
    weight: int
    category: str
    description: str = ""


@dataclass(frozen=True)
class DetectionRequirements:
    primary_elements: tuple[Element, ...] = ()
    secondary_elements: tuple[Element, ...] = ()
    minimum_weight: int = DEFAULT_MINIMUM_ELEMENT_WEIGHT

    @property
    def elements(self) -> tuple[Element, ...]:
        return self.primary_elements + self.secondary_elements


@dataclass(frozen=True)
class BlockingRule:
    """A rule that blocks on its own, independent of the cumulative score."""

    id: str
    type: BlockingRuleType
    condition: Mapping[str, Any]
    severity: str = "critical"
    description: str = ""


@dataclass(frozen=True)
class RogueAppsSettings:
    """Rogue OAuth application feed descriptor (durations in milliseconds)."""

    enabled: bool = False
    source_url: str = ""
    cache_duration: int = 12 * 3600 * 1000
    update_interval: int = 12 * 3600 * 1000
    detection_action: str = "warn"
    severity: str = "critical"
    auto_update: bool = True


@dataclass(frozen=True)
class Thresholds:
    """Trust thresholds; strictly descending (legitimate > suspicious > phishing)."""

    legitimate: int
    suspicious: int
    phishing: int


@dataclass(frozen=True)
class LoadDiagnostics:
    dropped: tuple[tuple[str, str], ...] = ()

    @property
    def dropped_count(self) -> int:
        return len(self.dropped)


@dataclass(frozen=True)
class RuleStore:
    """The full, validated, immutable rule set."""

    version: str
    trusted_login_patterns: tuple[str, ...]
    trusted_matchers: tuple[Any, ...] = field(repr=False, compare=False)
    exclusion_patterns: tuple[Any, ...] = field(repr=False, compare=False)
    indicators: tuple[Indicator, ...]
    requirements: DetectionRequirements
    blocking_rules: tuple[BlockingRule, ...]
    rogue_apps: RogueAppsSettings
    thresholds: Thresholds
    indicators_by_id: Mapping[str, Indicator] = field(repr=False, compare=False)
    raw: Mapping[str, Any] = field(repr=False, compare=False)
    diagnostics: LoadDiagnostics = field(default_factory=LoadDiagnostics, compare=False)
    valid_referrers: tuple[str, ...] = ()

    def is_trusted_origin(self, origin: str) -> bool:
        if not origin:
            return False
        return any(m.fullmatch(origin) for m in self.trusted_matchers)

    def is_trusted_referrer(self, referrer: str) -> bool:
        """Trusted login origin, or under one of the valid referrer prefixes."""
        referrer = (referrer or "").strip()
        if not referrer:
            return False
        if self.is_trusted_origin(url_origin(referrer)):
            return True
        return any(_under_prefix(referrer, prefix) for prefix in self.valid_referrers)

    def summary(self) -> dict:
        return {
            "version": self.version,
            "trusted_origins": len(self.trusted_matchers),
            "exclusions": len(self.exclusion_patterns),
            "indicators": len(self.indicators),
            "elements": len(self.requirements.elements),
            "blocking_rules": len(self.blocking_rules),
            "dropped_rules": self.diagnostics.dropped_count,
        }


def _under_prefix(value: str, prefix: str) -> bool:
    if value == prefix:
        return True
    # "https://portal.office.com" must not cover "https://portal.office.com.evil.net".
    return value.startswith(prefix) and (prefix.endswith("/") or value[len(prefix)] in "/?#")


def _parse_valid_referrers(raw: Any) -> tuple[str, ...]:
    if isinstance(raw, dict):
        raw = raw.get("referrers")
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise RuleValidationError("'valid_referrers' must be a list of URL prefixes")
    return tuple(str(r).strip() for r in raw if isinstance(r, str) and r.strip())


def _require_list(data: dict, key: str, *, required: bool = False) -> list:
    value = data.get(key)
    if value is None:
        if required:
            raise RuleValidationError(f"missing '{key}'")
        return []
    if not isinstance(value, list):
        raise RuleValidationError(f"'{key}' must be a list")
    return value


def _parse_thresholds(raw: Any) -> Thresholds:
    if not isinstance(raw, dict):
        raise RuleValidationError("missing 'thresholds' object")
    values = {}
    for key in ("legitimate", "suspicious", "phishing"):
        value = raw.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise RuleValidationError(f"thresholds.{key} must be a number")
        try:
            values[key] = int(value)
        except (OverflowError, ValueError):
            raise RuleValidationError(f"thresholds.{key} must be finite") from None
    thresholds = Thresholds(**values)
    if not (
        MAX_TRUST_SCORE >= thresholds.legitimate
        > thresholds.suspicious
        > thresholds.phishing
        >= MIN_TRUST_SCORE
    ):
        raise RuleValidationError(
            "thresholds must satisfy 100 >= legitimate > suspicious > phishing >= 0, got "
            f"{values}"
        )
    return thresholds


def _pattern_list(rule_id: str, raw: Any, field_name: str) -> list:
    if raw is None:
        return []
    if isinstance(raw, str):
        return [raw]
    if not isinstance(raw, list):
        raise RuleCompileError(rule_id, f"'{field_name}' must be a string or a list")
    for entry in raw:
        if not isinstance(entry, str):
            raise RuleCompileError(rule_id, f"'{field_name}' entries must be strings")
    return raw


def _parse_indicator(item: Any, index: int) -> Indicator:
    if not isinstance(item, dict):
        raise RuleCompileError(f"#{index}", "indicator is not an object")
    rule_id = str(item.get("id") or "").strip()
    if not rule_id:
        raise RuleCompileError(f"#{index}", "indicator has no id")

    try:
        flags = parse_flags(item.get("flags"))
        severity = Severity.from_string(item.get("severity"))
        action = IndicatorAction(str(item.get("action") or "warn").lower())
        surface = Surface(str(item.get("type") or "page").lower())
        confidence = float(item.get("confidence", 0.5))
    except (TypeError, ValueError) as exc:
        raise RuleCompileError(rule_id, str(exc)) from exc
    if not 0.0 <= confidence <= 1.0:
        raise RuleCompileError(rule_id, f"confidence {confidence} outside [0, 1]")

    regex = compile_rule_pattern(rule_id, item.get("pattern"), flags)

    context_raw = _pattern_list(rule_id, item.get("context_required"), "context_required")
    context = tuple(
        compile_rule_pattern(f"{rule_id}.context", p, flags) for p in context_raw
    )

    return Indicator(
        id=rule_id,
        pattern=item["pattern"],
        regex=regex,
        severity=severity,
        action=action,
        surface=surface,
        category=str(item.get("category") or "general"),
        confidence=confidence,
        description=str(item.get("description") or ""),
        context_required=context,
    )


def _parse_element(item: Any, default_category: str, index: int) -> Element:
    if not isinstance(item, dict):
        raise RuleCompileError(f"{default_category}#{index}", "element is not an object")
    element_id = str(item.get("id") or f"{default_category}#{index}")
    try:
        element_type = ElementType(str(item.get("type") or "source_content"))
        weight = int(item.get("weight", 1))
    except (TypeError, ValueError) as exc:
        raise RuleCompileError(element_id, str(exc)) from exc

    raw_patterns = item.get("patterns")
    if raw_patterns is None:
        raw_patterns = item.get("pattern")
    raw_patterns = _pattern_list(element_id, raw_patterns, "patterns")
    if not raw_patterns:
        raise RuleCompileError(element_id, "element has no pattern")
    patterns = tuple(compile_rule_pattern(element_id, p) for p in raw_patterns)
    return Element(
        id=element_id,
        type=element_type,
        patterns=patterns,
        weight=weight,
        category=str(item.get("category") or default_category),
        description=str(item.get("description") or ""),
    )


def _parse_blocking_rule(item: Any, index: int) -> BlockingRule:
    if not isinstance(item, dict):
        raise RuleCompileError(f"blocking#{index}", "blocking rule is not an object")
    rule_id = str(item.get("id") or f"blocking#{index}")
    try:
        rule_type = BlockingRuleType(str(item.get("type") or ""))
    except ValueError:
        raise RuleCompileError(rule_id, f"unknown blocking rule type {item.get('type')!r}") from None
    condition = item.get("condition") or {}
    if not isinstance(condition, dict):
        raise RuleCompileError(rule_id, "condition must be an object")
    if rule_type is BlockingRuleType.RESOURCE_VALIDATION and not (
        condition.get("resource_pattern") and condition.get("required_origin")
    ):
        raise RuleCompileError(rule_id, "resource_validation needs resource_pattern and required_origin")
    if rule_type is BlockingRuleType.INDICATOR_THRESHOLD:
        try:
            if int(condition.get("min_matches", 0)) < 1:
                raise ValueError
        except (TypeError, ValueError):
            raise RuleCompileError(rule_id, "indicator_threshold needs min_matches >= 1") from None
    return BlockingRule(
        id=rule_id,
        type=rule_type,
        condition=MappingProxyType(dict(condition)),
        severity=str(item.get("severity") or "critical"),
        description=str(item.get("description") or ""),
    )


def _parse_rogue_apps(raw: Any) -> RogueAppsSettings:
    if not isinstance(raw, dict):
        return RogueAppsSettings()
    defaults = RogueAppsSettings()
    try:
        return RogueAppsSettings(
            enabled=bool(raw.get("enabled", False)),
            source_url=str(raw.get("source_url") or ""),
            cache_duration=int(raw.get("cache_duration", defaults.cache_duration)),
            update_interval=int(raw.get("update_interval", defaults.update_interval)),
            detection_action=str(raw.get("detection_action") or defaults.detection_action),
            severity=str(raw.get("severity") or defaults.severity),
            auto_update=bool(raw.get("auto_update", True)),
        )
    except (TypeError, ValueError) as exc:
        logger.warning("Ignoring malformed rogue_apps_detection block: %s", exc)
        return defaults


def validate_rule_payload(data: Any) -> None:
    """Structural check only; raises RuleValidationError."""
    if not isinstance(data, dict):
        raise RuleValidationError("rule payload must be a JSON object")
    _require_list(data, "phishing_indicators", required=True)
    _parse_thresholds(data.get("thresholds"))
    trusted = data.get("trusted_login_patterns", data.get("trusted_origins"))
    if not isinstance(trusted, list) or not trusted:
        raise RuleValidationError("missing 'trusted_login_patterns'")


def parse_rule_store(data: Any) -> RuleStore:
    """Validate and compile a rule payload into a RuleStore."""
    validate_rule_payload(data)
    dropped: list[tuple[str, str]] = []

    def drop(exc: RuleCompileError) -> None:
        dropped.append((exc.rule_id, str(exc)))
        logger.warning("Dropping rule: %s", exc)

    trusted_raw = data.get("trusted_login_patterns", data.get("trusted_origins")) or []
    trusted_patterns: list[str] = []
    trusted_matchers: list[Any] = []
    for entry in trusted_raw:
        try:
            trusted_matchers.append(compile_origin_pattern(str(entry)))
            trusted_patterns.append(str(entry))
        except RuleCompileError as exc:
            drop(exc)
    if not trusted_matchers:
        raise RuleValidationError("no usable trusted_login_patterns")

    exclusions: list[Any] = []
    exclusion_block = data.get("exclusion_system") or {}
    if not isinstance(exclusion_block, dict):
        raise RuleValidationError("'exclusion_system' must be an object")
    for index, entry in enumerate(_require_list(exclusion_block, "domain_patterns")):
        try:
            exclusions.append(compile_rule_pattern(f"exclusion#{index}", str(entry)))
        except RuleCompileError as exc:
            drop(exc)

    indicators: list[Indicator] = []
    by_id: dict[str, Indicator] = {}
    for index, item in enumerate(_require_list(data, "phishing_indicators", required=True)):
        try:
            indicator = _parse_indicator(item, index)
        except RuleCompileError as exc:
            drop(exc)
            continue
        if indicator.id in by_id:
            drop(RuleCompileError(indicator.id, "duplicate indicator id"))
            continue
        by_id[indicator.id] = indicator
        indicators.append(indicator)

    req_block = data.get("m365_detection_requirements") or {}
    if not isinstance(req_block, dict):
        raise RuleValidationError("'m365_detection_requirements' must be an object")
    elements: dict[str, list[Element]] = {"primary": [], "secondary": []}
    sources = (
        ("primary", _require_list(req_block, "primary_elements")),
        # Older rule files list a single flat required_elements array.
        ("primary", _require_list(req_block, "required_elements")),
        ("secondary", _require_list(req_block, "secondary_elements")),
    )
    for category, items in sources:
        for index, item in enumerate(items):
            try:
                elements[category].append(_parse_element(item, category, index))
            except RuleCompileError as exc:
                drop(exc)
    try:
        minimum_weight = int(
            req_block.get("minimum_weight", req_block.get("minimum_score", DEFAULT_MINIMUM_ELEMENT_WEIGHT))
        )
    except (TypeError, ValueError):
        raise RuleValidationError("m365_detection_requirements.minimum_weight must be an integer") from None

    blocking: list[BlockingRule] = []
    for index, item in enumerate(_require_list(data, "blocking_rules")):
        try:
            blocking.append(_parse_blocking_rule(item, index))
        except RuleCompileError as exc:
            drop(exc)

    store = RuleStore(
        version=str(data.get("version") or "unknown"),
        trusted_login_patterns=tuple(trusted_patterns),
        trusted_matchers=tuple(trusted_matchers),
        exclusion_patterns=tuple(exclusions),
        indicators=tuple(indicators),
        requirements=DetectionRequirements(
            primary_elements=tuple(elements["primary"]),
            secondary_elements=tuple(elements["secondary"]),
            minimum_weight=minimum_weight,
        ),
        blocking_rules=tuple(blocking),
        rogue_apps=_parse_rogue_apps(data.get("rogue_apps_detection")),
        thresholds=_parse_thresholds(data.get("thresholds")),
        indicators_by_id=MappingProxyType(by_id),
        raw=MappingProxyType(dict(data)),
        diagnostics=LoadDiagnostics(tuple(dropped)),
        valid_referrers=_parse_valid_referrers(data.get("valid_referrers")),
    )
    if dropped:
        logger.warning(
            "Rule store v%s loaded with %d dropped rule(s)", store.version, len(dropped)
        )
    return store
