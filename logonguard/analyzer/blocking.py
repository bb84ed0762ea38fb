"""Blocking rule implementations.

Each blocking rule stands on its own: if it triggers, the page is blocked
regardless of the cumulative trust score.
"""

from __future__ import annotations

import logging

from ..rules.schema import BlockingRule, BlockingRuleType
from ..utils.domains import url_origin
from .context import BlockingEvaluator, BlockingResult, ScanContext

logger = logging.getLogger(__name__)


class FormActionValidationRule:
    """Credential form posting somewhere it should not."""

    name = "form_action_validation"

    def apply(self, rule: BlockingRule, context: ScanContext) -> BlockingResult:
        condition = rule.condition
        must_not_contain = str(condition.get("action_must_not_contain") or "").lower()
        needs_password = bool(condition.get("has_password_field", False))

        for form, action_url in zip(context.snapshot.form_actions, context.form_action_urls):
            if needs_password and not form.has_password:
                continue
            if must_not_contain:
                if must_not_contain in action_url.lower():
                    continue
                reason = f"form posts to {action_url} (expected {must_not_contain})"
            else:
                if context.store.is_trusted_origin(url_origin(action_url)):
                    continue
                reason = f"form posts to untrusted origin {url_origin(action_url) or action_url}"
            return BlockingResult(rule.id, triggered=True, reason=reason, metadata={"action": action_url})

        return BlockingResult(rule.id)


class ResourceValidationRule:
    """Resource that must come from a specific origin is served from elsewhere."""

    name = "resource_validation"

    def apply(self, rule: BlockingRule, context: ScanContext) -> BlockingResult:
        pattern = str(rule.condition.get("resource_pattern") or "").lower()
        required = str(rule.condition.get("required_origin") or "")
        required_origin = url_origin(required) or required.rstrip("/").lower()

        for resource in context.resources:
            if pattern not in resource.lower():
                continue
            if url_origin(resource) == required_origin:
                continue
            return BlockingResult(
                rule.id,
                triggered=True,
                reason=f"{pattern} loaded from {url_origin(resource) or resource}, expected {required_origin}",
                metadata={"resource": resource},
            )
        return BlockingResult(rule.id)


class IndicatorThresholdRule:
    """Enough independent indicators matched on one page."""

    name = "indicator_threshold"

    def apply(self, rule: BlockingRule, context: ScanContext) -> BlockingResult:
        min_matches = int(rule.condition.get("min_matches", 0))
        categories = rule.condition.get("categories") or ()
        if isinstance(categories, str):
            categories = (categories,)
        wanted = {str(c).lower() for c in categories}

        matched = [i for i in context.matched if not wanted or i.category.lower() in wanted]
        if len(matched) >= min_matches:
            return BlockingResult(
                rule.id,
                triggered=True,
                reason=f"{len(matched)} indicators matched (threshold {min_matches})",
                metadata={"indicators": [i.id for i in matched]},
            )
        return BlockingResult(rule.id)


EVALUATORS: dict[BlockingRuleType, BlockingEvaluator] = {
    BlockingRuleType.FORM_ACTION_VALIDATION: FormActionValidationRule(),
    BlockingRuleType.RESOURCE_VALIDATION: ResourceValidationRule(),
    BlockingRuleType.INDICATOR_THRESHOLD: IndicatorThresholdRule(),
}


def evaluate_blocking_rules(context: ScanContext) -> list[BlockingResult]:
    """Return the blocking rules that triggered, in rule order."""
    triggered = []
    for rule in context.store.blocking_rules:
        result = EVALUATORS[rule.type].apply(rule, context)
        if result.triggered:
            logger.debug("Blocking rule %s triggered: %s", rule.id, result.reason)
            triggered.append(result)
    return triggered
