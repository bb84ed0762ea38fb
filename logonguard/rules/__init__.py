"""Rule store model, loading and lifecycle."""

from .lifecycle import RulesGeneration, RulesManager, RulesState, load_bundled_rules
from .rogue_apps import RogueApp, RogueAppsManager
from .schema import (
    BlockingRule,
    BlockingRuleType,
    Element,
    ElementType,
    Indicator,
    RuleStore,
    Surface,
    Thresholds,
    parse_rule_store,
)

__all__ = [
    "BlockingRule",
    "BlockingRuleType",
    "Element",
    "ElementType",
    "Indicator",
    "RogueApp",
    "RogueAppsManager",
    "RuleStore",
    "RulesGeneration",
    "RulesManager",
    "RulesState",
    "Surface",
    "Thresholds",
    "load_bundled_rules",
    "parse_rule_store",
]
