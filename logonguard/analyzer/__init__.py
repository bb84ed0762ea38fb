"""Analyzer modules for LogonGuard."""

from .engine import VerdictEngine
from .models import Decision, FormAction, PageSnapshot, RogueAppSignal, Verdict, VerdictAction
from .tabs import TabAnalysisCoordinator

__all__ = [
    "Decision",
    "FormAction",
    "PageSnapshot",
    "RogueAppSignal",
    "TabAnalysisCoordinator",
    "Verdict",
    "VerdictAction",
    "VerdictEngine",
]
