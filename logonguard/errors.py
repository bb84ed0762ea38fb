"""Error taxonomy for LogonGuard."""

from __future__ import annotations


class LogonGuardError(Exception):
    """Base class for LogonGuard errors."""


class RuleFetchError(LogonGuardError):
    """Rule or feed download failed (network, timeout, non-2xx, bad JSON)."""

    def __init__(self, url: str, message: str, status_code: int | None = None):
        self.url = url
        self.status_code = status_code
        super().__init__(f"{url}: {message}")


class RuleValidationError(LogonGuardError):
    """Rule payload does not have the required structure."""


class RuleCompileError(LogonGuardError):
    """A single rule pattern could not be compiled; only that rule is dropped."""

    def __init__(self, rule_id: str, message: str):
        self.rule_id = rule_id
        super().__init__(f"rule {rule_id}: {message}")


class AnalysisError(LogonGuardError):
    """Page URL or snapshot is malformed and cannot be scored."""


class EventDeliveryError(LogonGuardError):
    """Outbound event could not be delivered."""


class ConfigImportError(LogonGuardError):
    """Imported configuration document has the wrong shape."""
