"""Data models for page analysis."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional

from ..errors import AnalysisError


class Decision(str, Enum):
    """Categorical verdict for a page."""

    TRUSTED = "trusted"
    TRUSTED_EXTRA = "trusted-extra"
    MS_LOGIN_UNKNOWN = "ms-login-unknown"
    NOT_EVALUATED = "not-evaluated"
    SUSPICIOUS = "suspicious"
    PHISHING_BLOCKED = "phishing-blocked"


class VerdictAction(str, Enum):
    """What the page layer should do with a verdict."""

    BLOCK = "block"
    WARN = "warn"
    BADGE = "badge"
    NONE = "none"


@dataclass(frozen=True)
class FormAction:
    action: str
    method: str = "get"
    has_password: bool = False


@dataclass(frozen=True)
class PageSnapshot:
    """Transient page observation produced by the page inspector. Never persisted."""

    url: str
    referrer: str = ""
    dom_excerpt: str = ""
    form_actions: tuple[FormAction, ...] = ()
    headers: Mapping[str, str] = field(default_factory=dict)
    title: str = ""
    resources: tuple[str, ...] = ()
    text: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PageSnapshot":
        """
        Build a snapshot from an inspector payload.

        Accepts camelCase keys (domExcerpt, formActions) as sent by page
        scripts. Raises AnalysisError for payloads that cannot be a page.
        """
        if not isinstance(data, Mapping):
            raise AnalysisError("snapshot must be an object")
        url = data.get("url")
        if not isinstance(url, str) or not url.strip():
            raise AnalysisError("snapshot has no url")

        forms = []
        for item in _list_field(data, "form_actions", "formActions"):
            if isinstance(item, str):
                forms.append(FormAction(action=item))
            elif isinstance(item, Mapping):
                forms.append(
                    FormAction(
                        action=str(item.get("action") or ""),
                        method=str(item.get("method") or "get").lower(),
                        has_password=bool(item.get("has_password", item.get("hasPassword", False))),
                    )
                )
            else:
                raise AnalysisError(f"bad form action entry: {item!r}")

        headers = data.get("headers") or {}
        if not isinstance(headers, Mapping):
            raise AnalysisError("headers must be an object")

        return cls(
            url=url.strip(),
            referrer=str(data.get("referrer") or ""),
            dom_excerpt=str(data.get("dom_excerpt", data.get("domExcerpt")) or ""),
            form_actions=tuple(forms),
            headers=normalize_headers(headers),
            title=str(data.get("title") or ""),
            resources=tuple(str(r) for r in _list_field(data, "resources")),
            text=str(data.get("text") or ""),
        )


def _list_field(data: Mapping[str, Any], key: str, alias: str | None = None) -> list:
    value = data.get(key)
    if value is None and alias is not None:
        value = data.get(alias)
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        raise AnalysisError(f"{key} must be a list")
    return list(value)


def normalize_headers(headers: Mapping[str, Any]) -> Mapping[str, str]:
    """Lower-case header names; repeated values are joined with ', '."""
    result: dict[str, str] = {}
    for name, value in headers.items():
        key = str(name).strip().lower()
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value)
        result[key] = str(value)
    return MappingProxyType(result)


@dataclass(frozen=True)
class RogueAppSignal:
    """Rogue OAuth application seen in the page's consent/redirect context."""

    client_id: str
    app_name: str
    risk: str
    description: str = ""
    tags: tuple[str, ...] = ()
    references: tuple[str, ...] = ()
    redirect_host: Optional[str] = None
    action: str = "warn"
    severity: str = "critical"


@dataclass(frozen=True)
class Verdict:
    """Immutable result of one analysis."""

    decision: Decision
    score: Optional[int]
    matched_indicator_ids: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc), compare=False)
    reason: str = ""
    confidence: float = 0.0
    action: VerdictAction = VerdictAction.NONE
    rules_generation: int = 0
    rules_version: str = ""
    blocking_rule_ids: tuple[str, ...] = ()
    categories: tuple[str, ...] = ()
    rogue_app: Optional[RogueAppSignal] = None
    # None when the page carried no referrer.
    referrer_trusted: Optional[bool] = None

    @property
    def is_blocked(self) -> bool:
        return self.decision is Decision.PHISHING_BLOCKED

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "score": self.score,
            "matched_indicator_ids": list(self.matched_indicator_ids),
            "blocking_rule_ids": list(self.blocking_rule_ids),
            "categories": list(self.categories),
            "timestamp": self.timestamp.isoformat(),
            "reason": self.reason,
            "confidence": round(self.confidence, 3),
            "action": self.action.value,
            "rules_generation": self.rules_generation,
            "rules_version": self.rules_version,
            "referrer_trusted": self.referrer_trusted,
            "rogue_app": (
                {
                    "client_id": self.rogue_app.client_id,
                    "app_name": self.rogue_app.app_name,
                    "risk": self.rogue_app.risk,
                    "redirect_host": self.rogue_app.redirect_host,
                }
                if self.rogue_app
                else None
            ),
        }
