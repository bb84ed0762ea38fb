"""Outbound event envelopes.

Every event shares one versioned envelope so collectors can route on
``type`` and parse ``data`` without knowing which detector produced it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from .. import __version__
from ..analyzer.models import Decision, PageSnapshot, Verdict
from ..rules.schema import Thresholds
from ..utils.domains import canonicalize_domain

EVENT_VERSION = "1.0"
EVENT_SOURCE = "logonguard"


class EventType(str, Enum):
    DETECTION_ALERT = "detection_alert"
    FALSE_POSITIVE_REPORT = "false_positive_report"
    PAGE_BLOCKED = "page_blocked"
    ROGUE_APP_DETECTED = "rogue_app_detected"
    THREAT_DETECTED = "threat_detected"
    VALIDATION_EVENT = "validation_event"


_DECISION_EVENTS = {
    Decision.PHISHING_BLOCKED: (EventType.PAGE_BLOCKED, "critical"),
    Decision.SUSPICIOUS: (EventType.THREAT_DETECTED, "high"),
    Decision.MS_LOGIN_UNKNOWN: (EventType.DETECTION_ALERT, "medium"),
    Decision.TRUSTED: (EventType.VALIDATION_EVENT, "info"),
    Decision.TRUSTED_EXTRA: (EventType.VALIDATION_EVENT, "info"),
}


def build_event(
    event_type: EventType,
    url: str,
    *,
    severity: str = "info",
    score: Optional[int] = None,
    threshold: Optional[int] = None,
    reason: str = "",
    detection_method: str = "",
    rule: str = "",
    category: str = "",
    confidence: Optional[float] = None,
    referrer: str = "",
    referrer_trusted: Optional[bool] = None,
    page_title: str = "",
    redirect_to: str = "",
    tenant_id: str = "",
    timestamp: Optional[datetime] = None,
) -> dict:
    """Build one event envelope."""
    when = timestamp or datetime.now(timezone.utc)
    event = {
        "version": EVENT_VERSION,
        "type": EventType(event_type).value,
        "timestamp": when.isoformat(),
        "source": EVENT_SOURCE,
        "extensionVersion": __version__,
        "data": {
            "url": url,
            "severity": severity,
            "score": score,
            "threshold": threshold,
            "reason": reason,
            "detectionMethod": detection_method,
            "rule": rule,
            "category": category,
            "confidence": confidence,
            "context": {
                "referrer": referrer,
                "referrerTrusted": referrer_trusted,
                "pageTitle": page_title,
                "domain": canonicalize_domain(url),
                "redirectTo": redirect_to,
            },
        },
    }
    if tenant_id:
        event["tenantId"] = tenant_id
    return event


def _detection_method(verdict: Verdict) -> str:
    if verdict.decision in (Decision.TRUSTED, Decision.TRUSTED_EXTRA):
        return "trusted_origin"
    if verdict.blocking_rule_ids:
        return "blocking_rule"
    if verdict.matched_indicator_ids:
        return "indicator"
    if verdict.score is None:
        return "analysis_error"
    return "element_detection"


def _threshold_for(decision: Decision, thresholds: Optional[Thresholds]) -> Optional[int]:
    if thresholds is None:
        return None
    if decision is Decision.PHISHING_BLOCKED:
        return thresholds.phishing
    if decision is Decision.SUSPICIOUS:
        return thresholds.suspicious
    return thresholds.legitimate


def events_for_verdict(
    verdict: Verdict,
    snapshot: PageSnapshot,
    thresholds: Optional[Thresholds] = None,
    tenant_id: str = "",
) -> list[dict]:
    """
    Map a verdict to the events it should emit.

    not-evaluated pages emit nothing unless a rogue OAuth application was
    seen; a rogue app always adds its own rogue_app_detected event.
    """
    events = []
    common = {
        "referrer": snapshot.referrer,
        "referrer_trusted": verdict.referrer_trusted,
        "page_title": snapshot.title,
        "tenant_id": tenant_id,
        "timestamp": verdict.timestamp,
    }

    mapped = _DECISION_EVENTS.get(verdict.decision)
    if mapped is not None:
        event_type, severity = mapped
        if verdict.blocking_rule_ids:
            rule = verdict.blocking_rule_ids[0]
        elif verdict.matched_indicator_ids:
            rule = verdict.matched_indicator_ids[0]
        else:
            rule = ""
        events.append(
            build_event(
                event_type,
                snapshot.url,
                severity=severity,
                score=verdict.score,
                threshold=_threshold_for(verdict.decision, thresholds),
                reason=verdict.reason,
                detection_method=_detection_method(verdict),
                rule=rule,
                category=verdict.categories[0] if verdict.categories else "",
                confidence=round(verdict.confidence, 3),
                **common,
            )
        )

    rogue = verdict.rogue_app
    if rogue is not None:
        events.append(
            build_event(
                EventType.ROGUE_APP_DETECTED,
                snapshot.url,
                severity=rogue.severity,
                score=verdict.score,
                reason=f"rogue OAuth application {rogue.app_name} ({rogue.risk} risk)",
                detection_method="rogue_app_feed",
                rule=rogue.client_id,
                category="rogue_app",
                redirect_to=rogue.redirect_host or "",
                **common,
            )
        )
    return events


def false_positive_event(url: str, reason: str, tenant_id: str = "") -> dict:
    """Event for a user reporting a page as wrongly flagged."""
    return build_event(
        EventType.FALSE_POSITIVE_REPORT,
        url,
        severity="info",
        reason=reason,
        detection_method="user_report",
        tenant_id=tenant_id,
    )
