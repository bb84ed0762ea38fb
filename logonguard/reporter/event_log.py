"""Local security event log.

Every event a verdict produces is also appended to a capped list in the
key-value store, independent of webhook reporting, so recent detections
can be reviewed on the host. Threat URLs are defanged before they are
written.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from ..analyzer.models import PageSnapshot, Verdict
from ..constants import MAX_SECURITY_EVENTS, SECURITY_EVENTS_KEY
from ..rules.schema import Thresholds
from ..storage import KeyValueStore
from .events import EventType, events_for_verdict

logger = logging.getLogger(__name__)

_THREAT_TYPES = {
    EventType.PAGE_BLOCKED.value,
    EventType.THREAT_DETECTED.value,
    EventType.ROGUE_APP_DETECTED.value,
}

# Fallback (action, threat level) per event type.
_DEFAULTS = {
    EventType.PAGE_BLOCKED.value: ("blocked", "critical"),
    EventType.THREAT_DETECTED.value: ("warned", "high"),
    EventType.ROGUE_APP_DETECTED.value: ("warned", "high"),
    EventType.DETECTION_ALERT.value: ("logged", "medium"),
    EventType.VALIDATION_EVENT.value: ("allowed", "none"),
    EventType.FALSE_POSITIVE_REPORT.value: ("reported", "info"),
}


def defang_url(url: str) -> str:
    """Make a URL non-clickable while keeping it readable ("https[:]//...")."""
    if not isinstance(url, str):
        return url
    return url.replace(":", "[:]")


def summarize_event(event: dict, action: str = "") -> dict:
    """Flatten an event envelope into a log record; threat URLs are defanged."""
    data = event.get("data") or {}
    event_type = event.get("type", "")
    default_action, default_level = _DEFAULTS.get(event_type, ("logged", "info"))
    threat = event_type in _THREAT_TYPES
    url = data.get("url", "")
    return {
        "type": event_type,
        "url": defang_url(url) if threat else url,
        "domain": (data.get("context") or {}).get("domain", ""),
        "reason": data.get("reason", ""),
        "score": data.get("score"),
        "rule": data.get("rule", ""),
        "category": data.get("category", ""),
        "action": action or default_action,
        "threatLevel": data.get("severity") or default_level,
        "threatDetected": threat,
        "referrerTrusted": (data.get("context") or {}).get("referrerTrusted"),
    }


class SecurityEventLog:
    """Capped, persisted list of security events (oldest dropped first)."""

    def __init__(
        self,
        store: KeyValueStore,
        max_events: int = MAX_SECURITY_EVENTS,
        key: str = SECURITY_EVENTS_KEY,
    ):
        self.store = store
        self.max_events = max_events
        self.key = key
        self._lock = asyncio.Lock()

    async def append(self, records: list[dict]) -> int:
        """Persist records; returns how many were written."""
        if not records:
            return 0
        async with self._lock:
            existing = await self.store.get(self.key)
            if not isinstance(existing, list):
                existing = []
            combined = (existing + records)[-self.max_events:]
            await self.store.set(self.key, combined)
        return len(records)

    async def record_event(self, event: dict, action: str = "", tab_id: Any = None) -> int:
        """Log one already-built event envelope."""
        return await self.append([self._entry(event, action, tab_id)])

    @staticmethod
    def _entry(event: dict, action: str, tab_id: Any) -> dict:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": "security_event",
            "tabId": tab_id,
            "event": summarize_event(event, action),
        }

    async def record_verdict(
        self,
        verdict: Verdict,
        snapshot: PageSnapshot,
        thresholds: Optional[Thresholds] = None,
        tab_id: Any = None,
    ) -> int:
        """Log the events a verdict produces (not-evaluated pages produce none)."""
        records = [
            self._entry(event, verdict.action.value, tab_id)
            for event in events_for_verdict(verdict, snapshot, thresholds)
        ]
        written = await self.append(records)
        if written:
            logger.debug("Logged %d security event(s) for %s", written, defang_url(snapshot.url))
        return written

    async def recent(self, limit: int = 50) -> list[dict]:
        """Newest first."""
        entries = await self.store.get(self.key)
        if not isinstance(entries, list):
            return []
        return list(reversed(entries[-limit:])) if limit > 0 else []

    async def clear(self) -> None:
        async with self._lock:
            await self.store.delete(self.key)
