"""Outbound event reporting for LogonGuard."""

from .event_log import SecurityEventLog, defang_url
from .events import EventType, build_event, events_for_verdict
from .webhook import WebhookReporter

__all__ = [
    "EventType",
    "SecurityEventLog",
    "WebhookReporter",
    "build_event",
    "defang_url",
    "events_for_verdict",
]
