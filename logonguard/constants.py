"""Centralized constants for LogonGuard.

Enums and fixed values shared by the rule loader, the verdict engine and
the configuration resolver.
"""

from enum import Enum, IntEnum


class Severity(IntEnum):
    """Indicator severity with its fixed threat point value."""

    LOW = 5
    MEDIUM = 10
    HIGH = 15
    CRITICAL = 25

    @classmethod
    def from_string(cls, value: str | None) -> "Severity":
        """Convert a rule-file severity name to the enum, defaulting to MEDIUM."""
        if not value:
            return cls.MEDIUM
        mapping = {
            "low": cls.LOW,
            "medium": cls.MEDIUM,
            "high": cls.HIGH,
            "critical": cls.CRITICAL,
        }
        try:
            return mapping[str(value).strip().lower()]
        except KeyError:
            raise ValueError(f"unknown severity: {value!r}") from None

    @property
    def points(self) -> int:
        return int(self.value)

    def __str__(self) -> str:
        return self.name.lower()


class IndicatorAction(str, Enum):
    """What a matched indicator asks the engine to do."""

    BLOCK = "block"
    WARN = "warn"
    MONITOR = "monitor"


class Provenance(str, Enum):
    """Configuration layer a resolved value came from (lowest rank first)."""

    DEFAULT = "default"
    BRANDING = "branding"
    LOCAL = "local"
    MANAGED = "managed"


# Rule source used when no customRulesUrl is configured.
DEFAULT_RULES_URL = (
    "https://raw.githubusercontent.com/CyberDrain/Check/refs/heads/main/rules/detection-rules.json"
)

# Update interval / cache duration bounds, in hours.
DEFAULT_UPDATE_INTERVAL_HOURS = 24
MIN_UPDATE_INTERVAL_HOURS = 1
MAX_UPDATE_INTERVAL_HOURS = 168

DEFAULT_ROGUE_APPS_INTERVAL_HOURS = 12

# Network fetches never wait longer than this unless overridden by settings.
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0

# Trust score bounds (descending trust: 100 is a verified login origin).
MAX_TRUST_SCORE = 100
MIN_TRUST_SCORE = 0

# Upper bounds on the text fed to rule regexes.
MAX_DOM_SCAN_CHARS = 200_000
MAX_TEXT_SCAN_CHARS = 50_000
MAX_URL_SCAN_CHARS = 4_096
MAX_PATTERN_LENGTH = 1_000

# Login-shaped page floor used when the rule file does not set one.
DEFAULT_MINIMUM_ELEMENT_WEIGHT = 3

# Header cache (per tab) bounds.
HEADER_CACHE_TTL_SECONDS = 5 * 60
HEADER_CACHE_MAX_ENTRIES = 100

# Key-value store keys.
LOCAL_CONFIG_KEY = "config"
RULES_CACHE_KEY = "rules_cache"
ROGUE_APPS_CACHE_KEY = "rogue_apps_cache"
SECURITY_EVENTS_KEY = "security_events"

# Security event log length; older entries are dropped first.
MAX_SECURITY_EVENTS = 500

# Last-resort rule set. Used only when remote, cache and bundled rules all fail.
MINIMAL_TRUSTED_ORIGINS = (
    "https://login.microsoftonline.com",
    "https://login.microsoft.com",
    "https://login.windows.net",
    "https://login.microsoftonline.us",
    "https://login.partner.microsoftonline.cn",
    "https://login.live.com",
)

MINIMAL_RULES: dict = {
    "version": "minimal",
    "trusted_login_patterns": list(MINIMAL_TRUSTED_ORIGINS),
    "exclusion_system": {"domain_patterns": []},
    "phishing_indicators": [],
    "m365_detection_requirements": {
        "primary_elements": [],
        "secondary_elements": [],
    },
    "blocking_rules": [],
    "rogue_apps_detection": {"enabled": False},
    "thresholds": {"legitimate": 85, "suspicious": 55, "phishing": 25},
}
