"""Regex helpers for untrusted rule patterns.

Rule files are downloaded from a remote URL, so every rule pattern is
compiled once at load time with google-re2. RE2 matches in linear time,
which rules out catastrophic backtracking; constructs it does not support
(lookaround, backreferences) are rejected at load time like any other
invalid pattern. Patterns built internally from escaped literals stay on
the standard library engine.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

import re2

from ..constants import MAX_PATTERN_LENGTH, MAX_URL_SCAN_CHARS
from ..errors import RuleCompileError

logger = logging.getLogger(__name__)

# JavaScript flags RE2 accepts as inline flags.
_INLINE_FLAGS = "ims"
# JavaScript flags with no matching counterpart (global, unicode, sticky, indices).
_IGNORED_FLAGS = set("guyd")

# Characters that mark an allowlist entry as a regex rather than a wildcard.
_REGEX_MARKERS = ("^", "$", "\\", "(", "[", "|", "+", "?")

_PLAIN_ORIGIN = re.compile(r"^https?://[a-z0-9.\-]+(?::\d+)?/?$", re.I)


def parse_flags(flags: str | None, default: str = "i") -> str:
    """Translate a JavaScript-style flag string ("i", "gi", ...) to RE2 inline flags."""
    if flags is None:
        return default
    result = set()
    for char in str(flags):
        if char in _INLINE_FLAGS:
            result.add(char)
        elif char in _IGNORED_FLAGS or char.isspace():
            continue
        else:
            raise ValueError(f"unsupported regex flag {char!r}")
    return "".join(sorted(result))


def compile_rule_pattern(rule_id: str, pattern: Any, flags: str = "i") -> Any:
    """Compile a rule pattern with RE2 or raise RuleCompileError."""
    if not isinstance(pattern, str) or not pattern:
        raise RuleCompileError(rule_id, "empty pattern")
    if len(pattern) > MAX_PATTERN_LENGTH:
        raise RuleCompileError(rule_id, f"pattern longer than {MAX_PATTERN_LENGTH} chars")
    source = f"(?{flags}){pattern}" if flags else pattern
    try:
        return re2.compile(source)
    except re2.error as exc:
        raise RuleCompileError(rule_id, f"invalid regex: {exc}") from exc


def compile_origin_pattern(entry: str) -> Any:
    """
    Compile a trusted-login entry into a matcher applied with fullmatch to an origin.

    Plain origins ("https://login.live.com") are escaped so "." is literal;
    anything else is taken as a regex.
    """
    value = (entry or "").strip()
    if _PLAIN_ORIGIN.match(value):
        return re.compile(re.escape(value.rstrip("/").lower()), re.IGNORECASE)
    return compile_rule_pattern(value, value.lstrip("^").rstrip("$") or value)


@dataclass(frozen=True)
class AllowlistPattern:
    """Compiled allowlist entry; host patterns apply to the hostname only."""

    source: str
    regex: Any
    host_only: bool = False

    def matches(self, url: str, host: str) -> bool:
        if self.host_only:
            return bool(host) and self.regex.match(host) is not None
        return bounded_search(self.regex, url, MAX_URL_SCAN_CHARS) is not None


def compile_allowlist_entry(entry: str) -> AllowlistPattern | None:
    """
    Compile one allowlist entry, or None for blanks, comments and bad regexes.

    Entries containing regex syntax are searched against the full URL.
    Simple wildcards are anchored: with a scheme they match the full URL,
    without one they match the hostname.
    """
    value = (entry or "").strip()
    if not value or value.startswith("#"):
        return None

    if any(marker in value for marker in _REGEX_MARKERS):
        try:
            regex = compile_rule_pattern("allowlist", value)
        except RuleCompileError as exc:
            logger.warning("Ignoring allowlist entry %r: %s", value, exc)
            return None
        return AllowlistPattern(value, regex)

    body = ".*".join(re.escape(part) for part in value.split("*"))
    regex = re.compile(f"^{body}$", re.IGNORECASE)
    return AllowlistPattern(value, regex, host_only="://" not in value)


def bounded_search(pattern: Any, text: str, limit: int):
    """Search at most `limit` characters of text."""
    if not text:
        return None
    return pattern.search(text if len(text) <= limit else text[:limit])
