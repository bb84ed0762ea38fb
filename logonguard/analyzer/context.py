"""Shared scan context passed to indicator matching and blocking rules."""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import Protocol

from ..constants import MAX_DOM_SCAN_CHARS, MAX_TEXT_SCAN_CHARS, MAX_URL_SCAN_CHARS
from ..rules.schema import BlockingRule, Element, ElementType, Indicator, RuleStore, Surface
from ..utils.domains import resolve_url, url_origin
from .models import PageSnapshot

_SCRIPT_STYLE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.DOTALL | re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")
_RESOURCE_ATTR = re.compile(r"""(?:src|href)\s*=\s*["']([^"'<>\s]{1,2048})["']""", re.IGNORECASE)

MAX_RESOURCES = 500


def visible_text(dom: str) -> str:
    """Rough visible text of an HTML excerpt (scripts and styles removed)."""
    if not dom:
        return ""
    text = _SCRIPT_STYLE.sub(" ", dom)
    text = _TAG.sub(" ", text)
    return _WHITESPACE.sub(" ", html.unescape(text)).strip()


@dataclass(frozen=True)
class ScanContext:
    """Length-bounded views of one snapshot, built once per analysis."""

    snapshot: PageSnapshot
    store: RuleStore
    origin: str
    url_text: str
    dom_text: str
    content_text: str
    header_text: str
    form_action_urls: tuple[str, ...]
    resources: tuple[str, ...]
    url_only: bool = False
    matched: tuple[Indicator, ...] = field(default=(), compare=False)

    @property
    def page_text(self) -> str:
        return "\n".join(p for p in (self.url_text, self.dom_text, self.snapshot.title) if p)

    def surface_text(self, surface: Surface) -> str:
        if surface is Surface.URL:
            return self.url_text
        if surface is Surface.DOM:
            return self.dom_text
        if surface is Surface.CONTENT:
            return self.content_text
        if surface is Surface.HEADER:
            return self.header_text
        if surface is Surface.FORM_ACTION:
            return "\n".join(self.form_action_urls)
        return self.page_text

    def element_text(self, element: Element) -> str:
        if element.type is ElementType.URL_PATTERN:
            return self.url_text
        if element.type is ElementType.TEXT_CONTENT:
            return self.content_text
        return self.dom_text


def build_scan_context(snapshot: PageSnapshot, store: RuleStore, url_only: bool = False) -> ScanContext:
    url = snapshot.url[:MAX_URL_SCAN_CHARS]
    if url_only:
        return ScanContext(
            snapshot=snapshot,
            store=store,
            origin=url_origin(snapshot.url),
            url_text=url,
            dom_text="",
            content_text="",
            header_text="",
            form_action_urls=(),
            resources=(),
            url_only=True,
        )

    dom = snapshot.dom_excerpt[:MAX_DOM_SCAN_CHARS]
    text = snapshot.text or visible_text(dom)
    content = "\n".join(p for p in (snapshot.title, text) if p)[:MAX_TEXT_SCAN_CHARS]
    headers = "\n".join(f"{name}: {value}" for name, value in sorted(snapshot.headers.items()))
    forms = tuple(resolve_url(f.action, snapshot.url) for f in snapshot.form_actions)

    resources: list[str] = []
    seen: set[str] = set()
    for raw in list(snapshot.resources) + _RESOURCE_ATTR.findall(dom):
        resolved = resolve_url(raw, snapshot.url)
        if resolved not in seen:
            seen.add(resolved)
            resources.append(resolved)
        if len(resources) >= MAX_RESOURCES:
            break

    return ScanContext(
        snapshot=snapshot,
        store=store,
        origin=url_origin(snapshot.url),
        url_text=url,
        dom_text=dom,
        content_text=content,
        header_text=headers[:MAX_TEXT_SCAN_CHARS],
        form_action_urls=forms,
        resources=tuple(resources),
    )


@dataclass
class BlockingResult:
    """Outcome of a single blocking rule."""

    rule_id: str
    triggered: bool = False
    reason: str = ""
    metadata: dict = field(default_factory=dict)


class BlockingEvaluator(Protocol):
    """Interface for blocking rule evaluators."""

    name: str

    def apply(self, rule: BlockingRule, context: ScanContext) -> BlockingResult:  # pragma: no cover - interface
        ...
