"""Per-tab analysis coordination.

Each tab has one sequential pipeline. A navigation bumps the tab's
generation counter; an analysis that finishes under an older generation is
discarded rather than cancelled mid-computation. Tabs never share state
apart from the read-only rules generation and config snapshot.
"""

from __future__ import annotations

import asyncio
import dataclasses
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping, Optional, Union
from urllib.parse import urldefrag

from ..cache import TTLCache, create_header_cache
from .engine import VerdictEngine
from .models import PageSnapshot, Verdict, normalize_headers

logger = logging.getLogger(__name__)

VerdictCallback = Callable[[Any, PageSnapshot, Verdict], Union[None, Awaitable[None]]]


@dataclass
class _TabState:
    generation: int = 0
    url: str = ""
    verdict: Optional[Verdict] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


def _page_key(url: str) -> str:
    return urldefrag(url or "")[0]


class TabAnalysisCoordinator:
    """Runs analyses per tab and keeps only the newest result."""

    def __init__(
        self,
        engine: VerdictEngine,
        header_cache: Optional[TTLCache] = None,
        on_verdict: Optional[VerdictCallback] = None,
    ):
        self.engine = engine
        self.header_cache = header_cache if header_cache is not None else create_header_cache()
        self.on_verdict = on_verdict
        self._tabs: dict[Any, _TabState] = {}
        self.discarded = 0

    def _state(self, tab_id: Any) -> _TabState:
        state = self._tabs.get(tab_id)
        if state is None:
            state = self._tabs[tab_id] = _TabState()
        return state

    def navigate(self, tab_id: Any, url: str) -> int:
        """Record a navigation; any in-flight analysis for the tab becomes stale."""
        state = self._state(tab_id)
        state.generation += 1
        state.url = _page_key(url)
        state.verdict = None
        return state.generation

    def record_response_headers(self, tab_id: Any, url: str, headers: Mapping[str, Any]) -> None:
        """Store main-frame response headers until the snapshot for that page arrives."""
        self.header_cache.set(f"{tab_id}|{_page_key(url)}", normalize_headers(headers))

    def cached_headers(self, tab_id: Any, url: str) -> Optional[Mapping[str, str]]:
        return self.header_cache.get(f"{tab_id}|{_page_key(url)}")

    def latest_verdict(self, tab_id: Any) -> Optional[Verdict]:
        state = self._tabs.get(tab_id)
        return state.verdict if state else None

    def close_tab(self, tab_id: Any) -> None:
        """Forget the tab and evict its cached headers."""
        state = self._tabs.pop(tab_id, None)
        if state is not None:
            state.generation += 1
        evicted = self.header_cache.delete_prefix(f"{tab_id}|")
        logger.debug("Closed tab %s (%d header entries evicted)", tab_id, evicted)

    async def analyze(self, tab_id: Any, snapshot: PageSnapshot) -> Optional[Verdict]:
        """
        Analyze a snapshot for a tab.

        Returns the verdict, or None when a newer navigation superseded this
        analysis before it finished.
        """
        state = self._state(tab_id)
        if _page_key(snapshot.url) != state.url:
            self.navigate(tab_id, snapshot.url)
        token = state.generation

        if not snapshot.headers:
            cached = self.cached_headers(tab_id, snapshot.url)
            if cached:
                snapshot = dataclasses.replace(snapshot, headers=cached)

        async with state.lock:
            if token != state.generation:
                return self._discard(tab_id, snapshot)
            # Borrow one rules generation and config snapshot for the whole run.
            rules = self.engine.rules_provider()
            config = self.engine.config_provider()
            verdict = await asyncio.to_thread(self.engine.analyze_snapshot, snapshot, rules, config)
            if token != state.generation or self._tabs.get(tab_id) is not state:
                return self._discard(tab_id, snapshot)
            state.verdict = verdict

        if self.on_verdict is not None:
            result = self.on_verdict(tab_id, snapshot, verdict)
            if inspect.isawaitable(result):
                await result
        return verdict

    def _discard(self, tab_id: Any, snapshot: PageSnapshot) -> None:
        self.discarded += 1
        logger.debug("Discarding superseded analysis of %s in tab %s", snapshot.url, tab_id)
        return None

    def stats(self) -> dict:
        return {
            "tabs": len(self._tabs),
            "discarded_analyses": self.discarded,
            "header_cache": self.header_cache.stats(),
        }
