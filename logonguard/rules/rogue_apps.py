"""Rogue OAuth application feed.

Maps OAuth client ids to application records flagged as malicious by an
external feed. Same fetch/cache/fallback shape as the rules manager, with
its own refresh interval; the fallback ends at an empty feed.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from ..constants import ROGUE_APPS_CACHE_KEY
from ..errors import RuleFetchError, RuleValidationError
from ..storage.kv import KeyValueStore
from .fetcher import ClientFactory, fetch_json
from .lifecycle import parse_timestamp, utcnow
from .schema import RogueAppsSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RogueApp:
    """A known-malicious OAuth application."""

    app_id: str
    name: str = ""
    description: str = ""
    tags: tuple[str, ...] = ()
    risk: str = "high"
    references: tuple[str, ...] = field(default=(), repr=False)


def _as_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if isinstance(item, dict):
                # References are sometimes objects: {"title": ..., "link": ...}
                item = item.get("link") or item.get("url") or item.get("title") or ""
            if item:
                items.append(str(item))
        return tuple(items)
    return (str(value),)


def parse_feed(data: Any) -> dict[str, RogueApp]:
    """Parse the feed payload into a lower-cased client id -> RogueApp map."""
    records = data.get("apps") if isinstance(data, dict) else data
    if not isinstance(records, list):
        raise RuleValidationError("rogue app feed must be a list (or {'apps': [...]})")

    apps: dict[str, RogueApp] = {}
    for record in records:
        if not isinstance(record, dict):
            continue
        app_id = str(record.get("appId") or record.get("client_id") or "").strip()
        if not app_id:
            continue
        apps[app_id.lower()] = RogueApp(
            app_id=app_id,
            name=str(record.get("appDisplayName") or record.get("name") or ""),
            description=str(record.get("description") or ""),
            tags=_as_tuple(record.get("tags")),
            risk=str(record.get("risk") or "high"),
            references=_as_tuple(record.get("references")),
        )
    return apps


class RogueAppsManager:
    """Owns the rogue application lookup table and its cache entry."""

    def __init__(
        self,
        store: KeyValueStore,
        fetch_timeout: float = 10.0,
        client_factory: Optional[ClientFactory] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.fetch_timeout = fetch_timeout
        self.client_factory = client_factory
        self._clock = clock
        self.settings = RogueAppsSettings()
        self._apps: dict[str, RogueApp] = {}
        self._source = "empty"
        self._last_updated: Optional[datetime] = None
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None

    @property
    def enabled(self) -> bool:
        return self.settings.enabled and bool(self.settings.source_url)

    def check(self, client_id: Optional[str]) -> Optional[RogueApp]:
        """Look up an OAuth client id; None when unknown or detection is off."""
        if not client_id or not self.enabled:
            return None
        return self._apps.get(client_id.strip().lower())

    async def configure(self, settings: RogueAppsSettings) -> None:
        """Adopt feed settings from a rules generation and load the feed."""
        changed = settings != self.settings
        if settings.source_url != self.settings.source_url and self._apps:
            # Records from the old feed must not outlive a failed fetch of the new one.
            logger.info("Rogue app feed moved to %s; dropping records from the previous feed", settings.source_url)
            self._swap({}, "empty", None)
        self.settings = settings
        if not self.enabled:
            if self._apps:
                logger.info("Rogue app detection disabled")
            self._apps = {}
            self._source = "disabled"
            return
        if changed or not self._apps:
            await self.initialize()

    async def initialize(self) -> int:
        """Serve a fresh cache if present, otherwise fetch. Returns app count."""
        entry = await self._read_cache()
        if entry is not None:
            apps, fetched_at = entry
            if self._clock() - fetched_at < timedelta(milliseconds=self.settings.cache_duration):
                self._swap(apps, "cache", fetched_at)
                return len(apps)
        return await self.refresh()

    async def refresh(self) -> int:
        """Fetch the feed; on failure fall back to cache (any age), then empty."""
        if not self.enabled:
            return 0
        async with self._lock:
            url = self.settings.source_url
            try:
                data = await fetch_json(url, self.fetch_timeout, self.client_factory)
                apps = parse_feed(data)
            except (RuleFetchError, RuleValidationError) as exc:
                logger.warning("Rogue app feed update failed: %s", exc)
                entry = await self._read_cache()
                if entry is not None:
                    cached_apps, cached_at = entry
                    self._swap(cached_apps, "cache", cached_at)
                elif not self._apps:
                    self._swap({}, "empty", None)
                return len(self._apps)

            fetched_at = self._clock()
            await self.store.set(
                ROGUE_APPS_CACHE_KEY,
                {"apps": data, "fetched_at": fetched_at.isoformat(), "source_url": url},
            )
            self._swap(apps, "remote", fetched_at)
            logger.info("Loaded %d rogue app records from %s", len(apps), url)
            return len(apps)

    def _swap(self, apps: dict[str, RogueApp], source: str, fetched_at: Optional[datetime]) -> None:
        self._apps = apps
        self._source = source
        self._last_updated = fetched_at

    async def _read_cache(self) -> Optional[tuple[dict[str, RogueApp], datetime]]:
        entry = await self.store.get(ROGUE_APPS_CACHE_KEY)
        if not isinstance(entry, dict) or entry.get("source_url") != self.settings.source_url:
            return None
        fetched_at = parse_timestamp(entry.get("fetched_at"))
        if fetched_at is None:
            return None
        try:
            return parse_feed(entry.get("apps")), fetched_at
        except RuleValidationError as exc:
            logger.warning("Discarding cached rogue app feed: %s", exc)
            await self.store.delete(ROGUE_APPS_CACHE_KEY)
            return None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_periodic())

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None

    async def _run_periodic(self) -> None:
        while True:
            try:
                await asyncio.sleep(max(60.0, self.settings.update_interval / 1000))
                if self.enabled and self.settings.auto_update:
                    await self.refresh()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Rogue app refresh loop error: %s", exc)

    def status(self) -> dict:
        return {
            "enabled": self.enabled,
            "source": self._source,
            "apps": len(self._apps),
            "last_updated": self._last_updated.isoformat() if self._last_updated else None,
        }
