"""Rules lifecycle: fetch, cache, validate, fall back and refresh the active rule set."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

from ..constants import MINIMAL_RULES, RULES_CACHE_KEY
from ..errors import RuleFetchError, RuleValidationError
from ..storage.kv import KeyValueStore
from .fetcher import ClientFactory, fetch_json
from .schema import RuleStore, parse_rule_store

logger = logging.getLogger(__name__)

BUNDLED_RULES_PATH = Path(__file__).resolve().parent.parent / "data" / "detection-rules.json"


class RulesState(str, Enum):
    UNLOADED = "unloaded"
    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"


class RulesSource(str, Enum):
    REMOTE = "remote"
    CACHE = "cache"
    BUNDLED = "bundled"
    MINIMAL = "minimal"


@dataclass(frozen=True)
class RulesGeneration:
    """One immutable rule generation. Analyses hold a reference for their whole run."""

    generation: int
    store: RuleStore
    source: RulesSource
    source_url: str
    loaded_at: datetime
    fetched_at: Optional[datetime] = None

    @property
    def version(self) -> str:
        return self.store.version


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def load_bundled_rules(path: Optional[Path] = None) -> RuleStore:
    """Parse the baseline rule file shipped with the package."""
    path = Path(path or BUNDLED_RULES_PATH)
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return parse_rule_store(data)


def minimal_rules() -> RuleStore:
    return parse_rule_store(MINIMAL_RULES)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Epoch milliseconds if implausibly large for seconds.
        seconds = value / 1000 if value > 10**11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


Listener = Callable[[RulesGeneration], Union[None, Awaitable[None]]]


class RulesManager:
    """
    Owns the single active RulesGeneration reference and its cache entry.

    Fallback order on any fetch or validation failure:
    last valid cache (even if stale) -> bundled baseline -> minimal set.
    """

    def __init__(
        self,
        store: KeyValueStore,
        resolver,
        fetch_timeout: float = 10.0,
        client_factory: Optional[ClientFactory] = None,
        bundled_path: Optional[Path] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.resolver = resolver
        self.fetch_timeout = fetch_timeout
        self.client_factory = client_factory
        self.bundled_path = bundled_path
        self._clock = clock

        self._state = RulesState.UNLOADED
        self._active: Optional[RulesGeneration] = None
        self._generation = 0
        self._minimal = RulesGeneration(
            generation=0,
            store=minimal_rules(),
            source=RulesSource.MINIMAL,
            source_url="",
            loaded_at=clock(),
        )
        self._lock = asyncio.Lock()
        self._listeners: list[Listener] = []
        self._rules_url = ""
        self._interval_hours = 24
        self._last_error: Optional[str] = None
        self._last_success: Optional[datetime] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

    # -- public API ----------------------------------------------------------

    @property
    def state(self) -> RulesState:
        return self._state

    def get_active_rules(self) -> RulesGeneration:
        """Current generation; the minimal set before anything has loaded."""
        return self._active or self._minimal

    def add_listener(self, callback: Listener) -> None:
        self._listeners.append(callback)

    async def initialize(self) -> RulesGeneration:
        """Load rules for the first time (cache first when fresh, else fetch)."""
        self._state = RulesState.LOADING
        config = await self.resolver.resolve()
        return await self._load(config)

    async def reload_configuration(self) -> RulesGeneration:
        """Re-read configuration and repeat the load without a restart."""
        config = await self.resolver.resolve()
        return await self._load(config)

    async def force_update(self) -> RulesGeneration:
        """Fetch from the remote source now, ignoring cache freshness."""
        config = await self.resolver.resolve()
        self._apply_config(config)
        return await self._refresh()

    async def wait_idle(self) -> None:
        """Wait for background refreshes started by initialize/reload."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
            self._background = {t for t in self._background if not t.done()}

    def start(self) -> None:
        """Start the periodic refresh task."""
        if self._periodic_task is None or self._periodic_task.done():
            self._periodic_task = asyncio.create_task(self._run_periodic())

    async def stop(self) -> None:
        tasks = [t for t in [self._periodic_task, *self._background] if t]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._periodic_task = None
        self._background.clear()

    def status(self) -> dict:
        active = self.get_active_rules()
        return {
            "state": self._state.value,
            "generation": active.generation,
            "source": active.source.value,
            "version": active.version,
            "source_url": active.source_url,
            "loaded_at": active.loaded_at.isoformat(),
            "rules_url": self._rules_url,
            "update_interval_hours": self._interval_hours,
            "last_success": self._last_success.isoformat() if self._last_success else None,
            "last_error": self._last_error,
            "dropped_rules": active.store.diagnostics.dropped_count,
        }

    # -- internals -----------------------------------------------------------

    def _apply_config(self, config) -> bool:
        """Adopt URL/interval from config; returns True if the URL changed."""
        changed = bool(self._rules_url) and config.custom_rules_url != self._rules_url
        self._rules_url = config.custom_rules_url
        self._interval_hours = config.update_interval_hours
        return changed

    async def _load(self, config) -> RulesGeneration:
        if self._apply_config(config):
            logger.info("Rules URL changed to %s", self._rules_url)
        # A cache entry from another URL is discarded inside _read_cache.
        cache = await self._read_cache()
        if cache is not None and self._is_fresh(cache[1]):
            store, fetched_at = cache
            await self._activate(store, RulesSource.CACHE, fetched_at)
            logger.info("Serving cached rules v%s; refreshing in background", store.version)
            task = asyncio.create_task(self._refresh())
            self._background.add(task)
            task.add_done_callback(self._background.discard)
            return self.get_active_rules()

        return await self._refresh()

    def _is_fresh(self, fetched_at: datetime) -> bool:
        return self._clock() - fetched_at < timedelta(hours=self._interval_hours)

    async def _read_cache(self) -> Optional[tuple[RuleStore, datetime]]:
        entry = await self.store.get(RULES_CACHE_KEY)
        if not entry:
            return None
        if not isinstance(entry, dict) or entry.get("source_url") != self._rules_url:
            logger.info("Ignoring cached rules from a different source")
            await self.store.delete(RULES_CACHE_KEY)
            return None
        fetched_at = parse_timestamp(entry.get("fetched_at"))
        if fetched_at is None:
            logger.warning("Cached rules have no usable fetched_at; discarding")
            await self.store.delete(RULES_CACHE_KEY)
            return None
        try:
            store = parse_rule_store(entry.get("rules"))
        except RuleValidationError as exc:
            logger.warning("Cached rules failed validation (%s); discarding", exc)
            await self.store.delete(RULES_CACHE_KEY)
            return None
        return store, fetched_at

    async def _refresh(self) -> RulesGeneration:
        """Fetch and validate; on failure walk the fallback chain."""
        async with self._lock:
            url = self._rules_url
            try:
                data = await fetch_json(url, self.fetch_timeout, self.client_factory)
                store = parse_rule_store(data)
            except (RuleFetchError, RuleValidationError) as exc:
                self._last_error = str(exc)
                logger.warning("Rules update from %s failed: %s", url, exc)
                return await self._fall_back()

            fetched_at = self._clock()
            await self.store.set(
                RULES_CACHE_KEY,
                {"rules": data, "fetched_at": fetched_at.isoformat(), "source_url": url},
            )
            self._last_error = None
            self._last_success = fetched_at
            logger.info(
                "Loaded rules v%s from %s (%d indicators, %d dropped)",
                store.version,
                url,
                len(store.indicators),
                store.diagnostics.dropped_count,
            )
            return await self._activate(store, RulesSource.REMOTE, fetched_at)

    async def _fall_back(self) -> RulesGeneration:
        current = self._active
        if current and current.source in (RulesSource.REMOTE, RulesSource.CACHE) and (
            current.source_url == self._rules_url
        ):
            logger.info("Keeping rules v%s from %s", current.version, current.source.value)
            self._state = RulesState.READY
            return current

        cache = await self._read_cache()
        if cache is not None:
            store, fetched_at = cache
            logger.warning("Falling back to cached rules v%s (fetched %s)", store.version, fetched_at)
            return await self._activate(store, RulesSource.CACHE, fetched_at)

        try:
            store = load_bundled_rules(self.bundled_path)
        except (OSError, ValueError, RuleValidationError) as exc:
            logger.error("Bundled rules unavailable: %s; using minimal rule set", exc)
            return await self._activate(self._minimal.store, RulesSource.MINIMAL, None)
        logger.warning("Falling back to bundled rules v%s", store.version)
        return await self._activate(store, RulesSource.BUNDLED, None)

    async def _activate(
        self, store: RuleStore, source: RulesSource, fetched_at: Optional[datetime]
    ) -> RulesGeneration:
        self._generation += 1
        generation = RulesGeneration(
            generation=self._generation,
            store=store,
            source=source,
            source_url=self._rules_url if source in (RulesSource.REMOTE, RulesSource.CACHE) else "",
            loaded_at=self._clock(),
            fetched_at=fetched_at,
        )
        # Single reference assignment; in-flight analyses keep the object they hold.
        self._active = generation
        if source in (RulesSource.REMOTE, RulesSource.CACHE):
            self._state = RulesState.READY
        else:
            self._state = RulesState.DEGRADED
        await self._notify(generation)
        return generation

    async def _notify(self, generation: RulesGeneration) -> None:
        for callback in list(self._listeners):
            try:
                result = callback(generation)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.warning("Rules listener %r failed: %s", callback, exc)

    async def _run_periodic(self) -> None:
        logger.info("Rules refresh loop started (every %sh)", self._interval_hours)
        while True:
            try:
                await asyncio.sleep(self._interval_hours * 3600)
                config = await self.resolver.resolve()
                if self._apply_config(config):
                    await self.store.delete(RULES_CACHE_KEY)
                await self._refresh()
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Rules refresh loop error: %s", exc)
        logger.info("Rules refresh loop stopped")
