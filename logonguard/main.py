"""Main entry point for the LogonGuard detection service."""

import argparse
import asyncio
import dataclasses
import json
import logging
import re
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping, Optional

from .analyzer import PageSnapshot, TabAnalysisCoordinator, Verdict, VerdictEngine
from .analyzer.metrics import metrics as detection_metrics
from .config import (
    DEFAULT_CONFIG,
    ConfigResolver,
    EffectiveConfig,
    Settings,
    dump_config,
    load_branding_defaults,
    load_settings,
    merge_layers,
    validate_settings,
)
from .errors import AnalysisError, ConfigImportError, RuleValidationError
from .monitoring.health import HealthServer
from .reporter import SecurityEventLog, WebhookReporter
from .reporter.events import false_positive_event
from .rules import RogueAppsManager, RulesGeneration, RulesManager, load_bundled_rules, parse_rule_store
from .rules.fetcher import ClientFactory
from .rules.lifecycle import RulesSource, utcnow
from .storage import FilePolicySource, KeyValueStore, PolicySource, SQLiteStore, StaticPolicySource

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO", stream=sys.stdout) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[
            logging.StreamHandler(stream),
        ],
    )


class LogonGuardService:
    """Wires config, rules, analysis and reporting into one running service."""

    def __init__(
        self,
        settings: Settings,
        store: Optional[KeyValueStore] = None,
        policy_source: Optional[PolicySource] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.settings = settings
        self._running = False
        self._stop_lock = asyncio.Lock()
        self._stop_task: asyncio.Task | None = None
        self._stopped = asyncio.Event()
        self._started_at = datetime.now(timezone.utc)
        self._background: set[asyncio.Task] = set()

        self.store = store or SQLiteStore(settings.db_path)
        if policy_source is None:
            policy_source = (
                FilePolicySource(settings.policy_file) if settings.policy_file else StaticPolicySource()
            )
        branding = load_branding_defaults(settings.branding_file)
        self.resolver = ConfigResolver(self.store, policy_source, branding)
        self._config = merge_layers(DEFAULT_CONFIG, branding)

        self.rules = RulesManager(
            self.store, self.resolver, fetch_timeout=settings.fetch_timeout, client_factory=client_factory
        )
        self.rogue_apps = RogueAppsManager(
            self.store, fetch_timeout=settings.fetch_timeout, client_factory=client_factory
        )
        self.rules.add_listener(self._on_rules_changed)

        self.engine = VerdictEngine(
            rules_provider=self.rules.get_active_rules,
            config_provider=self.current_config,
            rogue_apps=self.rogue_apps,
        )
        self.tabs = TabAnalysisCoordinator(self.engine, on_verdict=self._on_verdict)
        self.reporter = WebhookReporter(self.current_config, client_factory=client_factory)
        self.event_log = SecurityEventLog(self.store)
        self.health_server = HealthServer(
            host=settings.health_host,
            port=settings.health_port,
            status_provider=self._health_snapshot,
            enabled=settings.health_enabled,
        )

    def current_config(self) -> EffectiveConfig:
        return self._config

    def _adopt_config(self, config: EffectiveConfig) -> None:
        self._config = config
        level = logging.DEBUG if config.enable_debug_logging else getattr(
            logging, self.settings.log_level, logging.INFO
        )
        logging.getLogger("logonguard").setLevel(level)
        if config.locked_keys:
            logger.info("Managed policy locks: %s", ", ".join(config.locked_keys))

    def _on_rules_changed(self, generation: RulesGeneration) -> None:
        """Point the rogue app feed at the new generation's settings."""
        logger.info(
            "Rules generation %d active (v%s from %s)",
            generation.generation,
            generation.version,
            generation.source.value,
        )
        task = asyncio.create_task(self.rogue_apps.configure(generation.store.rogue_apps))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _on_verdict(self, tab_id: Any, snapshot: PageSnapshot, verdict: Verdict) -> None:
        if verdict.is_blocked:
            logger.warning(f"Blocked {snapshot.url} in tab {tab_id}: {verdict.reason}")
        elif verdict.rogue_app is not None:
            logger.warning(f"Rogue OAuth app {verdict.rogue_app.app_name} on {snapshot.url}")
        thresholds = self.rules.get_active_rules().store.thresholds
        await self.event_log.record_verdict(verdict, snapshot, thresholds, tab_id=tab_id)
        await self.reporter.report_verdict(verdict, snapshot, thresholds)

    async def analyze_page(self, tab_id: Any, payload: Mapping[str, Any]) -> Optional[Verdict]:
        """Analyze an inspector payload for a tab; None if superseded."""
        try:
            snapshot = PageSnapshot.from_dict(payload)
        except AnalysisError:
            # Malformed payloads still get a cautious verdict.
            return self.engine.analyze_snapshot(payload)
        return await self.tabs.analyze(tab_id, snapshot)

    async def update_config(self, partial: Mapping[str, Any]) -> EffectiveConfig:
        """Persist local settings and apply them (rules reload included)."""
        self._adopt_config(await self.resolver.update_config(partial))
        await self.rules.reload_configuration()
        return self._config

    async def reload_configuration(self) -> EffectiveConfig:
        """Re-read policy and local settings, e.g. after a managed policy change."""
        self._adopt_config(await self.resolver.resolve())
        await self.rules.reload_configuration()
        return self._config

    async def report_false_positive(self, url: str, reason: str) -> bool:
        await self.event_log.record_event(
            false_positive_event(url, reason, self._config.cipp_tenant_id), action="reported"
        )
        return await self.reporter.report_false_positive(url, reason)

    def _health_snapshot(self) -> dict:
        """Provide a lightweight status dict for health endpoints."""
        uptime = (datetime.now(timezone.utc) - self._started_at).total_seconds()
        rules_status = self.rules.status()
        return {
            "status": "ok" if self._running else "stopped",
            "uptime_seconds": round(uptime, 1),
            "rules": rules_status,
            "rules_ready": rules_status["state"] == "ready",
            "rogue_apps": self.rogue_apps.status(),
            "tabs": self.tabs.stats(),
            "reporter": self.reporter.stats(),
            "detection": detection_metrics.get_summary(),
        }

    async def start(self):
        """Start all service components."""
        logger.info("Starting LogonGuard service...")
        self._running = True

        if isinstance(self.store, SQLiteStore):
            await self.store.connect()
            logger.info("Store connected")

        self._adopt_config(await self.resolver.resolve())
        generation = await self.rules.initialize()
        logger.info(
            "Rules ready: v%s (%s, state=%s)",
            generation.version,
            generation.source.value,
            self.rules.state.value,
        )
        self.rules.start()
        self.rogue_apps.start()

        await self.health_server.start()
        logger.info("Service running")

    async def run_forever(self):
        await self.start()
        await self._stopped.wait()

    async def stop(self):
        """Stop all service components."""
        async with self._stop_lock:
            if self._stop_task is None:
                self._stop_task = asyncio.create_task(self._stop_impl())
            stop_task = self._stop_task
        await stop_task

    async def _stop_impl(self):
        """One-shot shutdown implementation (idempotent via stop())."""
        logger.info("Stopping LogonGuard service...")
        self._running = False

        for task in self._background:
            task.cancel()
        await asyncio.gather(*self._background, return_exceptions=True)
        self._background.clear()

        await self.rules.stop()
        await self.rogue_apps.stop()
        await self.health_server.stop()
        await self.reporter.close()
        if isinstance(self.store, SQLiteStore):
            await self.store.close()

        self._stopped.set()
        logger.info("Service stopped")


# -----------------------------------------------------------------------------
# Command line
# -----------------------------------------------------------------------------

_FORM_RE = re.compile(r"<form\b([^>]*)>(.*?)</form>", re.I | re.S)
_ACTION_RE = re.compile(r"""\baction\s*=\s*["']([^"']*)["']""", re.I)
_METHOD_RE = re.compile(r"""\bmethod\s*=\s*["']?(\w+)""", re.I)
_PASSWORD_RE = re.compile(r"""type\s*=\s*["']?password""", re.I)
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.I | re.S)


def snapshot_from_html(url: str, html: str, title: Optional[str] = None) -> dict:
    """Build an inspector-style payload from a saved HTML page."""
    forms = []
    for attrs, body in _FORM_RE.findall(html):
        action = _ACTION_RE.search(attrs)
        method = _METHOD_RE.search(attrs)
        forms.append(
            {
                "action": action.group(1) if action else "",
                "method": method.group(1) if method else "get",
                "has_password": bool(_PASSWORD_RE.search(body)),
            }
        )
    if title is None:
        match = _TITLE_RE.search(html)
        title = match.group(1).strip() if match else ""
    return {"url": url, "dom_excerpt": html, "form_actions": forms, "title": title}


def _offline_generation() -> RulesGeneration:
    return RulesGeneration(
        generation=0,
        store=load_bundled_rules(),
        source=RulesSource.BUNDLED,
        source_url="",
        loaded_at=utcnow(),
    )


async def _cmd_check(settings: Settings, args: argparse.Namespace) -> int:
    payload = None
    if args.html:
        html = Path(args.html).read_text(encoding="utf-8", errors="replace")
        payload = snapshot_from_html(args.url, html, args.title)
    elif args.title:
        payload = {"url": args.url, "title": args.title}

    if args.offline:
        generation = _offline_generation()
        branding = load_branding_defaults(settings.branding_file)
        engine = VerdictEngine(lambda: generation, lambda: merge_layers(DEFAULT_CONFIG, branding))
        verdict = engine.analyze_snapshot(payload) if payload else engine.analyze_url(args.url)
    else:
        service = LogonGuardService(dataclasses.replace(settings, health_enabled=False))
        await service.start()
        try:
            await service.rules.wait_idle()
            if payload:
                verdict = service.engine.analyze_snapshot(payload)
            else:
                verdict = service.engine.analyze_url(args.url)
        finally:
            await service.stop()

    print(json.dumps(verdict.to_dict(), indent=2))
    return 0


def _cmd_rules_validate(args: argparse.Namespace) -> int:
    try:
        data = json.loads(Path(args.file).read_text(encoding="utf-8"))
        store = parse_rule_store(data)
    except (OSError, json.JSONDecodeError, RuleValidationError) as e:
        print(f"Invalid rule file: {e}")
        return 1

    print(json.dumps(store.summary(), indent=2))
    for rule_id, reason in store.diagnostics.dropped:
        print(f"- dropped {rule_id}: {reason}")
    return 0


async def _open_resolver(settings: Settings) -> tuple[SQLiteStore, ConfigResolver]:
    store = SQLiteStore(settings.db_path)
    await store.connect()
    policy = FilePolicySource(settings.policy_file) if settings.policy_file else StaticPolicySource()
    return store, ConfigResolver(store, policy, load_branding_defaults(settings.branding_file))


async def _cmd_config(settings: Settings, args: argparse.Namespace) -> int:
    document = None
    if args.config_command == "import":
        try:
            document = json.loads(Path(args.file).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            print(f"Cannot read configuration: {e}")
            return 1

    store, resolver = await _open_resolver(settings)
    try:
        if args.config_command == "export":
            output = json.dumps(await resolver.export_config(), indent=2)
            if args.output:
                Path(args.output).write_text(output + "\n", encoding="utf-8")
                logger.info("Configuration exported to %s", args.output)
            else:
                print(output)
            return 0
        if args.config_command == "import":
            try:
                config = await resolver.import_config(document)
            except ConfigImportError as e:
                print(f"Cannot import configuration: {e}")
                return 1
        else:
            config = await resolver.resolve()
    finally:
        await store.close()
    print(dump_config(config))
    return 0


async def _cmd_events(settings: Settings, args: argparse.Namespace) -> int:
    store = SQLiteStore(settings.db_path)
    await store.connect()
    try:
        entries = await SecurityEventLog(store).recent(args.limit)
    finally:
        await store.close()
    print(json.dumps(entries, indent=2))
    return 0


async def run_service(settings: Settings):
    """Run the LogonGuard service until SIGINT/SIGTERM."""
    service = LogonGuardService(settings)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(service.stop()))

    try:
        await service.run_forever()
    except KeyboardInterrupt:
        pass
    finally:
        await service.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="logonguard",
        description="Detect phishing pages impersonating the Microsoft 365 sign-in.",
    )
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("serve", help="Run the service with periodic rule refresh and health server")

    check = sub.add_parser("check", help="Analyze one URL (optionally with saved page HTML)")
    check.add_argument("url")
    check.add_argument("--html", type=Path, help="Saved page HTML to analyze")
    check.add_argument("--title", help="Page title (defaults to <title> of --html)")
    check.add_argument("--offline", action="store_true", help="Use bundled rules; no network")

    rules = sub.add_parser("rules", help="Rule file tools")
    rules_sub = rules.add_subparsers(dest="rules_command", required=True)
    validate = rules_sub.add_parser("validate", help="Validate a detection rule file")
    validate.add_argument("file", type=Path)

    config = sub.add_parser("config", help="Configuration tools")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the effective config and where each value comes from")
    export = config_sub.add_parser("export", help="Export settings and branding as JSON")
    export.add_argument("--output", "-o", type=Path, help="Write to a file instead of stdout")
    import_ = config_sub.add_parser("import", help="Apply an exported configuration to local settings")
    import_.add_argument("file", type=Path)

    events = sub.add_parser("events", help="Show recent security events from the local log")
    events.add_argument("--limit", type=int, default=50)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point."""
    args = build_parser().parse_args(argv)
    settings = load_settings()
    if args.command in (None, "serve"):
        configure_logging(settings.log_level)
    else:
        # Keep stdout clean for command output.
        configure_logging(settings.log_level, stream=sys.stderr)

    validation_errors = validate_settings(settings)
    if validation_errors:
        for err in validation_errors:
            logger.error(err)
        sys.exit(1)

    if args.command == "check":
        return asyncio.run(_cmd_check(settings, args))
    if args.command == "rules":
        return _cmd_rules_validate(args)
    if args.command == "config":
        return asyncio.run(_cmd_config(settings, args))
    if args.command == "events":
        return asyncio.run(_cmd_events(settings, args))

    asyncio.run(run_service(settings))
    return 0


if __name__ == "__main__":
    sys.exit(main())
