"""Health, readiness and metrics endpoints for the LogonGuard service.

/healthz  always 200 while the process serves requests
/readyz   200 once a remote or cached rule set is active, 503 while only
          bundled or minimal rules are loaded
/metrics  numeric status fields as Prometheus-style gauges
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterator, Optional

from aiohttp import web

logger = logging.getLogger(__name__)

METRIC_PREFIX = "logonguard"


def _metric_key(key: Any) -> str:
    return str(key).replace(".", "_").replace("-", "_").replace(" ", "_")


def flatten_metrics(data: dict, prefix: str = "") -> Iterator[tuple[str, float]]:
    """Yield (name, value) for numeric leaves; nested dicts join with '_'."""
    for key, value in data.items():
        name = f"{prefix}_{_metric_key(key)}" if prefix else _metric_key(key)
        if isinstance(value, bool):
            yield name, int(value)
        elif isinstance(value, (int, float)):
            yield name, value
        elif isinstance(value, dict):
            yield from flatten_metrics(value, name)


class HealthServer:
    """aiohttp server exposing service status to health checks and scrapers."""

    def __init__(
        self,
        host: str,
        port: int,
        status_provider: Callable[[], dict],
        enabled: bool = True,
        ready_key: str = "rules_ready",
    ):
        self.host = host
        self.port = port
        self.status_provider = status_provider
        self.enabled = enabled
        self.ready_key = ready_key
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.add_routes(
            [
                web.get("/healthz", self._handle_health),
                web.get("/readyz", self._handle_ready),
                web.get("/metrics", self._handle_metrics),
            ]
        )
        return app

    async def start(self):
        """Bind and serve unless disabled."""
        if not self.enabled:
            logger.info("Health server disabled")
            return

        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self.port)
        await site.start()
        self._runner, self._site = runner, site
        logger.info("Health endpoints on http://%s:%s (/healthz, /readyz, /metrics)", self.host, self.port)

    async def stop(self):
        runner, self._runner, self._site = self._runner, None, None
        if runner is not None:
            # cleanup() stops every site the runner owns.
            await runner.cleanup()

    def _status(self) -> dict:
        try:
            return dict(self.status_provider() or {})
        except Exception as exc:
            logger.warning("Health status provider failed: %s", exc)
            return {"status": "error", "message": str(exc)}

    async def _handle_health(self, request: web.Request) -> web.Response:
        payload = self._status()
        payload.setdefault("status", "ok")
        return web.json_response(payload)

    async def _handle_ready(self, request: web.Request) -> web.Response:
        payload = self._status()
        ready = bool(payload.get(self.ready_key))
        rules = payload.get("rules") or {}
        body = {
            "ready": ready,
            "state": rules.get("state", "unknown"),
            "source": rules.get("source", "unknown"),
        }
        return web.json_response(body, status=200 if ready else 503)

    async def _handle_metrics(self, request: web.Request) -> web.Response:
        lines = [f"{METRIC_PREFIX}_{name} {value}" for name, value in flatten_metrics(self._status())]
        if not lines:
            lines.append(f'{METRIC_PREFIX}_status{{state="empty"}} 1')
        return web.Response(text="\n".join(lines) + "\n")
