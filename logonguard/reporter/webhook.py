"""Webhook delivery of detection events to a CIPP server."""

from __future__ import annotations

import json
import logging
from typing import Callable, Optional

import httpx

from .. import __version__
from ..analyzer.models import PageSnapshot, Verdict
from ..config import EffectiveConfig
from ..errors import EventDeliveryError
from ..rules.schema import Thresholds
from .events import EVENT_VERSION, events_for_verdict, false_positive_event

logger = logging.getLogger(__name__)

ConfigProvider = Callable[[], EffectiveConfig]
ClientFactory = Callable[[float], httpx.AsyncClient]


class WebhookReporter:
    """
    POSTs event envelopes to the configured CIPP server.

    Delivery is best effort: failures are logged and counted, never raised
    back into the analysis path.
    """

    timeout_seconds: float = 5.0
    user_agent: str = f"LogonGuard/{__version__}"

    def __init__(
        self,
        config_provider: ConfigProvider,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config_provider = config_provider
        self._client_factory = client_factory
        self._client: Optional[httpx.AsyncClient] = None
        self.sent = 0
        self.failed = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            if self._client_factory is not None:
                self._client = self._client_factory(self.timeout_seconds)
            else:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout_seconds),
                    headers={"User-Agent": self.user_agent},
                    follow_redirects=True,
                )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _endpoint(self, config: EffectiveConfig) -> Optional[str]:
        if not config.enable_cipp_reporting:
            return None
        url = (config.cipp_server_url or "").strip()
        return url or None

    async def _post(self, url: str, event: dict) -> None:
        client = await self._get_client()
        try:
            resp = await client.post(
                url,
                content=json.dumps(event),
                headers={
                    "Content-Type": "application/json",
                    "X-Webhook-Type": event["type"],
                    "X-Webhook-Version": EVENT_VERSION,
                },
            )
            resp.raise_for_status()
        except httpx.TimeoutException as exc:
            raise EventDeliveryError(f"{event['type']} to {url}: timed out") from exc
        except httpx.HTTPStatusError as exc:
            raise EventDeliveryError(
                f"{event['type']} to {url}: HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise EventDeliveryError(f"{event['type']} to {url}: {exc}") from exc

    async def send(self, event: dict) -> bool:
        """Deliver one event. Returns True when the server accepted it."""
        config = self.config_provider()
        url = self._endpoint(config)
        if url is None:
            return False
        if config.cipp_tenant_id and "tenantId" not in event:
            event = {**event, "tenantId": config.cipp_tenant_id}
        try:
            await self._post(url, event)
        except EventDeliveryError as e:
            self.failed += 1
            logger.warning(f"Event delivery failed: {e}")
            return False
        self.sent += 1
        logger.debug("Delivered %s event for %s", event["type"], event["data"]["url"])
        return True

    async def report_verdict(
        self,
        verdict: Verdict,
        snapshot: PageSnapshot,
        thresholds: Optional[Thresholds] = None,
    ) -> int:
        """Send every event a verdict maps to; returns how many were delivered."""
        config = self.config_provider()
        if self._endpoint(config) is None:
            return 0
        delivered = 0
        for event in events_for_verdict(verdict, snapshot, thresholds, config.cipp_tenant_id):
            if await self.send(event):
                delivered += 1
        return delivered

    async def report_false_positive(self, url: str, reason: str) -> bool:
        config = self.config_provider()
        return await self.send(false_positive_event(url, reason, config.cipp_tenant_id))

    def stats(self) -> dict:
        return {"events_sent": self.sent, "events_failed": self.failed}
