"""Time-bounded JSON downloads for rule and feed sources."""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

import httpx

from ..constants import DEFAULT_FETCH_TIMEOUT_SECONDS
from ..errors import RuleFetchError

logger = logging.getLogger(__name__)

USER_AGENT = "LogonGuard/1.0 (+rules-updater)"

ClientFactory = Callable[[float], httpx.AsyncClient]


def default_client_factory(timeout_seconds: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_seconds),
        headers={"User-Agent": USER_AGENT, "Accept": "application/json"},
        follow_redirects=True,
    )


async def fetch_json(
    url: str,
    timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS,
    client_factory: Optional[ClientFactory] = None,
) -> Any:
    """
    GET a JSON document.

    Every failure mode (timeout, transport error, non-2xx status, body that
    is not JSON) is raised as RuleFetchError so callers handle one type.
    """
    factory = client_factory or default_client_factory
    try:
        async with factory(timeout_seconds) as client:
            resp = await client.get(url, headers={"Cache-Control": "no-cache"})
            resp.raise_for_status()
            return resp.json()
    except httpx.TimeoutException as exc:
        raise RuleFetchError(url, f"timed out after {timeout_seconds}s") from exc
    except httpx.HTTPStatusError as exc:
        status = exc.response.status_code
        raise RuleFetchError(url, f"HTTP {status}", status_code=status) from exc
    except httpx.HTTPError as exc:
        raise RuleFetchError(url, f"request failed: {exc}") from exc
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise RuleFetchError(url, f"invalid JSON: {exc}") from exc
