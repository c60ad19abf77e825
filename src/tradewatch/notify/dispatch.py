from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import aiohttp
import structlog

from tradewatch.backend.api import normalize_base_url

log = structlog.get_logger("dispatch")

VOLUME_TRIGGER_PATH = "/api/alerts/trigger"
PRICE_TRIGGER_PATH = "/api/alerts/trigger-single"


class DispatchError(RuntimeError):
    """Backend refused a trigger call (non-2xx)."""

    def __init__(self, status: int, body: str, url: str):
        super().__init__(f"dispatch to {url} failed ({status}): {body[:500]}")
        self.status = status
        self.body = body
        self.url = url


@dataclass(slots=True)
class DispatchResult:
    status: int
    delivered: Optional[int] = None
    failed: Optional[int] = None
    body: Any = None


def _count(body: Any, *keys: str) -> Optional[int]:
    if not isinstance(body, Mapping):
        return None
    for k in keys:
        v = body.get(k)
        if isinstance(v, bool):
            continue
        if isinstance(v, (int, float)):
            return int(v)
    return None


class DispatchClient:
    """
    Single-shot POST of a trigger payload to the backend.

    No retries: by the time send() runs the caller has already committed the
    cooldown, so a retry could only double-notify or pile up.
    """

    def __init__(self, base_url: str, token: str, *, timeout_s: float = 10.0, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = normalize_base_url(base_url)
        self.token = token
        self.timeout_s = timeout_s
        self._session = session
        self._owns_session = session is None

    async def start(self) -> None:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.timeout_s)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True

    async def stop(self) -> None:
        if self._session and self._owns_session:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> "DispatchClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def send(self, payload: Mapping[str, Any], path: str = VOLUME_TRIGGER_PATH) -> DispatchResult:
        await self.start()
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.token}"}
        async with self._session.post(url, json=dict(payload), headers=headers) as resp:
            text = await resp.text()
            if not 200 <= resp.status < 300:
                raise DispatchError(resp.status, text, url)
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = text
        result = DispatchResult(
            status=resp.status,
            delivered=_count(body, "delivered", "sent", "count"),
            failed=_count(body, "failed", "errors"),
            body=body,
        )
        log.debug("dispatch_ok", url=url, status=result.status, delivered=result.delivered)
        return result
