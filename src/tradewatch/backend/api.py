from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional

import aiohttp
import structlog

from tradewatch.alerts.rules import to_finite

log = structlog.get_logger("backend")

SYMBOLS_PATH = "/api/worker/symbols"
ALERTS_PATH = "/api/alerts/worker"
SETTINGS_PATH = "/api/worker/settings"


class BackendError(RuntimeError):
    """Non-2xx answer (or unexpected payload) from the backend."""

    def __init__(self, message: str, *, status: Optional[int] = None, body: str = "", url: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body
        self.url = url


def normalize_base_url(url: str) -> str:
    return url[:-1] if url and url.endswith("/") else url


async def _maybe_text(resp: aiohttp.ClientResponse) -> str:
    try:
        return await resp.text()
    except Exception:
        return "<no body>"


def _field(payload: Any, key: str, default: Any = None) -> Any:
    """payload[key] for an object body, default for null; any other shape is a BackendError."""
    if payload is None:
        return default
    if not isinstance(payload, Mapping):
        raise BackendError(f"Expected a JSON object or list, got {type(payload).__name__}", body=str(payload)[:500])
    return payload.get(key, default)


@dataclass(slots=True, frozen=True)
class ThresholdSettings:
    threshold: float
    updated_at: Optional[str]


class BackendClient:
    """
    Bearer-authenticated GETs against the backend: tracked symbols, alert
    definitions and worker settings. Raises BackendError on non-2xx; callers
    log and keep their last known-good state.
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

    async def __aenter__(self) -> "BackendClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    async def get_json(self, path: str) -> Any:
        await self.start()
        url = f"{self.base_url}{path}"
        log.debug("backend_get", url=url)
        headers = {"Authorization": f"Bearer {self.token}"}
        async with self._session.get(url, headers=headers) as resp:
            if not 200 <= resp.status < 300:
                body = await _maybe_text(resp)
                raise BackendError(
                    f"GET {path} failed ({resp.status}): {body[:500]}",
                    status=resp.status, body=body, url=url,
                )
            return await resp.json(content_type=None)

    # ---------- sources ----------

    async def fetch_symbols(self, path: str = SYMBOLS_PATH) -> list[str]:
        """List of raw symbol strings; normalisation is the reconciler's job."""
        payload = await self.get_json(path)
        items = payload if isinstance(payload, list) else _field(payload, "symbols")
        if not isinstance(items, list):
            raise BackendError("Symbols endpoint returned unexpected payload", url=path)
        out: list[str] = []
        for it in items:
            if isinstance(it, str):
                out.append(it)
            elif isinstance(it, Mapping) and it.get("symbol"):
                out.append(str(it["symbol"]))
        log.info("symbols_fetched", count=len(out), path=path)
        return out

    async def fetch_alerts(self, path: str = ALERTS_PATH) -> list[dict]:
        payload = await self.get_json(path)
        alerts = payload if isinstance(payload, list) else _field(payload, "alerts", [])
        if not isinstance(alerts, list):
            raise BackendError("Alerts endpoint returned unexpected payload", url=path)
        log.info("alerts_fetched", count=len(alerts))
        return alerts

    async def fetch_settings(self, path: str = SETTINGS_PATH) -> dict:
        payload = await self.get_json(path)
        if isinstance(payload, Mapping) and isinstance(payload.get("settings"), Mapping):
            payload = payload["settings"]
        if not isinstance(payload, Mapping):
            raise BackendError("Settings endpoint returned unexpected payload", url=path)
        return dict(payload)


def resolve_threshold_settings(raw: Mapping[str, Any], market: str) -> Optional[ThresholdSettings]:
    """
    Pick the volume threshold for `market` ("spot" | "futures") out of a settings
    object. Market-specific keys win over generic ones. None if no finite value.
    """
    candidates = (
        f"{market}ThresholdUsd",
        f"{market}Threshold",
        "thresholdUsd",
        "threshold",
    )
    thr = None
    for k in candidates:
        thr = to_finite(raw.get(k))
        if thr is not None:
            break
    if thr is None:
        return None
    updated = raw.get("updatedAt", raw.get("updated_at"))
    return ThresholdSettings(threshold=thr, updated_at=str(updated) if updated is not None else None)
