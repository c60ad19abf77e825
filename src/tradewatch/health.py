from __future__ import annotations

import hmac
import time
from typing import Iterable, Optional

import structlog
from aiohttp import web

from tradewatch.workers.base import DispatchingWorker
from tradewatch.workers.volume import VolumeAlertWorker

log = structlog.get_logger("health")

WORKERS_KEY = web.AppKey("workers", list)
ADMIN_TOKEN_KEY = web.AppKey("admin_token", str)
STARTED_AT_KEY = web.AppKey("started_at", float)


def _stream_status(w: DispatchingWorker) -> dict:
    stream = getattr(w, "stream", None)
    if stream is None:
        return {}
    age = stream.last_message_age_s()
    return {
        "state": stream.state.value,
        "symbols": len(stream.symbols),
        "healthy": stream.healthy(),
        "attempts": stream.attempts,
        "lastMessageAgeS": round(age, 3) if age != float("inf") else None,
        "inflight": w.inflight,
        "fired": w.stats.fired,
        "failed": w.stats.failed,
    }


async def healthz(request: web.Request) -> web.Response:
    workers: list[DispatchingWorker] = request.app[WORKERS_KEY]
    streams = {w.name: _stream_status(w) for w in workers}
    ok = all(s.get("healthy", False) for s in streams.values()) if streams else True
    return web.json_response({
        "status": "ok" if ok else "degraded",
        "uptime": round(time.monotonic() - request.app[STARTED_AT_KEY], 3),
        "streams": streams,
    })


def _authorized(request: web.Request) -> bool:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token:
        return False
    return hmac.compare_digest(token.strip(), request.app[ADMIN_TOKEN_KEY])


async def refresh_settings(request: web.Request) -> web.Response:
    if not _authorized(request):
        return web.json_response({"error": "unauthorized"}, status=401)
    applied: dict[str, bool] = {}
    for w in request.app[WORKERS_KEY]:
        if isinstance(w, VolumeAlertWorker):
            applied[w.name] = await w.refresh_settings()
    log.info("admin_refresh_settings", applied=applied)
    return web.json_response({"applied": applied})


def create_app(workers: Iterable[DispatchingWorker], admin_token: str) -> web.Application:
    app = web.Application()
    app[WORKERS_KEY] = list(workers)
    app[ADMIN_TOKEN_KEY] = admin_token
    app[STARTED_AT_KEY] = time.monotonic()
    app.router.add_get("/", healthz)
    app.router.add_get("/healthz", healthz)
    app.router.add_post("/admin/refresh-settings", refresh_settings)
    return app


class HealthServer:
    def __init__(self, app: web.Application, port: int, host: str = "0.0.0.0"):
        self.app = app
        self.port = port
        self.host = host
        self._runner: Optional[web.AppRunner] = None

    async def start(self) -> None:
        self._runner = web.AppRunner(self.app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("health_server_listening", port=self.port)

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
