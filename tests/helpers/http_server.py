from contextlib import asynccontextmanager

from aiohttp import web
from aiohttp.test_utils import TestServer


@asynccontextmanager
async def serve(routes):
    """
    Spin up a throwaway aiohttp server.
    routes: list of (method, path, handler); yields (base_url, requests_seen).
    """
    seen: list[dict] = []

    @web.middleware
    async def record(request, handler):
        body = await request.text()
        seen.append({
            "method": request.method,
            "path": request.path_qs,
            "auth": request.headers.get("Authorization"),
            "body": body,
        })
        return await handler(request)

    app = web.Application(middlewares=[record])
    for method, path, handler in routes:
        app.router.add_route(method, path, handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("")).rstrip("/"), seen
    finally:
        await server.close()
