"""
HTTP front end of the cache proxy, built on aiohttp.web.

Every GET is proxied through `CacheProxy.handle_fetch`; control messages are
POSTed as JSON `{type, data}` to CONTROL_PATH.
"""

import json
import logging

from aiohttp import web

from sfloader.exceptions import UpstreamUnavailable

from .service import CacheProxy

log = logging.getLogger(__name__)

CONTROL_PATH = "/__sfloader__/control"

PROXY_KEY = web.AppKey("proxy", CacheProxy)
AUTO_ACTIVATE_KEY = web.AppKey("auto_activate", bool)


async def handle_control(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    try:
        message = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return web.json_response(
            {"success": False, "error": "Body must be a JSON object."}, status=400
        )
    status, body = await proxy.handle_message(message)
    return web.json_response(body, status=status)


async def handle_fetch(request: web.Request) -> web.Response:
    proxy = request.app[PROXY_KEY]
    path = request.rel_url.path_qs
    try:
        result = await proxy.handle_fetch(path)
    except UpstreamUnavailable as e:
        log.warning(f"[yellow]⚠ {e}[/yellow]")
        return web.Response(status=502, text=str(e))
    return web.Response(
        status=result.status,
        body=result.body,
        headers={"Content-Type": result.content_type, "X-Cache": result.cache_status},
    )


async def _on_startup(app: web.Application) -> None:
    proxy = app[PROXY_KEY]
    await proxy.install()
    if app[AUTO_ACTIVATE_KEY]:
        await proxy.activate()
    else:
        log.info("Cache proxy installed and waiting. Send SKIP_WAITING to activate.")


async def _on_cleanup(app: web.Application) -> None:
    await app[PROXY_KEY].close()


def create_app(proxy: CacheProxy, auto_activate: bool = True) -> web.Application:
    """Builds the proxy application; install (and activation) run on startup."""
    app = web.Application()
    app[PROXY_KEY] = proxy
    app[AUTO_ACTIVATE_KEY] = auto_activate
    app.router.add_post(CONTROL_PATH, handle_control)
    app.router.add_get("/{tail:.*}", handle_fetch)
    app.on_startup.append(_on_startup)
    app.on_cleanup.append(_on_cleanup)
    return app


def run_proxy(
    proxy: CacheProxy, host: str, port: int, auto_activate: bool = True
) -> None:
    """Serves the proxy until interrupted."""
    log.info(
        f"[bold cyan]Serving cache proxy on http://{host}:{port} "
        f"for {proxy.upstream_url}[/bold cyan]"
    )
    web.run_app(
        create_app(proxy, auto_activate),
        host=host,
        port=port,
        print=None,
        access_log=None,
    )
