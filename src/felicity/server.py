"""Read-only HTTP endpoint serving the poller cache as JSON."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from aiohttp import web

from felicity._constants import DEFAULT_HOST, DEFAULT_POLL_INTERVAL, DEFAULT_PORT, DEFAULT_TIMEOUT
from felicity.client import Client
from felicity.worker import Poller

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """State shared with the request handler.

    ``poller`` stays ``None`` until startup has built it; until then, and
    until its first cycle completes, requests get 503.
    """

    poller: Poller | None = None


CONTEXT_KEY = web.AppKey("context", AppContext)


async def handle_cache(request: web.Request) -> web.Response:
    """Return every cached device entry; GET only."""
    if request.method != "GET":
        return web.Response(status=405, text="Method Not Allowed", headers={"Allow": "GET"})
    poller = request.app[CONTEXT_KEY].poller
    if poller is None or not poller.ready:
        return web.Response(status=503, text="Service Unavailable")
    return web.json_response([entry.to_dict() for entry in poller.get_cache()])


def create_app(context: AppContext) -> web.Application:
    """Build the application; every path serves the same cache view."""
    app = web.Application()
    app[CONTEXT_KEY] = context
    app.router.add_route("*", "/{tail:.*}", handle_cache)
    return app


async def serve(
    account_id: str,
    password: str,
    *,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
    interval: float = DEFAULT_POLL_INTERVAL,
    token_file: Path | str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> None:
    """Listen on *host*:*port*, then start polling; runs until cancelled."""
    context = AppContext()
    runner = web.AppRunner(create_app(context))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("Server running at http://%s:%d/", host, port)

    client = Client.from_credentials(account_id, password, token_file=token_file, timeout=timeout)
    poller = Poller(client, interval=interval)
    context.poller = poller
    try:
        await poller.start()
    finally:
        await poller.stop()
        await runner.cleanup()
