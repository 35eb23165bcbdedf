"""Helpers for running an aiohttp application on a TCP port."""
from __future__ import annotations

import logging

from aiohttp import web

logger = logging.getLogger(__name__)


def resolve_port(site: web.TCPSite, runner: web.AppRunner) -> int | None:
    """Actual bound port; needed when the requested port was 0."""
    sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
    if sockets:
        return sockets[0].getsockname()[1]
    addresses = getattr(runner, "addresses", None) or ()
    if addresses:
        first = addresses[0]
        if isinstance(first, tuple) and len(first) >= 2:
            return int(first[1])
    return None


async def start_site(
    app: web.Application, host: str, port: int, name: str,
) -> tuple[web.AppRunner, int]:
    """Set up and start *app*. Returns the runner and the bound port."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    try:
        await site.start()
    except OSError:
        await runner.cleanup()
        raise
    actual_port = resolve_port(site, runner)
    if actual_port is None:
        await runner.cleanup()
        raise RuntimeError(f"{name} started but no listening socket was reported.")
    logger.info("%s listening on %s:%d", name, host, actual_port)
    return runner, actual_port
