from __future__ import annotations

import asyncio
import logging
import signal
from typing import Optional

from aiohttp import web
from dotenv import load_dotenv

from .app import GroupSentry
from .config import load_settings
from .database import get_database_info
from .logging_setup import setup_logging

log = logging.getLogger("groupsentry.main")


async def _health_payload(sentry: GroupSentry) -> dict:
    payload = {"ok": True, "service": "groupsentry", **sentry.status()}
    try:
        payload["database"] = await get_database_info(sentry.settings.sqlite_path)
    except Exception as e:
        payload["ok"] = False
        payload["database_error"] = str(e)
    return payload


async def _serve_health(sentry: GroupSentry, port: int) -> web.AppRunner:
    """Expose ``/`` and ``/healthz`` with poller state and database details."""

    async def handle(_: web.Request) -> web.Response:
        payload = await _health_payload(sentry)
        return web.json_response(payload, status=200 if payload["ok"] else 503)

    app = web.Application()
    app.router.add_get("/", handle)
    app.router.add_get("/healthz", handle)

    runner = web.AppRunner(app, access_log=None)
    await runner.setup()
    await web.TCPSite(runner, "0.0.0.0", port).start()
    log.info("Health endpoint on port %d", port)
    return runner


def _stop_on_signals(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows / limited environments
            pass


async def main_async() -> None:
    load_dotenv()
    settings = load_settings()
    setup_logging(settings.log_level)

    sentry = GroupSentry(settings)
    # Database problems are fatal: setup raises and the process exits.
    await sentry.setup()

    stop_event = asyncio.Event()
    _stop_on_signals(stop_event)

    runner: Optional[web.AppRunner] = None
    try:
        if settings.health_port > 0:
            runner = await _serve_health(sentry, settings.health_port)
        await sentry.start()
        await stop_event.wait()
        log.info("Stop requested; shutting down")
    finally:
        await sentry.close()
        if runner is not None:
            await runner.cleanup()


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()
