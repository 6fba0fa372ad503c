#!/usr/bin/env python3
"""
aiohttp front end of the aggregation service.

- `/ws/bridge` ingests bridge envelopes, one JSON object per text frame
- `/ws/observe` pushes listener snapshots to a connected observer
- `/api/...` exposes the current snapshot, blocklist export/import and the
  dedupe switch
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional, Set

import aiohttp
from aiohttp import web

from .blocklist import EXPORT_FILENAMES, LIST_KEYS
from .bridge import BridgeReceiver
from .errors import InvalidBlocklistFile, ObserverClosed
from .logger import get_logger
from .service import AggregationService

logger = get_logger("server")


class WebSocketObserver:
    """Observer channel backed by a server-side websocket."""

    def __init__(self, ws: web.WebSocketResponse):
        self.ws = ws
        self._sends: Set["asyncio.Future[Any]"] = set()

    def post_message(self, message: Dict[str, Any]) -> None:
        if self.ws.closed:
            raise ObserverClosed("observer websocket is closed")
        future = asyncio.ensure_future(self.ws.send_json(message))
        self._sends.add(future)
        future.add_done_callback(self._sent)

    def _sent(self, future: "asyncio.Future[Any]") -> None:
        self._sends.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.debug("Observer send failed: %s", future.exception())

    async def drain(self) -> None:
        if self._sends:
            await asyncio.gather(*list(self._sends), return_exceptions=True)


def _kind_from(request: web.Request) -> str:
    kind = request.match_info["kind"]
    if kind not in LIST_KEYS:
        raise web.HTTPNotFound(
            text=json.dumps({"success": False, "error": f"Unknown blocklist kind: {kind}"}),
            content_type="application/json",
        )
    return kind


def register_routes(app: web.Application, service: AggregationService) -> None:
    receiver = BridgeReceiver(service)

    async def handle_bridge(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        logger.info("Bridge connected from %s", request.remote)
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                receiver.dispatch_json(msg.data)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Bridge websocket error: %s", ws.exception())
                break
        logger.info("Bridge from %s disconnected", request.remote)
        return ws

    async def handle_observe(request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        observer = WebSocketObserver(ws)
        service.connect_observer(observer)
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    service.observer_request(observer)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    break
        finally:
            service.disconnect_observer(observer)
            await observer.drain()
        return ws

    async def handle_listeners(request: web.Request) -> web.Response:
        return web.json_response(service.snapshot_for_observer().to_message())

    async def handle_export(request: web.Request) -> web.Response:
        kind = _kind_from(request)
        response = web.json_response(service.blocklists.export_data(kind))
        response.headers["Content-Disposition"] = f'attachment; filename="{EXPORT_FILENAMES[kind]}"'
        return response

    async def handle_import(request: web.Request) -> web.Response:
        kind = _kind_from(request)
        try:
            imported = service.blocklists.import_json(kind, await request.text())
        except InvalidBlocklistFile as e:
            return web.json_response({"success": False, "error": str(e)}, status=400)
        return web.json_response({"success": True, "imported": imported, "entries": service.blocklists.entries(kind)})

    async def handle_dedupe(request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except ValueError:
            return web.json_response({"success": False, "error": "Expected JSON body."}, status=400)
        if not isinstance(body, dict) or not isinstance(body.get("enabled"), bool):
            return web.json_response({"success": False, "error": "Body must be {\"enabled\": bool}."}, status=400)
        service.set_dedupe(body["enabled"])
        return web.json_response({"success": True, "dedupeEnabled": service.dedupe_enabled})

    app.router.add_get("/ws/bridge", handle_bridge)
    app.router.add_get("/ws/observe", handle_observe)
    app.router.add_get("/api/listeners", handle_listeners)
    app.router.add_get("/api/blocklist/{kind}", handle_export)
    app.router.add_post("/api/blocklist/{kind}", handle_import)
    app.router.add_post("/api/settings/dedupe", handle_dedupe)


def create_app(service: AggregationService) -> web.Application:
    app = web.Application()
    register_routes(app, service)

    async def on_startup(app: web.Application) -> None:
        service.start()

    async def on_cleanup(app: web.Application) -> None:
        service.close(flush=True)
        if service.reporter is not None:
            await service.reporter.close()

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


async def start_server(service: AggregationService, host: str = "127.0.0.1", port: int = 8765) -> web.AppRunner:
    """Start serving and return the runner; call `runner.cleanup()` to stop."""
    runner = web.AppRunner(create_app(service))
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    logger.info("postmessage-tracker listening on http://%s:%d", host, port)
    return runner


async def run_server(
    service: AggregationService,
    host: str = "127.0.0.1",
    port: int = 8765,
    stop: Optional[asyncio.Event] = None,
) -> None:
    """Serve until `stop` is set or the task is cancelled."""
    runner = await start_server(service, host, port)
    try:
        await (stop or asyncio.Event()).wait()
    finally:
        await runner.cleanup()
