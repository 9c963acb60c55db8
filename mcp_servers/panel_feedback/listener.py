"""Loopback HTTP listener on an OS-assigned port.

Routes (POST only, any path accepted):
- /submit  -> broker.submit (returns immediately)
- /poll    -> broker.poll (never waits)
- anything else -> legacy JSON-RPC envelope (initialize / tools/list / tools/call)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

from .broker import RequestBroker, SubmitError
from .contract import (
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    TOOL_NAME,
    initialize_result,
    rpc_error,
    rpc_result,
    select_protocol,
    tools_list,
)

_LOGGER = logging.getLogger("panel_feedback.listener")

# Pasted screenshots travel inline as base64.
MAX_BODY_BYTES = 64 * 1024 * 1024

CORS_HEADERS: dict[str, str] = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@web.middleware
async def cors_middleware(request: web.Request, handler: Handler) -> web.StreamResponse:
    try:
        resp = await handler(request)
    except web.HTTPException as exc:
        resp = exc
    for k, v in CORS_HEADERS.items():
        resp.headers[k] = v
    return resp


class FeedbackListener:
    def __init__(self, broker: RequestBroker, *, host: str = "127.0.0.1", port: int = 0) -> None:
        self.broker = broker
        self.host = host
        self._requested_port = int(port)
        self.port = 0
        self._runner: web.AppRunner | None = None

    @property
    def listening(self) -> bool:
        return self._runner is not None and self.port > 0

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware], client_max_size=MAX_BODY_BYTES)
        app.router.add_route("*", "/{tail:.*}", self._handle)
        return app

    async def start(self) -> int:
        """Bind and return the port. Raises OSError when the bind fails."""
        if self._runner is not None:
            return self.port
        runner = web.AppRunner(self.build_app(), access_log=None)
        await runner.setup()
        site = web.TCPSite(runner, self.host, self._requested_port)
        try:
            await site.start()
        except Exception:
            await runner.cleanup()
            raise
        self._runner = runner
        addresses = runner.addresses
        self.port = int(addresses[0][1]) if addresses else 0
        _LOGGER.info("feedback listener on %s:%s", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        runner = self._runner
        self._runner = None
        self.port = 0
        if runner is not None:
            await runner.cleanup()

    # ─────────────────────────────────────────────────────────────────────────
    # HTTP
    # ─────────────────────────────────────────────────────────────────────────

    async def _handle(self, request: web.Request) -> web.StreamResponse:
        if request.method == "OPTIONS":
            return web.Response(status=200)
        if request.method != "POST":
            return web.Response(status=405, text="Method Not Allowed")

        raw = await request.read()
        try:
            data = json.loads(raw.decode("utf-8"))
        except Exception:
            return web.json_response(rpc_error(None, PARSE_ERROR, "Parse error"), status=400)

        try:
            if request.path == "/submit":
                return self._handle_submit(data)
            if request.path == "/poll":
                return web.json_response(self.broker.poll(data.get("requestId") if isinstance(data, dict) else None))
            return web.json_response(await self._handle_rpc(data))
        except Exception as exc:  # noqa: BLE001
            _LOGGER.exception("request handling failed path=%s", request.path)
            return web.json_response({"status": "error", "error": str(exc)}, status=500)

    def _handle_submit(self, data: Any) -> web.Response:
        if not isinstance(data, dict):
            return web.json_response({"status": "error", "error": "Request body must be an object"}, status=400)
        try:
            result = self.broker.submit(data.get("requestId"), data.get("params"))
        except SubmitError as exc:
            return web.json_response({"status": "error", "error": str(exc)}, status=400)
        return web.json_response(result)

    async def _handle_rpc(self, data: Any) -> dict[str, Any]:
        if not isinstance(data, dict):
            return rpc_error(None, METHOD_NOT_FOUND, "Method not found")

        request_id = data.get("id")
        method = data.get("method")
        params = data.get("params") if isinstance(data.get("params"), dict) else {}

        if method == "initialize":
            return rpc_result(request_id, initialize_result(select_protocol(params.get("protocolVersion"))))
        if method == "tools/list":
            return rpc_result(request_id, {"tools": tools_list()})
        if method == "tools/call":
            if params.get("name") != TOOL_NAME:
                return rpc_error(request_id, METHOD_NOT_FOUND, "Tool not found")
            try:
                content = await self.broker.call_tool(params.get("arguments") or {})
            except Exception as exc:  # noqa: BLE001
                _LOGGER.info("legacy tools/call failed: %s", exc)
                return rpc_error(request_id, SERVER_ERROR, str(exc) or exc.__class__.__name__)
            return rpc_result(request_id, {"content": content})
        return rpc_error(request_id, METHOD_NOT_FOUND, "Method not found")
