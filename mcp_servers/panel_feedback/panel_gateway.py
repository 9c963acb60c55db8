from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from .panel import FeedbackPanel

_LOGGER = logging.getLogger("panel_feedback.panel_gateway")

_MAX_MESSAGE_BYTES = 64 * 1024 * 1024


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The panel gateway requires the 'websockets' Python package. Install it (pip install websockets)."
        ) from exc


class _ViewConnection:
    """One attached view. Outgoing messages go through a queue so they stay ordered."""

    def __init__(self, ws: Any) -> None:
        self.ws = ws
        self.queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

    def post(self, payload: dict[str, Any]) -> None:
        self.queue.put_nowait(payload)

    async def writer(self) -> None:
        while True:
            payload = await self.queue.get()
            if payload is None:
                return
            try:
                await self.ws.send(json.dumps(payload, ensure_ascii=False, separators=(",", ":")))
            except Exception:  # noqa: BLE001
                # Connection is gone; the reader loop ends on its own.
                return


class PanelGateway:
    """Local WebSocket endpoint for the panel view.

    - The view connects, receives `showMessage` / `updateHistory` events, and
      sends `submit` / `optionSelected` / `clearHistory` / `ready`.
    - One view at a time: a new connection replaces the previous one.
    """

    def __init__(self, panel: FeedbackPanel, *, host: str = "127.0.0.1", port: int = 0) -> None:
        self.panel = panel
        self.host = host
        self._requested_port = int(port)
        self.port = 0
        self._server: Any | None = None
        self._active: _ViewConnection | None = None

    @property
    def listening(self) -> bool:
        return self._server is not None and self.port > 0

    async def start(self) -> int:
        if self._server is not None:
            return self.port
        websockets = _import_websockets()
        server = await websockets.serve(
            self._handler,
            self.host,
            self._requested_port,
            max_size=_MAX_MESSAGE_BYTES,
            ping_interval=None,
        )
        self._server = server
        sockets = list(getattr(server, "sockets", None) or [])
        self.port = int(sockets[0].getsockname()[1]) if sockets else 0
        _LOGGER.info("panel gateway on %s:%s", self.host, self.port)
        return self.port

    async def stop(self) -> None:
        server = self._server
        self._server = None
        self.port = 0
        if server is None:
            return
        try:
            server.close()
            await server.wait_closed()
        except Exception:  # noqa: BLE001
            _LOGGER.debug("panel gateway close failed", exc_info=True)

    async def _handler(self, ws: Any) -> None:
        conn = _ViewConnection(ws)
        previous = self._active
        self._active = conn
        if previous is not None:
            previous.post(None)
            with contextlib.suppress(Exception):
                await previous.ws.close()

        writer = asyncio.get_running_loop().create_task(conn.writer())
        self.panel.attach_view(conn.post)
        try:
            async for raw in ws:
                if isinstance(raw, (bytes, bytearray)):
                    raw = raw.decode("utf-8", "replace")
                try:
                    msg = json.loads(raw)
                except Exception:
                    _LOGGER.debug("dropping non-JSON view message")
                    continue
                self.panel.handle_view_message(msg)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("view connection ended: %s", exc)
        finally:
            self.panel.detach_view(conn.post)
            if self._active is conn:
                self._active = None
            conn.post(None)
            with contextlib.suppress(Exception):
                await writer
