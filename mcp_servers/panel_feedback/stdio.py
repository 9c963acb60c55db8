"""
MCP stdio server for the feedback panel (helper process).

Reads line-delimited JSON-RPC from stdin and answers on stdout. `tools/call`
resolves the target window and runs submit/poll against it, so the window's
HTTP connection is never held open while the human thinks.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from typing import Any

from .config import FeedbackConfig
from .contract import (
    METHOD_NOT_FOUND,
    SERVER_ERROR,
    TOOL_NAME,
    initialize_result,
    rpc_error,
    rpc_result,
    select_protocol,
    tools_list,
)
from .helper import FeedbackClient, HelperError, WindowTarget, resolve_from_env

logger = logging.getLogger("panel_feedback.stdio")


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    line = (json.dumps(payload, ensure_ascii=False) + "\n").encode()
    sys.stdout.buffer.write(line)
    sys.stdout.buffer.flush()


def _read_message() -> dict[str, Any] | None:
    """Read one JSON-RPC message from stdin. Returns None on EOF, {} on a blank/bad line."""
    line = sys.stdin.buffer.readline()
    if not line:
        return None
    line = line.strip()
    if not line:
        return {}
    try:
        msg = json.loads(line.decode())
    except Exception:
        logger.warning("dropping malformed stdin line")
        return {}
    if os.environ.get("PANEL_FEEDBACK_TRACE"):
        logger.info("recv method=%s id=%s", msg.get("method"), msg.get("id"))
    return msg if isinstance(msg, dict) else {}


class StdioServer:
    def __init__(self, config: FeedbackConfig | None = None, *, resolver=resolve_from_env) -> None:  # noqa: ANN001
        self.config = config or FeedbackConfig.from_env()
        self._resolver = resolver

    def _target(self) -> WindowTarget:
        target = self._resolver(self.config.registry_dir)
        if target is None:
            raise HelperError("No feedback panel window is running. Open the IDE window with the panel enabled.")
        return target

    def handle_call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        if name != TOOL_NAME:
            raise LookupError("Tool not found")
        message = arguments.get("message")
        if not isinstance(message, str) or not message.strip():
            raise HelperError("message is required")
        raw_options = arguments.get("predefined_options")
        options = [str(o) for o in raw_options] if isinstance(raw_options, list) else None

        target = self._target()
        logger.info("feedback request -> port=%s pid=%s (%s)", target.port, target.pid, target.source)
        client = FeedbackClient(target)
        return client.request_feedback(message, options, poll_interval=self.config.poll_interval)

    def dispatch(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Handle one message. Returns the response, or None for notifications."""
        if not message:
            return None

        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") if isinstance(message.get("params"), dict) else {}

        if method == "initialize":
            return rpc_result(request_id, initialize_result(select_protocol(params.get("protocolVersion"))))
        if method == "notifications/initialized":
            return None
        if method == "tools/list":
            return rpc_result(request_id, {"tools": tools_list()})
        if method == "ping":
            return rpc_result(request_id, {})
        if method == "tools/call":
            name = str(params.get("name") or "")
            arguments = params.get("arguments") if isinstance(params.get("arguments"), dict) else {}
            try:
                result = self.handle_call_tool(name, arguments)
            except LookupError as exc:
                return rpc_error(request_id, METHOD_NOT_FOUND, str(exc))
            except HelperError as exc:
                logger.info("feedback failed: %s", exc)
                return rpc_result(request_id, {"content": [{"type": "text", "text": str(exc)}], "isError": True})
            except Exception as exc:
                logger.exception("tool_call_failed")
                return rpc_error(request_id, SERVER_ERROR, str(exc))
            return rpc_result(request_id, result)
        if request_id is None:
            return None
        return rpc_error(request_id, METHOD_NOT_FOUND, f"Method {method} not found")


def main() -> None:
    """Main entry point for the stdio helper."""
    config = FeedbackConfig.from_env()
    # stdout carries protocol frames; logs go to stderr.
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    server = StdioServer(config)
    while True:
        message = _read_message()
        if message is None:
            break
        response = server.dispatch(message)
        if response is not None:
            _write_message(response)


if __name__ == "__main__":
    main()
