"""Protocol and tool contract definitions.

Single source of truth for the server identity, the protocol versions the
legacy JSON-RPC path and the stdio helper answer with, and the one tool.
"""

from __future__ import annotations

from typing import Any

TOOL_NAME = "panel_feedback"

SERVER_INFO: dict[str, str] = {"name": "panel-feedback", "version": "1.0.0"}

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2024-11-05"]
DEFAULT_PROTOCOL_VERSION = "2024-11-05"

CAPABILITIES: dict[str, Any] = {"tools": {}}

PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
SERVER_ERROR = -32000

TOOL_DEFINITION: dict[str, Any] = {
    "name": TOOL_NAME,
    "description": (
        "Show a message in the IDE feedback panel and wait for the user's reply. "
        "Supports predefined quick-reply options and pasted images."
    ),
    "inputSchema": {
        "type": "object",
        "properties": {
            "message": {"type": "string", "description": "Message shown to the user (Markdown)."},
            "predefined_options": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Quick-reply option buttons.",
            },
        },
        "required": ["message"],
    },
}


def select_protocol(requested: Any) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return DEFAULT_PROTOCOL_VERSION


def initialize_result(protocol: str) -> dict[str, Any]:
    return {
        "protocolVersion": protocol,
        "serverInfo": SERVER_INFO,
        "capabilities": CAPABILITIES,
    }


def tools_list() -> list[dict[str, Any]]:
    return [TOOL_DEFINITION]


def rpc_result(request_id: Any, result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(request_id: Any, code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": int(code), "message": message}}
