"""
MCP stdio server - line-delimited JSON-RPC over stdin/stdout.

Each input line is one request. Responses are written to stdout, one JSON
document per line; requests without an ``id`` are notifications and get no
response. Logging never touches stdout.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any, TextIO

from pydantic import ValidationError

from squad_mcp.squad import SquadOrchestrator

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
SERVER_NAME = "squad-mcp"

PARSE_ERROR = -32700
INVALID_PARAMS = -32602
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

_MEMBER_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "roleId": {"type": "string", "description": "Role id from list_roles"},
        "task": {"type": "string", "description": "Task for this member"},
        "cwd": {"type": "string", "description": "Working directory, relative to the workspace"},
        "chatId": {
            "type": ["string", "null"],
            "description": "Existing conversation handle (stateful mode only)",
        },
    },
    "required": ["roleId", "task"],
}

TOOLS: list[dict[str, Any]] = [
    {
        "name": "list_roles",
        "description": "List the roles squad members can be started with.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "start_squad_members",
        "description": (
            "Start a squad: run one agent process per member, each bound to a role "
            "and a task, and return their raw output."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "members": {"type": "array", "items": _MEMBER_SCHEMA, "minItems": 1},
                "metadata": {"type": "object"},
                "orchestratorChatId": {"type": "string"},
                "workspaceId": {"type": "string"},
            },
            "required": ["members"],
        },
    },
]


class MethodNotFound(Exception):
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def _recover_id(line: str) -> Any:
    """Pull the id out of a line whose leading JSON object is well formed."""
    try:
        obj, _ = json.JSONDecoder().raw_decode(line.strip())
    except ValueError:
        return None
    return obj.get("id") if isinstance(obj, dict) else None


class SquadMcpServer:
    """Serves squad tools to an MCP client over stdio.

    Usage:
        server = SquadMcpServer(SquadOrchestrator.from_config(config))
        await server.serve()
    """

    def __init__(self, orchestrator: SquadOrchestrator, *, version: str | None = None) -> None:
        if version is None:
            from squad_mcp import __version__

            version = __version__
        self._orchestrator = orchestrator
        self._version = version

    async def serve(self, stdin: TextIO | None = None, stdout: TextIO | None = None) -> None:
        """Process requests until stdin closes."""
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        logger.info(f"{SERVER_NAME} {self._version} listening on stdio")

        while True:
            line = await asyncio.to_thread(stdin.readline)
            if not line:
                break
            if not line.strip():
                continue
            response = await self.handle_line(line)
            if response is not None:
                stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
                stdout.flush()

        logger.info("stdin closed, shutting down")

    async def handle_line(self, line: str) -> dict[str, Any] | None:
        """Handle one raw input line. Returns the response, or None when silent."""
        try:
            request = json.loads(line)
            if not isinstance(request, dict):
                raise ValueError("Request must be a JSON object")
        except ValueError as e:
            request_id = _recover_id(line)
            logger.warning(f"Unparseable request: {e}")
            if request_id is None:
                return None
            return self._error(PARSE_ERROR, str(e), request_id)

        response = await self.handle_request(request)
        if request.get("id") is None:
            return None
        return response

    async def handle_request(self, request: dict[str, Any]) -> dict[str, Any]:
        """Dispatch one decoded request and build its response."""
        method = request.get("method")
        params = request.get("params") or {}
        request_id = request.get("id")

        try:
            result = await self._dispatch(method, params)
        except MethodNotFound as e:
            return self._error(METHOD_NOT_FOUND, e.message, request_id)
        except ValidationError as e:
            logger.warning(f"Invalid params for {method}: {e}")
            return self._error(INVALID_PARAMS, f"Invalid params: {e}", request_id)
        except Exception as e:
            logger.error(f"Request {method} failed: {e}")
            return self._error(INTERNAL_ERROR, str(e) or "Internal error", request_id)

        response: dict[str, Any] = {"jsonrpc": "2.0", "result": result}
        if request_id is not None:
            response["id"] = request_id
        return response

    async def _dispatch(self, method: Any, params: dict[str, Any]) -> Any:
        if method == "initialize":
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}},
                "serverInfo": {"name": SERVER_NAME, "version": self._version},
            }
        if method == "tools/list":
            return {"tools": TOOLS}
        if method == "tools/call":
            name = params.get("name")
            arguments = params.get("arguments") or {}
            if name not in ("list_roles", "start_squad_members"):
                raise MethodNotFound(f"Tool not found: {name}")
            result = await self._call_tool(name, arguments)
            return {"content": [{"type": "text", "text": json.dumps(result, ensure_ascii=False)}]}
        if method in ("list_roles", "start_squad_members"):
            return await self._call_tool(method, params)
        raise MethodNotFound(f"Method not found: {method}")

    async def _call_tool(self, name: str, arguments: dict[str, Any]) -> dict[str, Any]:
        if name == "list_roles":
            return self._orchestrator.list_roles()
        result = await self._orchestrator.start(arguments)
        return result.to_dict()

    @staticmethod
    def _error(code: int, message: str, request_id: Any) -> dict[str, Any]:
        response: dict[str, Any] = {"jsonrpc": "2.0", "error": {"code": code, "message": message}}
        if request_id is not None:
            response["id"] = request_id
        return response
