#!/usr/bin/env python3
"""
MCP HTTP Bridge - forwards stdio JSON-RPC messages to the /api/mcp endpoint
"""
import json
import os
import sys
import uuid
from typing import Any, Dict, Optional

import httpx

MCP_SERVER_URL = os.getenv("MCP_SERVER_URL", "http://127.0.0.1:3000/api/mcp")


class MCPCallError(Exception):
    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code


def _error_message(request_id, code: int, message: str) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


class MCPHttpBridge:
    def __init__(self, server_url: str, access_token: Optional[str] = None, client: Optional[httpx.Client] = None):
        self.server_url = server_url
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self.client = client or httpx.Client(timeout=30.0)
        self.headers = headers

    def handle_message(self, message: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Forward one message; notifications answered with 204 return None."""
        try:
            response = self.client.post(self.server_url, json=message, headers=self.headers)
        except httpx.HTTPError as e:
            return _error_message(message.get("id"), -32603, str(e))

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return _error_message(message.get("id"), response.status_code, response.text)

    def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> Any:
        """Call a tool and return its structured result."""
        payload = self.handle_message({
            "jsonrpc": "2.0",
            "id": str(uuid.uuid4()),
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments or {}},
        })
        if payload is None:
            raise MCPCallError(-32603, "Empty MCP response")
        if "error" in payload:
            error = payload["error"]
            raise MCPCallError(error.get("code", -32603), error.get("message") or "MCP call failed")

        result = payload.get("result") or {}
        if "structuredContent" in result:
            return result["structuredContent"]
        content = result.get("content") or []
        if content and content[0].get("type") == "text":
            return json.loads(content[0]["text"])
        raise MCPCallError(-32603, "Invalid MCP response")

    def run(self, stdin=None, stdout=None):
        """Forward newline-delimited JSON-RPC from stdin; write replies to stdout."""
        stdin = stdin or sys.stdin
        stdout = stdout or sys.stdout
        for raw in stdin:
            raw = raw.strip()
            if not raw:
                continue

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                reply = _error_message(None, -32700, "Parse error")
            else:
                if isinstance(message, dict):
                    reply = self.handle_message(message)
                else:
                    reply = _error_message(None, -32600, "Invalid Request")

            if reply is not None:
                stdout.write(json.dumps(reply) + "\n")
                stdout.flush()


if __name__ == "__main__":
    bridge = MCPHttpBridge(MCP_SERVER_URL, access_token=os.getenv("MCP_ACCESS_TOKEN"))
    bridge.run()
