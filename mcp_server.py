"""MCP JSON-RPC endpoint, board snapshot route and turn reminder hook.

Tool calls authenticate with either the first-party session cookie or a
bearer token issued by the OAuth server in ``oauth_server``.
"""
import base64
import binascii
import json
import logging
import re
import secrets
from typing import Any, List, Optional

from flask import Blueprint, Response, jsonify, redirect, request
from pydantic import ValidationError

import config
from discovery import get_www_authenticate_header
from errors import (
    AUTHENTICATION_REQUIRED_MESSAGE,
    INVALID_PARAMS,
    INVALID_REQUEST,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    SERVER_ERROR,
    AuthenticationRequired,
    ToolError,
)
from games import SNAPSHOT_MIME_TYPE, clamp_snapshot_size, render_board_svg, snapshot_path, snapshot_version
from identity import resolve_caller
from mcp_tools import ToolContext, TurnReminderInput
from oauth_tokens import extract_bearer_token
from services import get_services, request_base_url

logger = logging.getLogger(__name__)

mcp_bp = Blueprint("mcp", __name__)

IMAGE_DATA_URL_RE = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,([A-Za-z0-9+/=_-]+)$")


_UNPARSEABLE = object()


def read_json_body():
    """Decoded request body, or ``_UNPARSEABLE`` when it is not JSON at all."""
    try:
        return json.loads(request.get_data(as_text=True))
    except ValueError:
        return _UNPARSEABLE


def jsonrpc_success(request_id, result):
    return jsonify({"jsonrpc": "2.0", "id": request_id, "result": result})


def jsonrpc_error(request_id, code: int, message: str, status: int = 400, headers: Optional[dict] = None):
    response = jsonify({"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})
    response.status_code = status
    if headers:
        response.headers.update(headers)
    return response


def _decodes_as_base64(data: str) -> bool:
    try:
        base64.b64decode(data, validate=True)
    except (binascii.Error, ValueError):
        return False
    return True


def parse_image_data_url(data_url: Any):
    if not isinstance(data_url, str):
        return None
    match = IMAGE_DATA_URL_RE.match(data_url)
    if not match:
        return None
    return match.group(1), match.group(2)


def build_tool_content(name: str, result: Any) -> List[dict]:
    """Wrap a tool result in MCP content blocks.

    Snapshots with inline image data become an image block; everything else
    (including a snapshot whose image payload is unusable) is JSON text.
    """
    if name == "snapshot" and isinstance(result, dict):
        data = result.get("data")
        mime_type = result.get("mimeType")
        if isinstance(data, str) and isinstance(mime_type, str) and mime_type.startswith("image/"):
            data = data.strip()
            if data and _decodes_as_base64(data):
                return [{"type": "image", "data": data, "mimeType": mime_type}]

        parsed = parse_image_data_url(result.get("dataUrl"))
        if parsed:
            parsed_mime, parsed_data = parsed
            return [{"type": "image", "data": parsed_data, "mimeType": mime_type or parsed_mime}]

    return [{"type": "text", "text": json.dumps(result)}]


def handle_tools_call(request_id, params):
    services = get_services()
    name = params.get("name") if isinstance(params, dict) else None
    arguments = params.get("arguments") if isinstance(params, dict) else None

    if not isinstance(name, str) or not name:
        return jsonrpc_error(request_id, INVALID_PARAMS, "Invalid params: tool name is required")

    caller = resolve_caller(request, services.tokens, services.games)
    base_url = request_base_url()
    ctx = ToolContext(
        caller=caller,
        base_url=base_url,
        app_url=(services.settings.app_url or base_url).rstrip("/"),
    )

    try:
        result = services.tools.call(name, arguments, ctx)
    except AuthenticationRequired as e:
        logger.info(f"Tool {name} requires authentication")
        return jsonrpc_error(
            request_id,
            e.code,
            str(e) or AUTHENTICATION_REQUIRED_MESSAGE,
            status=401,
            headers={"WWW-Authenticate": get_www_authenticate_header(base_url)},
        )
    except ToolError as e:
        logger.info(f"Tool {name} failed: {e}")
        return jsonrpc_error(request_id, e.code, str(e))

    return jsonrpc_success(
        request_id,
        {"content": build_tool_content(name, result), "structuredContent": result},
    )


def dispatch(body: dict):
    request_id = body.get("id")
    method = body.get("method")
    params = body.get("params")
    services = get_services()

    logger.debug(f"JSON-RPC request: method={method} id={request_id}")
    services.db.ensure_ready()

    if method == "notifications/initialized":
        return Response(status=204)

    if method == "ping":
        return jsonrpc_success(request_id, {})

    if method == "initialize":
        return jsonrpc_success(
            request_id,
            {
                "protocolVersion": config.PROTOCOL_VERSION,
                "serverInfo": {"name": config.SERVER_NAME, "version": config.SERVER_VERSION},
                "capabilities": {"tools": {}},
            },
        )

    if method == "tools/list":
        return jsonrpc_success(request_id, {"tools": services.tools.list_tools()})

    if method == "resources/list":
        return jsonrpc_success(request_id, {"resources": []})

    if method == "resources/templates/list":
        return jsonrpc_success(request_id, {"resourceTemplates": []})

    if method == "prompts/list":
        return jsonrpc_success(request_id, {"prompts": []})

    if method == "tools/call":
        return handle_tools_call(request_id, params)

    return jsonrpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method or '<missing>'}")


@mcp_bp.route("/api/mcp", methods=["POST"])
def mcp_endpoint():
    """Handle one JSON-RPC 2.0 request."""
    body = read_json_body()
    if body is _UNPARSEABLE:
        return jsonrpc_error(None, PARSE_ERROR, "Invalid JSON")
    if not isinstance(body, dict):
        return jsonrpc_error(None, INVALID_REQUEST, "Invalid Request")

    try:
        return dispatch(body)
    except Exception as e:
        logger.error(f"Error handling JSON-RPC request: {e}", exc_info=True)
        return jsonrpc_error(body.get("id"), SERVER_ERROR, str(e) or "Internal error")


@mcp_bp.route("/api/mcp", methods=["GET"])
def mcp_info():
    return jsonify({"name": config.SERVER_NAME, "protocol": "JSON-RPC 2.0", "endpoint": "/api/mcp"})


@mcp_bp.route("/api/snapshots/<game_id>/<version>.svg", methods=["GET"])
def board_snapshot(game_id, version):
    """Serve the board as SVG; stale versions redirect to the current one."""
    services = get_services()
    services.db.ensure_ready()

    size = clamp_snapshot_size(request.args.get("size", type=int))
    game = services.games.get_snapshot_game(game_id)
    if game is None:
        return jsonify({"error": "Snapshot not found"}), 404

    current_version = snapshot_version(game["updated_at"])
    if version != current_version:
        response = redirect(snapshot_path(game["id"], current_version, size), 302)
        response.headers["Cache-Control"] = "no-store"
        return response

    return Response(
        render_board_svg(game["fen"], size),
        status=200,
        headers={
            "Content-Type": f"{SNAPSHOT_MIME_TYPE}; charset=utf-8",
            "Cache-Control": "public, max-age=31536000, immutable",
            "Content-Disposition": f'inline; filename="{game["id"]}-{current_version}.svg"',
        },
    )


def _reminder_key_accepted(required: Optional[str]) -> bool:
    if not required:
        return True
    provided = request.headers.get("X-Reminder-Key") or extract_bearer_token(
        request.headers.get("Authorization")
    )
    if not provided:
        return False
    return secrets.compare_digest(provided.encode("utf-8"), required.encode("utf-8"))


@mcp_bp.route("/api/reminders/turn", methods=["POST"])
def turn_reminder():
    """E-mail the player whose turn it is; meant for a scheduler, gated by REMINDER_API_KEY."""
    services = get_services()
    if not _reminder_key_accepted(services.settings.reminder_api_key):
        return jsonify({"error": "Unauthorized"}), 401

    body = read_json_body()
    if body is _UNPARSEABLE:
        return jsonify({"error": "Invalid JSON"}), 400
    try:
        payload = TurnReminderInput.model_validate(body)
    except ValidationError as e:
        details = [
            {"field": ".".join(str(part) for part in item.get("loc", ())), "message": item.get("msg")}
            for item in e.errors()
        ]
        return jsonify({"error": "Invalid payload", "details": details}), 400

    services.db.ensure_ready()
    try:
        result = services.games.send_turn_reminder(
            payload.game_id,
            payload.min_minutes_since_last_move,
            payload.dry_run,
            (services.settings.app_url or request_base_url()).rstrip("/"),
        )
    except ToolError as e:
        return jsonify({"error": str(e)}), 404
    return jsonify(result)
