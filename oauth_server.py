"""OAuth 2.0 Authorization Server (authorization code + PKCE) for MCP clients."""
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from flask import Blueprint, jsonify, redirect, request

import config
from discovery import get_authorization_server_metadata, get_protected_resource_metadata
from identity import get_session_user_id
from oauth_tokens import (
    CHALLENGE_METHODS,
    OAuthError,
    is_client_allowed,
    is_valid_code_challenge,
    is_valid_pkce_verifier,
    validate_redirect_uri,
)
from services import get_services, request_base_url

logger = logging.getLogger(__name__)

oauth_bp = Blueprint("oauth", __name__)

NO_STORE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


def _with_query(url: str, params: Mapping[str, Optional[str]]) -> str:
    """Add params to a URL, keeping any query it already has."""
    parsed = urlparse(url)
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in params]
    query.extend((k, v) for k, v in params.items() if v)
    return urlunparse(parsed._replace(query=urlencode(query)))


def redirect_with_error(redirect_uri: str, state: Optional[str], error: OAuthError):
    logger.info(f"Authorization request rejected: {error.error}")
    target = _with_query(
        redirect_uri,
        {"error": error.error, "error_description": error.description, "state": state},
    )
    return redirect(target, 302)


def oauth_error_response(error: OAuthError):
    response = jsonify(error.to_dict())
    response.status_code = error.status
    response.headers.update(NO_STORE_HEADERS)
    return response


# ============================================================================
# Authorization endpoint
# ============================================================================


@oauth_bp.route("/oauth/authorize", methods=["GET"])
def authorize():
    """Issue an authorization code to the signed-in user.

    Until redirect_uri is known to be well-formed, errors are JSON; after
    that they are sent back to the client as ``error`` query parameters.
    """
    services = get_services()
    services.db.ensure_ready()
    settings = services.settings

    response_type = request.args.get("response_type")
    client_id = request.args.get("client_id")
    redirect_uri = request.args.get("redirect_uri")
    state = request.args.get("state")
    scope = (request.args.get("scope") or config.MCP_SCOPE).strip()
    resource = request.args.get("resource")
    code_challenge = request.args.get("code_challenge")
    code_challenge_method = request.args.get("code_challenge_method")
    if code_challenge_method is None:
        code_challenge_method = settings.default_challenge_method
    code_challenge_method = code_challenge_method.strip()

    if not client_id or not redirect_uri:
        return oauth_error_response(
            OAuthError("invalid_request", "Missing client_id or redirect_uri")
        )

    if not validate_redirect_uri(redirect_uri):
        return oauth_error_response(OAuthError("invalid_request", "Invalid redirect_uri"))

    if response_type != "code":
        return redirect_with_error(
            redirect_uri,
            state,
            OAuthError("unsupported_response_type", "Only response_type=code is supported"),
        )

    if not is_valid_code_challenge(code_challenge):
        return redirect_with_error(
            redirect_uri, state, OAuthError("invalid_request", "Missing or invalid code_challenge")
        )

    if code_challenge_method not in CHALLENGE_METHODS:
        return redirect_with_error(
            redirect_uri, state, OAuthError("invalid_request", "Unsupported code_challenge_method")
        )

    if not is_client_allowed(client_id, settings.allowed_client_ids):
        return redirect_with_error(
            redirect_uri, state, OAuthError("unauthorized_client", "Client is not allowed")
        )

    user_id = get_session_user_id(services.games)
    if not user_id:
        base_url = request_base_url()
        callback_url = f"{base_url}/oauth/authorize"
        query_string = request.query_string.decode("utf-8")
        if query_string:
            callback_url = f"{callback_url}?{query_string}"
        sign_in = _with_query(
            f"{base_url}/auth/signin/google",
            {"prompt": "select_account", "callbackUrl": callback_url},
        )
        return redirect(sign_in, 302)

    code = services.tokens.create_authorization_code(
        user_id=user_id,
        client_id=client_id,
        redirect_uri=redirect_uri,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        scope=scope or config.MCP_SCOPE,
        resource=resource or None,
    )
    return redirect(_with_query(redirect_uri, {"code": code, "state": state}), 302)


# ============================================================================
# Token endpoint
# ============================================================================


@dataclass(frozen=True)
class TokenRequest:
    grant_type: str = ""
    code: str = ""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""
    code_verifier: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "TokenRequest":
        def field(name: str) -> str:
            value = data.get(name)
            return "" if value is None else str(value).strip()

        return cls(
            grant_type=field("grant_type"),
            code=field("code"),
            client_id=field("client_id"),
            client_secret=field("client_secret"),
            redirect_uri=field("redirect_uri"),
            code_verifier=field("code_verifier"),
        )

    @classmethod
    def from_request(cls, req) -> "TokenRequest":
        """Normalize JSON, urlencoded and multipart bodies plus HTTP Basic credentials."""
        if req.is_json:
            data = req.get_json(silent=True)
            if not isinstance(data, dict):
                raise OAuthError("invalid_request", "Malformed JSON body")
            token_request = cls.from_mapping(data)
        else:
            token_request = cls.from_mapping(req.form)

        auth = req.authorization
        if auth is not None and auth.type == "basic":
            token_request = cls(
                grant_type=token_request.grant_type,
                code=token_request.code,
                client_id=token_request.client_id or (auth.username or ""),
                client_secret=token_request.client_secret or (auth.password or ""),
                redirect_uri=token_request.redirect_uri,
                code_verifier=token_request.code_verifier,
            )
        return token_request


@oauth_bp.route("/oauth/token", methods=["POST"])
def issue_token():
    """Exchange an authorization code and PKCE verifier for a bearer token."""
    services = get_services()
    services.db.ensure_ready()

    try:
        body = TokenRequest.from_request(request)

        if body.grant_type != "authorization_code":
            raise OAuthError("unsupported_grant_type", "Only authorization_code is supported")

        if not body.code or not body.code_verifier:
            raise OAuthError("invalid_request", "Missing required OAuth token fields")

        if not is_valid_pkce_verifier(body.code_verifier):
            raise OAuthError("invalid_request", "Invalid code_verifier")

        if body.client_id and not is_client_allowed(body.client_id, services.settings.allowed_client_ids):
            raise OAuthError("unauthorized_client", "Client is not allowed")

        token = services.tokens.exchange_authorization_code(
            code=body.code,
            client_id=body.client_id,
            redirect_uri=body.redirect_uri,
            code_verifier=body.code_verifier,
        )
    except OAuthError as e:
        logger.info(f"Token request rejected: {e.error}")
        return oauth_error_response(e)
    except Exception:
        logger.exception("Token issuance failed")
        return oauth_error_response(OAuthError("server_error", "Token issuance failed", 500))

    response = jsonify(
        {
            "access_token": token.access_token,
            "token_type": "Bearer",
            "expires_in": token.expires_in,
            "scope": token.scope,
        }
    )
    response.headers.update(NO_STORE_HEADERS)
    return response


# ============================================================================
# Discovery
# ============================================================================


@oauth_bp.route("/.well-known/oauth-authorization-server", methods=["GET"])
@oauth_bp.route("/.well-known/oauth-authorization-server/api/mcp", methods=["GET"])
def oauth_metadata():
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    return jsonify(get_authorization_server_metadata(request_base_url()))


@oauth_bp.route("/.well-known/oauth-protected-resource", methods=["GET"])
@oauth_bp.route("/.well-known/oauth-protected-resource/api/mcp", methods=["GET"])
def oauth_protected_resource_metadata():
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    return jsonify(get_protected_resource_metadata(request_base_url()))
