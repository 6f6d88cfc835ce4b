"""OAuth discovery documents and public base URL resolution."""
import re
from typing import Optional
from urllib.parse import urlparse

import config


def normalize_configured_base_url(value: Optional[str]) -> Optional[str]:
    """Turn a configured URL into ``scheme://host[/path]`` without a trailing slash."""
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    if not re.match(r"^https?://", trimmed, re.IGNORECASE):
        trimmed = f"https://{trimmed}"
    try:
        parsed = urlparse(trimmed)
    except ValueError:
        return None
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return None
    path = "" if parsed.path in ("", "/") else parsed.path.rstrip("/")
    return f"{parsed.scheme.lower()}://{parsed.netloc}{path}"


def get_base_url(request, settings) -> str:
    """Public base URL: configured value, then forwarded headers, then request origin."""
    configured = normalize_configured_base_url(settings.public_url) or normalize_configured_base_url(
        settings.app_url
    )
    if configured:
        return configured

    forwarded_proto = request.headers.get("X-Forwarded-Proto")
    host = request.headers.get("X-Forwarded-Host") or request.headers.get("Host")
    if forwarded_proto and host:
        proto = forwarded_proto.split(",")[0].strip()
        return f"{proto}://{host.split(',')[0].strip()}"

    return request.host_url.rstrip("/")


def get_protected_resource_metadata(base_url: str) -> dict:
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    return {
        "resource": f"{base_url}/api/mcp",
        "authorization_servers": [base_url],
        "bearer_methods_supported": ["header"],
        "scopes_supported": [config.MCP_SCOPE],
    }


def get_authorization_server_metadata(base_url: str) -> dict:
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    return {
        "issuer": base_url,
        "authorization_endpoint": f"{base_url}/oauth/authorize",
        "token_endpoint": f"{base_url}/oauth/token",
        "response_types_supported": ["code"],
        "grant_types_supported": ["authorization_code"],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": ["S256", "plain"],
        "scopes_supported": [config.MCP_SCOPE],
    }


def get_www_authenticate_header(base_url: str) -> str:
    resource_metadata_url = f"{base_url}/.well-known/oauth-protected-resource"
    authorization_uri = f"{base_url}/oauth/authorize"
    return (
        f'Bearer realm="{config.SERVER_NAME}", authorization_uri="{authorization_uri}", '
        f'resource_metadata="{resource_metadata_url}", scope="{config.MCP_SCOPE}"'
    )
