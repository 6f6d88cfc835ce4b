"""Authorization code and bearer token storage with PKCE verification.

Only SHA-256 hashes of codes and tokens are persisted. Lookups always go
through the hash, never through the raw value or a prefix of it.
"""
import base64
import hashlib
import logging
import re
import secrets
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable, Optional
from urllib.parse import urlparse

import config
from store import Database

logger = logging.getLogger(__name__)

PKCE_VALUE_RE = re.compile(r"^[A-Za-z0-9\-._~]{43,128}$")
CHALLENGE_METHODS = ("S256", "plain")


class OAuthError(Exception):
    """OAuth protocol error carrying the RFC 6749 error code."""

    def __init__(self, error: str, description: str = "", status: int = 400):
        super().__init__(error)
        self.error = error
        self.description = description
        self.status = status

    def to_dict(self) -> dict:
        return {"error": self.error, "error_description": self.description}


@dataclass(frozen=True)
class IssuedToken:
    access_token: str
    scope: str
    expires_in: int


def sha256_b64url(value: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def random_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


def is_valid_pkce_verifier(value: Optional[str]) -> bool:
    return bool(value) and PKCE_VALUE_RE.match(value) is not None


def is_valid_code_challenge(value: Optional[str]) -> bool:
    return bool(value) and PKCE_VALUE_RE.match(value) is not None


def verify_pkce(challenge: str, method: str, verifier: str) -> bool:
    """Check a code_verifier against the stored challenge.

    S256 compares base64url(sha256(verifier)) without padding; plain compares
    the strings directly. Any other method never verifies.
    """
    if method == "plain":
        return secrets.compare_digest(verifier.encode("utf-8"), challenge.encode("utf-8"))
    if method == "S256":
        return secrets.compare_digest(sha256_b64url(verifier).encode("utf-8"), challenge.encode("utf-8"))
    return False


def validate_redirect_uri(redirect_uri: Optional[str]) -> bool:
    """Accept absolute http(s) URLs without a fragment."""
    if not redirect_uri:
        return False
    try:
        parsed = urlparse(redirect_uri)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        return False
    if parsed.fragment or redirect_uri.endswith("#"):
        return False
    return True


def is_client_allowed(client_id: str, allowed: Iterable[str]) -> bool:
    allowed = tuple(allowed)
    if not allowed:
        return True
    return client_id in allowed


def extract_bearer_token(auth_header: Optional[str]) -> Optional[str]:
    """Return the token from an ``Authorization: Bearer`` header, if any."""
    if not auth_header:
        return None
    parts = auth_header.strip().split()
    if len(parts) < 2 or parts[0].lower() != "bearer":
        return None
    token = " ".join(parts[1:]).strip()
    return token or None


class TokenStore:
    """Persists one-time authorization codes and access tokens."""

    def __init__(
        self,
        db: Database,
        clock: Callable[[], float] = time.time,
        code_ttl: int = config.AUTHORIZATION_CODE_TTL_SECONDS,
        token_ttl: int = config.ACCESS_TOKEN_TTL_SECONDS,
    ):
        self.db = db
        self.clock = clock
        self.code_ttl = code_ttl
        self.token_ttl = token_ttl

    def now(self) -> int:
        return int(self.clock())

    def create_authorization_code(
        self,
        user_id: str,
        client_id: str,
        redirect_uri: str,
        code_challenge: str,
        code_challenge_method: str,
        scope: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> str:
        if code_challenge_method not in CHALLENGE_METHODS:
            raise OAuthError("invalid_request", "Unsupported code_challenge_method")

        code = random_token(32)
        now = self.now()
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO oauth_codes (
                    id, code_hash, user_id, client_id, redirect_uri, scope, resource,
                    code_challenge, code_challenge_method, expires_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    sha256_b64url(code),
                    user_id,
                    client_id,
                    redirect_uri,
                    scope or config.MCP_SCOPE,
                    resource,
                    code_challenge,
                    code_challenge_method,
                    now + self.code_ttl,
                    now,
                ),
            )
        logger.info(f"Authorization code issued for client {client_id}")
        return code

    def exchange_authorization_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: str,
    ) -> IssuedToken:
        """Redeem a code for a bearer token.

        Every failure is ``invalid_grant``. The code is marked used with a
        conditional update, so only one of several concurrent redemptions
        can succeed.
        """
        invalid = OAuthError("invalid_grant", "Authorization code is invalid or expired")

        with self.db.connect(immediate=True) as conn:
            row = conn.execute(
                """
                SELECT id, user_id, client_id, redirect_uri, scope, resource,
                       code_challenge, code_challenge_method, expires_at, used_at
                FROM oauth_codes WHERE code_hash = ?
                """,
                (sha256_b64url(code),),
            ).fetchone()

            now = self.now()
            if row is None:
                raise invalid
            if row["used_at"] is not None or row["expires_at"] <= now:
                raise invalid
            if row["client_id"] != client_id or row["redirect_uri"] != redirect_uri:
                raise invalid
            if not verify_pkce(row["code_challenge"], row["code_challenge_method"], code_verifier):
                raise invalid

            updated = conn.execute(
                "UPDATE oauth_codes SET used_at = ? WHERE id = ? AND used_at IS NULL",
                (now, row["id"]),
            )
            if updated.rowcount == 0:
                raise invalid

            token = random_token(48)
            conn.execute(
                """
                INSERT INTO oauth_access_tokens (
                    id, token_hash, user_id, client_id, scope, resource, expires_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid.uuid4()),
                    sha256_b64url(token),
                    row["user_id"],
                    row["client_id"],
                    row["scope"],
                    row["resource"],
                    now + self.token_ttl,
                    now,
                ),
            )

        logger.info(f"Access token issued for client {client_id}")
        return IssuedToken(
            access_token=token,
            scope=row["scope"] or config.MCP_SCOPE,
            expires_in=self.token_ttl,
        )

    def get_user_id_for_token(self, token: Optional[str]) -> Optional[str]:
        """Resolve an unexpired token to its owner, stamping last use."""
        if not token:
            return None
        token_hash = sha256_b64url(token)
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT user_id, expires_at FROM oauth_access_tokens WHERE token_hash = ?",
                (token_hash,),
            ).fetchone()
        if row is None or row["expires_at"] <= self.now():
            return None

        try:
            with self.db.connect() as conn:
                conn.execute(
                    "UPDATE oauth_access_tokens SET last_used_at = ? WHERE token_hash = ?",
                    (self.now(), token_hash),
                )
        except Exception as e:
            logger.warning(f"Could not record token use: {e}")
        return row["user_id"]
