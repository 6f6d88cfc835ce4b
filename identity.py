"""Caller identity resolution for MCP requests.

A first-party browser session wins; otherwise the ``Authorization: Bearer``
header is checked against issued access tokens. Anything else is anonymous.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from flask import session

from oauth_tokens import extract_bearer_token

logger = logging.getLogger(__name__)

SESSION_USER_KEY = "user_id"


@dataclass(frozen=True)
class CallerIdentity:
    user_id: Optional[str] = None
    source: str = "anonymous"

    @property
    def is_anonymous(self) -> bool:
        return self.user_id is None


ANONYMOUS = CallerIdentity()


def get_session_user_id(games) -> Optional[str]:
    """User id from the signed session cookie, if it names an existing user."""
    user_id = session.get(SESSION_USER_KEY)
    if not user_id:
        return None
    if not games.user_exists(user_id):
        logger.info("Ignoring session for unknown user")
        return None
    return user_id


def resolve_caller(request, tokens, games) -> CallerIdentity:
    user_id = get_session_user_id(games)
    if user_id:
        return CallerIdentity(user_id=user_id, source="session")

    token = extract_bearer_token(request.headers.get("Authorization"))
    if token:
        user_id = tokens.get_user_id_for_token(token)
        if user_id:
            return CallerIdentity(user_id=user_id, source="bearer")
        logger.info("Bearer token is unknown or expired")

    return ANONYMOUS
