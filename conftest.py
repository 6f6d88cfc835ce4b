"""Shared pytest fixtures."""
import base64
import hashlib
import secrets

import chess
import pytest

from app import create_app
from identity import SESSION_USER_KEY
from services import EXTENSION_KEY
from store import utcnow_iso

CLIENT_ID = "test-client"
REDIRECT_URI = "https://client.example/cb"


def make_pkce_pair():
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
    return verifier, challenge


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "database_path": str(tmp_path / "test.db"),
        "secret_key": "test-secret",
        "public_url": None,
        "app_url": None,
        "allowed_client_ids": (),
        "default_challenge_method": "plain",
        "google_client_id": None,
        "google_client_secret": None,
        "ably_api_key": None,
        "smtp_host": None,
    })
    app.config["TESTING"] = True
    app.extensions[EXTENSION_KEY].db.ensure_ready()
    return app


@pytest.fixture
def services(app):
    return app.extensions[EXTENSION_KEY]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(services):
    def _make_user(email, name=None):
        return services.games.upsert_user(email, name=name)
    return _make_user


@pytest.fixture
def sign_in(client):
    def _sign_in(user_id):
        with client.session_transaction() as session:
            session[SESSION_USER_KEY] = user_id
    return _sign_in


@pytest.fixture
def pkce_pair():
    return make_pkce_pair()


@pytest.fixture
def issue_token(services):
    """Mint a bearer token for a user through the real code exchange."""
    def _issue_token(user_id):
        verifier, challenge = make_pkce_pair()
        code = services.tokens.create_authorization_code(
            user_id=user_id,
            client_id=CLIENT_ID,
            redirect_uri=REDIRECT_URI,
            code_challenge=challenge,
            code_challenge_method="S256",
        )
        return services.tokens.exchange_authorization_code(
            code=code, client_id=CLIENT_ID, redirect_uri=REDIRECT_URI, code_verifier=verifier
        ).access_token
    return _issue_token


@pytest.fixture
def rpc(client):
    """POST a JSON-RPC request to /api/mcp."""
    def _rpc(method, params=None, request_id=1, headers=None):
        body = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            body["params"] = params
        return client.post("/api/mcp", json=body, headers=headers or {})
    return _rpc


@pytest.fixture
def call_tool(rpc):
    def _call_tool(name, arguments=None, headers=None):
        return rpc("tools/call", {"name": name, "arguments": arguments or {}}, headers=headers)
    return _call_tool


@pytest.fixture
def insert_game(services):
    """Store a game row directly, bypassing new_game."""
    def _insert_game(game_id, white_id, black_id, fen=chess.STARTING_FEN, status="ACTIVE", is_public=True):
        now = utcnow_iso()
        with services.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO games (id, white_id, black_id, created_by_id, status, fen, pgn,
                                   is_public, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, '', ?, ?, ?)
                """,
                (game_id, white_id, black_id, white_id, status, fen, int(is_public), now, now),
            )
        return game_id
    return _insert_game
