"""SQLite persistence for users, games, chat and OAuth grants."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT NOT NULL PRIMARY KEY,
    name TEXT,
    email TEXT UNIQUE,
    image TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS games (
    id TEXT NOT NULL PRIMARY KEY,
    white_id TEXT NOT NULL REFERENCES users (id),
    black_id TEXT NOT NULL REFERENCES users (id),
    created_by_id TEXT NOT NULL REFERENCES users (id),
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    fen TEXT NOT NULL,
    pgn TEXT NOT NULL DEFAULT '',
    is_public INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS moves (
    id TEXT NOT NULL PRIMARY KEY,
    game_id TEXT NOT NULL REFERENCES games (id) ON DELETE CASCADE,
    by_user_id TEXT NOT NULL REFERENCES users (id),
    from_square TEXT NOT NULL,
    to_square TEXT NOT NULL,
    promotion TEXT,
    san TEXT NOT NULL,
    fen_before TEXT NOT NULL,
    fen_after TEXT NOT NULL,
    ply INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (game_id, ply)
);

CREATE TABLE IF NOT EXISTS chat_messages (
    id TEXT NOT NULL PRIMARY KEY,
    game_id TEXT NOT NULL REFERENCES games (id) ON DELETE CASCADE,
    user_id TEXT NOT NULL REFERENCES users (id),
    body TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS chat_messages_game_idx ON chat_messages (game_id, created_at);

CREATE TABLE IF NOT EXISTS oauth_codes (
    id TEXT NOT NULL PRIMARY KEY,
    code_hash TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
    client_id TEXT NOT NULL,
    redirect_uri TEXT NOT NULL,
    scope TEXT,
    resource TEXT,
    code_challenge TEXT NOT NULL,
    code_challenge_method TEXT NOT NULL DEFAULT 'S256',
    expires_at INTEGER NOT NULL,
    used_at INTEGER,
    created_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS oauth_codes_expires_idx ON oauth_codes (expires_at);

CREATE TABLE IF NOT EXISTS oauth_access_tokens (
    id TEXT NOT NULL PRIMARY KEY,
    token_hash TEXT NOT NULL UNIQUE,
    user_id TEXT NOT NULL REFERENCES users (id) ON DELETE CASCADE,
    client_id TEXT NOT NULL,
    scope TEXT,
    resource TEXT,
    expires_at INTEGER NOT NULL,
    created_at INTEGER NOT NULL,
    last_used_at INTEGER
);

CREATE INDEX IF NOT EXISTS oauth_access_tokens_user_idx ON oauth_access_tokens (user_id, expires_at);
"""


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Database:
    """Thin wrapper around a SQLite file.

    Every ``connect()`` call opens its own connection, so request handlers
    never share cursors across threads.
    """

    def __init__(self, path: str):
        self.path = path
        self._ready = False
        self._ready_lock = threading.Lock()

    @contextmanager
    def connect(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside one transaction.

        ``immediate=True`` takes the write lock up front so read-then-write
        sequences serialize instead of failing with SQLITE_BUSY on upgrade.
        """
        conn = sqlite3.connect(self.path, timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def ensure_ready(self) -> None:
        """Create the schema once per process; a failed attempt is retried next call."""
        if self._ready:
            return
        with self._ready_lock:
            if self._ready:
                return
            conn = sqlite3.connect(self.path, timeout=10.0)
            try:
                conn.executescript(SCHEMA)
            finally:
                conn.close()
            self._ready = True
            logger.info(f"Database ready at {self.path}")
