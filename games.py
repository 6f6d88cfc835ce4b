"""Game, user and chat operations backing the MCP tools.

Chess rules come from python-chess; this module only stores positions and
decides who may act on them.
"""
import base64
import logging
import math
import uuid
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import quote

import chess
import chess.svg

from errors import AuthenticationRequired, ToolError
from store import Database, utcnow_iso

logger = logging.getLogger(__name__)

ACTIVE = "ACTIVE"
FINISHED = "FINISHED"

SNAPSHOT_MIME_TYPE = "image/svg+xml"
DEFAULT_SNAPSHOT_SIZE = 560
MIN_SNAPSHOT_SIZE = 200
MAX_SNAPSHOT_SIZE = 1200

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def snapshot_version(updated_at: str) -> str:
    """Cache-busting version derived from a game's last update time."""
    moment = parse_timestamp(updated_at)
    return _to_base36(int(moment.timestamp() * 1000))


def snapshot_path(game_id: str, version: str, size: Optional[int] = None) -> str:
    path = f"/api/snapshots/{quote(game_id, safe='')}/{quote(version, safe='')}.svg"
    if not size:
        return path
    return f"{path}?size={size}"


def clamp_snapshot_size(size: Optional[int]) -> int:
    if size is None:
        return DEFAULT_SNAPSHOT_SIZE
    return min(MAX_SNAPSHOT_SIZE, max(MIN_SNAPSHOT_SIZE, size))


def render_board_svg(fen: str, size: int = DEFAULT_SNAPSHOT_SIZE) -> str:
    return chess.svg.board(chess.Board(fen), size=size)


def color_code(color: chess.Color) -> str:
    return "w" if color == chess.WHITE else "b"


def is_draw(board: chess.Board) -> bool:
    return board.is_stalemate() or board.is_insufficient_material() or board.is_fifty_moves()


def pieces_from_fen(fen: str) -> List[dict]:
    """Pieces listed rank 8 to 1, file a to h."""
    board = chess.Board(fen)
    pieces = []
    for rank in range(7, -1, -1):
        for file in range(8):
            square = chess.square(file, rank)
            piece = board.piece_at(square)
            if piece is None:
                continue
            pieces.append(
                {
                    "square": chess.square_name(square),
                    "type": piece.symbol().lower(),
                    "color": color_code(piece.color),
                }
            )
    return pieces


def _user_ref(row, prefix: str, with_image: bool = False) -> dict:
    ref = {"id": row[f"{prefix}_id"], "email": row[f"{prefix}_email"]}
    if with_image:
        ref["image"] = row[f"{prefix}_image"]
    return ref


class GameService:
    def __init__(self, db: Database, events, mailer):
        self.db = db
        self.events = events
        self.mailer = mailer

    # Users

    def user_exists(self, user_id: str) -> bool:
        with self.db.connect() as conn:
            row = conn.execute("SELECT 1 FROM users WHERE id = ?", (user_id,)).fetchone()
        return row is not None

    def upsert_user(self, email: str, name: Optional[str] = None, image: Optional[str] = None) -> str:
        email = email.strip().lower()
        with self.db.connect(immediate=True) as conn:
            row = conn.execute("SELECT id FROM users WHERE email = ?", (email,)).fetchone()
            if row is not None:
                conn.execute(
                    "UPDATE users SET name = COALESCE(?, name), image = COALESCE(?, image) WHERE id = ?",
                    (name, image, row["id"]),
                )
                return row["id"]
            user_id = str(uuid.uuid4())
            conn.execute(
                "INSERT INTO users (id, name, email, image, created_at) VALUES (?, ?, ?, ?, ?)",
                (user_id, name, email, image, utcnow_iso()),
            )
        logger.info(f"Created user {user_id}")
        return user_id

    def query_users(self, term: str, limit: int) -> dict:
        sql = "SELECT id, name, email, image FROM users WHERE email IS NOT NULL"
        params: list = []
        if term:
            pattern = "%" + term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
            sql += " AND (email LIKE ? ESCAPE '\\' OR name LIKE ? ESCAPE '\\')"
            params.extend([pattern, pattern])
        sql += " ORDER BY email ASC, created_at DESC LIMIT ?"
        params.append(limit)
        with self.db.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return {"users": [dict(row) for row in rows]}

    # Games

    def _get_public_game(self, conn, game_id: str):
        row = conn.execute("SELECT * FROM games WHERE id = ?", (game_id,)).fetchone()
        if row is None or not row["is_public"]:
            raise ToolError("Game not found")
        return row

    def create_game(self, user_id: str, opponent_email: str, play_as: str, app_url: str) -> dict:
        with self.db.connect(immediate=True) as conn:
            me = conn.execute("SELECT id, email, name FROM users WHERE id = ?", (user_id,)).fetchone()
            if me is None:
                raise ToolError("Authenticated user not found")
            if (me["email"] or "").lower() == opponent_email:
                raise ToolError("Cannot create a game against yourself")

            opponent = conn.execute(
                "SELECT id, email, name FROM users WHERE email = ?", (opponent_email,)
            ).fetchone()
            opponent_exists = opponent is not None
            if opponent_exists:
                opponent_ref = dict(opponent)
            else:
                opponent_ref = {"id": str(uuid.uuid4()), "email": opponent_email, "name": None}
                conn.execute(
                    "INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)",
                    (opponent_ref["id"], opponent_email, utcnow_iso()),
                )

            me_ref = dict(me)
            white, black = (me_ref, opponent_ref) if play_as == "white" else (opponent_ref, me_ref)
            game_id = str(uuid.uuid4())
            now = utcnow_iso()
            fen = chess.STARTING_FEN
            conn.execute(
                """
                INSERT INTO games (id, white_id, black_id, created_by_id, status, fen, pgn,
                                   is_public, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, '', 1, ?, ?)
                """,
                (game_id, white["id"], black["id"], user_id, ACTIVE, fen, now, now),
            )

        invitation = self.mailer.send_game_invitation(
            to_email=opponent_email,
            invited_by_email=me["email"],
            invited_by_name=me["name"],
            game_url=f"{app_url}/games/{game_id}",
            opponent_exists=opponent_exists,
        )
        self.events.publish_game_event(game_id, "game.created", {"whiteId": white["id"], "blackId": black["id"]})
        self.events.publish_games_event("game.created", {"gameId": game_id})

        return {
            "game": {
                "id": game_id,
                "white": white,
                "black": black,
                "status": ACTIVE,
                "fen": fen,
                "createdAt": now,
            },
            "invitation": invitation,
        }

    def move_piece(
        self, user_id: str, game_id: str, from_square: str, to_square: str, promotion: Optional[str]
    ) -> dict:
        with self.db.connect(immediate=True) as conn:
            game = conn.execute("SELECT * FROM games WHERE id = ?", (game_id,)).fetchone()
            if game is None:
                raise ToolError("Game not found")
            if game["status"] != ACTIVE:
                raise ToolError("Game is not active")

            if user_id == game["white_id"]:
                player_color = chess.WHITE
            elif user_id == game["black_id"]:
                player_color = chess.BLACK
            else:
                raise ToolError("Only game players can move pieces")

            board = chess.Board(game["fen"])
            if board.turn != player_color:
                raise ToolError("It is not your turn")

            try:
                move = chess.Move.from_uci(f"{from_square}{to_square}{promotion or ''}")
            except ValueError:
                raise ToolError("Illegal move")
            if move not in board.legal_moves:
                raise ToolError("Illegal move")

            fen_before = board.fen()
            san = board.san(move)
            if board.turn == chess.WHITE:
                pgn_token = f"{board.fullmove_number}. {san}"
            elif not game["pgn"]:
                pgn_token = f"{board.fullmove_number}... {san}"
            else:
                pgn_token = san
            board.push(move)
            fen_after = board.fen()
            pgn = f"{game['pgn']} {pgn_token}".strip()

            checkmate = board.is_checkmate()
            draw = is_draw(board)
            next_status = FINISHED if (checkmate or draw) else ACTIVE

            ply = conn.execute("SELECT COUNT(*) FROM moves WHERE game_id = ?", (game_id,)).fetchone()[0] + 1
            move_id = str(uuid.uuid4())
            now = utcnow_iso()
            conn.execute(
                "UPDATE games SET fen = ?, pgn = ?, status = ?, updated_at = ? WHERE id = ?",
                (fen_after, pgn, next_status, now, game_id),
            )
            conn.execute(
                """
                INSERT INTO moves (id, game_id, by_user_id, from_square, to_square, promotion,
                                   san, fen_before, fen_after, ply, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (move_id, game_id, user_id, from_square, to_square, promotion, san,
                 fen_before, fen_after, ply, now),
            )

        result = {
            "move": {
                "id": move_id,
                "san": san,
                "from": from_square,
                "to": to_square,
                "ply": ply,
                "createdAt": now,
            },
            "fen": fen_after,
            "gameStatus": next_status,
            "isCheckmate": checkmate,
            "isDraw": draw,
            "winnerUserId": user_id if checkmate else None,
        }

        self.events.publish_game_event(
            game_id,
            "move.created",
            {
                "moveId": move_id,
                "byUserId": user_id,
                "san": san,
                "from": from_square,
                "to": to_square,
                "gameStatus": next_status,
            },
        )
        self.events.publish_games_event("game.updated", {"gameId": game_id})
        if next_status == FINISHED:
            self.events.publish_game_event(
                game_id,
                "game.finished",
                {"winnerUserId": result["winnerUserId"], "isCheckmate": checkmate, "isDraw": draw},
            )
        return result

    def status(self, game_id: str) -> dict:
        with self.db.connect() as conn:
            game = self._get_public_game(conn, game_id)
        board = chess.Board(game["fen"])
        return {
            "gameId": game["id"],
            "fen": game["fen"],
            "turn": color_code(board.turn),
            "isCheck": board.is_check(),
            "isCheckmate": board.is_checkmate(),
            "isStalemate": board.is_stalemate(),
            "isDraw": is_draw(board),
            "gameStatus": game["status"],
            "pieces": pieces_from_fen(game["fen"]),
        }

    def history(self, game_id: str, limit: int) -> dict:
        with self.db.connect() as conn:
            self._get_public_game(conn, game_id)
            rows = conn.execute(
                """
                SELECT m.id, m.ply, m.san, m.from_square, m.to_square, m.created_at,
                       u.id AS user_id, u.email AS user_email
                FROM moves m JOIN users u ON u.id = m.by_user_id
                WHERE m.game_id = ?
                ORDER BY m.ply ASC
                LIMIT ?
                """,
                (game_id, limit),
            ).fetchall()
        return {
            "gameId": game_id,
            "moves": [
                {
                    "id": row["id"],
                    "ply": row["ply"],
                    "san": row["san"],
                    "from": row["from_square"],
                    "to": row["to_square"],
                    "byUser": _user_ref(row, "user"),
                    "createdAt": row["created_at"],
                }
                for row in rows
            ],
        }

    def snapshot(self, game_id: str, size: int, base_url: str) -> dict:
        with self.db.connect() as conn:
            game = self._get_public_game(conn, game_id)
        version = snapshot_version(game["updated_at"])
        path = snapshot_path(game["id"], version, size)
        svg = render_board_svg(game["fen"], size)
        return {
            "gameId": game["id"],
            "version": version,
            "snapshotPath": path,
            "snapshotUrl": f"{base_url}{path}",
            "mimeType": SNAPSHOT_MIME_TYPE,
            "data": base64.b64encode(svg.encode("utf-8")).decode("ascii"),
        }

    def get_snapshot_game(self, game_id: str):
        """Row for the snapshot route, or None when the game is not public."""
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT id, fen, is_public, updated_at FROM games WHERE id = ?", (game_id,)
            ).fetchone()
        if row is None or not row["is_public"]:
            return None
        return row

    def list_games(self, user_id: Optional[str], scope: str, limit: int) -> dict:
        where = "g.is_public = 1"
        params: list = []
        if scope == "my":
            if not user_id:
                raise AuthenticationRequired()
            where += " AND (g.white_id = ? OR g.black_id = ?)"
            params.extend([user_id, user_id])
        elif scope == "others" and user_id:
            where += " AND g.white_id != ? AND g.black_id != ?"
            params.extend([user_id, user_id])
        params.append(limit)

        with self.db.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT g.id, g.status, g.created_at, g.updated_at,
                       w.id AS white_id, w.email AS white_email,
                       b.id AS black_id, b.email AS black_email,
                       (SELECT COUNT(*) FROM moves m WHERE m.game_id = g.id) AS move_count
                FROM games g
                JOIN users w ON w.id = g.white_id
                JOIN users b ON b.id = g.black_id
                WHERE {where}
                ORDER BY g.updated_at DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return {
            "games": [
                {
                    "id": row["id"],
                    "white": _user_ref(row, "white"),
                    "black": _user_ref(row, "black"),
                    "status": row["status"],
                    "moveCount": row["move_count"],
                    "updatedAt": row["updated_at"],
                    "createdAt": row["created_at"],
                }
                for row in rows
            ]
        }

    def get_game(self, game_id: str, user_id: Optional[str]) -> dict:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT g.id, g.status, g.is_public, g.created_at, g.updated_at,
                       w.id AS white_id, w.email AS white_email, w.image AS white_image,
                       b.id AS black_id, b.email AS black_email, b.image AS black_image,
                       (SELECT COUNT(*) FROM moves m WHERE m.game_id = g.id) AS move_count,
                       (SELECT COUNT(*) FROM chat_messages c WHERE c.game_id = g.id) AS chat_count
                FROM games g
                JOIN users w ON w.id = g.white_id
                JOIN users b ON b.id = g.black_id
                WHERE g.id = ?
                """,
                (game_id,),
            ).fetchone()
        if row is None or not row["is_public"]:
            raise ToolError("Game not found")
        return {
            "game": {
                "id": row["id"],
                "white": _user_ref(row, "white", with_image=True),
                "black": _user_ref(row, "black", with_image=True),
                "status": row["status"],
                "moveCount": row["move_count"],
                "chatCount": row["chat_count"],
                "createdAt": row["created_at"],
                "updatedAt": row["updated_at"],
                "canMove": row["status"] == ACTIVE and user_id in (row["white_id"], row["black_id"]),
            }
        }

    def get_chat_messages(self, game_id: str, limit: int) -> dict:
        with self.db.connect() as conn:
            self._get_public_game(conn, game_id)
            rows = conn.execute(
                """
                SELECT c.id, c.body, c.created_at,
                       u.id AS user_id, u.email AS user_email, u.image AS user_image
                FROM chat_messages c JOIN users u ON u.id = c.user_id
                WHERE c.game_id = ?
                ORDER BY c.created_at ASC
                LIMIT ?
                """,
                (game_id, limit),
            ).fetchall()
        return {
            "gameId": game_id,
            "messages": [
                {
                    "id": row["id"],
                    "body": row["body"],
                    "createdAt": row["created_at"],
                    "user": _user_ref(row, "user", with_image=True),
                }
                for row in rows
            ],
        }

    def post_chat_message(self, user_id: str, game_id: str, body: str) -> dict:
        with self.db.connect(immediate=True) as conn:
            game = self._get_public_game(conn, game_id)
            if user_id not in (game["white_id"], game["black_id"]):
                raise ToolError("Only game players can post chat messages")
            message_id = str(uuid.uuid4())
            now = utcnow_iso()
            conn.execute(
                "INSERT INTO chat_messages (id, game_id, user_id, body, created_at) VALUES (?, ?, ?, ?, ?)",
                (message_id, game_id, user_id, body, now),
            )
            user = conn.execute("SELECT id, email, image FROM users WHERE id = ?", (user_id,)).fetchone()

        self.events.publish_game_event(game_id, "chat.created", {"messageId": message_id, "userId": user_id})
        return {
            "message": {
                "id": message_id,
                "body": body,
                "createdAt": now,
                "user": dict(user),
            }
        }

    # Reminders

    def send_turn_reminder(self, game_id: str, min_minutes: int, dry_run: bool, app_url: str) -> dict:
        """E-mail the player to move once the game has been idle long enough."""
        with self.db.connect() as conn:
            game = conn.execute(
                """
                SELECT g.id, g.status, g.fen, g.created_at,
                       w.email AS white_email, b.email AS black_email,
                       (SELECT MAX(m.created_at) FROM moves m WHERE m.game_id = g.id) AS last_move_at
                FROM games g
                JOIN users w ON w.id = g.white_id
                JOIN users b ON b.id = g.black_id
                WHERE g.id = ?
                """,
                (game_id,),
            ).fetchone()
        if game is None:
            raise ToolError("Game not found")

        if game["status"] != ACTIVE:
            return {"gameId": game_id, "sent": False, "skippedReason": "Game is not active"}

        turn = color_code(chess.Board(game["fen"]).turn)
        to_email = game["white_email"] if turn == "w" else game["black_email"]
        if not to_email:
            return {"gameId": game_id, "sent": False, "skippedReason": "Current player has no email"}

        reference = parse_timestamp(game["last_move_at"] or game["created_at"])
        minutes = (datetime.now(timezone.utc) - reference).total_seconds() / 60
        whole_minutes = math.floor(minutes)

        if minutes < min_minutes:
            return {
                "gameId": game_id,
                "sent": False,
                "skippedReason": f"Threshold not met ({whole_minutes} < {min_minutes} minutes)",
                "toEmail": to_email,
            }

        if dry_run:
            return {
                "gameId": game_id,
                "sent": False,
                "dryRun": True,
                "wouldSendTo": to_email,
                "minutesSinceLastMove": whole_minutes,
            }

        mail = self.mailer.send_turn_reminder(
            to_email=to_email,
            game_id=game_id,
            minutes_since_last_move=minutes,
            min_minutes_since_last_move=min_minutes,
            game_url=f"{app_url}/games/{game_id}",
        )
        logger.info(f"Turn reminder for game {game_id}: sent={mail.get('sent')}")
        return {
            "gameId": game_id,
            "toEmail": to_email,
            "turn": turn,
            "minutesSinceLastMove": whole_minutes,
            **mail,
        }
