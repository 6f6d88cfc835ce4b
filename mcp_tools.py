"""MCP tool catalog and dispatcher.

Each tool pairs a JSON schema (advertised via ``tools/list``) with a
pydantic model that validates arguments before the executor runs.
"""
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, Literal, Mapping, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from errors import AuthenticationRequired, InvalidToolArguments, UnknownToolError
from games import DEFAULT_SNAPSHOT_SIZE, MAX_SNAPSHOT_SIZE, MIN_SNAPSHOT_SIZE, GameService
from identity import CallerIdentity

logger = logging.getLogger(__name__)

SQUARE_PATTERN = r"^[a-h][1-8]$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


@dataclass(frozen=True)
class ToolContext:
    caller: CallerIdentity
    base_url: str
    app_url: str

    @property
    def user_id(self) -> Optional[str]:
        return self.caller.user_id


# Input models


class ToolInput(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, str_strip_whitespace=True)


class QueryUsersInput(ToolInput):
    query: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    limit: int = Field(default=20, ge=1, le=50)

    @property
    def term(self) -> str:
        return (self.query or self.email or self.name or "").strip()


class NewGameInput(ToolInput):
    opponent_email: str = Field(alias="opponentEmail", pattern=EMAIL_PATTERN)
    play_as: Literal["white", "black"] = Field(default="white", alias="playAs")

    @field_validator("opponent_email")
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.lower()


class MovePieceInput(ToolInput):
    game_id: str = Field(alias="gameId", min_length=1)
    from_square: str = Field(alias="from", pattern=SQUARE_PATTERN)
    to_square: str = Field(alias="to", pattern=SQUARE_PATTERN)
    promotion: Optional[Literal["q", "r", "b", "n"]] = None


class GameIdInput(ToolInput):
    game_id: str = Field(alias="gameId", min_length=1)


class SnapshotInput(GameIdInput):
    size: int = Field(default=DEFAULT_SNAPSHOT_SIZE, ge=MIN_SNAPSHOT_SIZE, le=MAX_SNAPSHOT_SIZE)


class HistoryInput(GameIdInput):
    limit: int = Field(default=200, ge=1, le=300)


class ListGamesInput(ToolInput):
    scope: Literal["my", "others", "all"] = "all"
    limit: int = Field(default=30, ge=1, le=100)


class PostChatInput(GameIdInput):
    body: str = Field(min_length=1, max_length=500)


class GetChatInput(GameIdInput):
    limit: int = Field(default=50, ge=1, le=200)


class TurnReminderInput(GameIdInput):
    min_minutes_since_last_move: int = Field(default=60, ge=1, le=60 * 24 * 30, alias="minMinutesSinceLastMove")
    dry_run: bool = Field(default=False, alias="dryRun")


# Registry


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any]
    input_model: Type[ToolInput]
    execute: Callable[[GameService, Any, ToolContext], Any]
    requires_auth: bool = False
    read_only: bool = False

    def to_listing(self) -> dict:
        listing = {
            "name": self.name,
            "description": self.description,
            "inputSchema": self.input_schema,
        }
        if self.read_only:
            listing["annotations"] = {"readOnlyHint": True}
        return listing


def _require_user(ctx: ToolContext) -> str:
    if ctx.user_id is None:
        raise AuthenticationRequired()
    return ctx.user_id


GAME_ID_SCHEMA = {
    "type": "object",
    "properties": {"gameId": {"type": "string"}},
    "required": ["gameId"],
}

HISTORY_SCHEMA = {
    "type": "object",
    "properties": {
        "gameId": {"type": "string"},
        "limit": {"type": "number"},
    },
    "required": ["gameId"],
}


def _status(games, args, ctx):
    return games.status(args.game_id)


def _history(games, args, ctx):
    return games.history(args.game_id, args.limit)


TOOL_DEFINITIONS = (
    ToolDefinition(
        name="query_users_by_email",
        description="Search users by email and/or name.",
        input_schema={
            "type": "object",
            "properties": {
                "query": {"type": "string"},
                "email": {"type": "string"},
                "name": {"type": "string"},
                "limit": {"type": "number"},
            },
        },
        input_model=QueryUsersInput,
        execute=lambda games, args, ctx: games.query_users(args.term, args.limit),
        read_only=True,
    ),
    ToolDefinition(
        name="new_game",
        description="Create a new game against an email and send invitation email.",
        input_schema={
            "type": "object",
            "properties": {
                "opponentEmail": {"type": "string", "format": "email"},
                "playAs": {"type": "string", "enum": ["white", "black"]},
            },
            "required": ["opponentEmail"],
        },
        input_model=NewGameInput,
        execute=lambda games, args, ctx: games.create_game(
            _require_user(ctx), args.opponent_email, args.play_as, ctx.app_url
        ),
        requires_auth=True,
    ),
    ToolDefinition(
        name="move_piece",
        description="Move a piece in a game (authenticated game players only).",
        input_schema={
            "type": "object",
            "properties": {
                "gameId": {"type": "string"},
                "from": {"type": "string"},
                "to": {"type": "string"},
                "promotion": {"type": "string", "enum": ["q", "r", "b", "n"]},
            },
            "required": ["gameId", "from", "to"],
        },
        input_model=MovePieceInput,
        execute=lambda games, args, ctx: games.move_piece(
            _require_user(ctx), args.game_id, args.from_square, args.to_square, args.promotion
        ),
        requires_auth=True,
    ),
    ToolDefinition(
        name="snapshot",
        description="Return the current board snapshot image for a game, plus its public URL and metadata.",
        input_schema={
            "type": "object",
            "properties": {
                "gameId": {"type": "string"},
                "size": {"type": "number"},
            },
            "required": ["gameId"],
        },
        input_model=SnapshotInput,
        execute=lambda games, args, ctx: games.snapshot(args.game_id, args.size, ctx.base_url),
        read_only=True,
    ),
    ToolDefinition(
        name="status",
        description="Get the game status and piece positions.",
        input_schema=GAME_ID_SCHEMA,
        input_model=GameIdInput,
        execute=_status,
        read_only=True,
    ),
    ToolDefinition(
        name="get_game_status",
        description="Alias for status: get the game status and piece positions.",
        input_schema=GAME_ID_SCHEMA,
        input_model=GameIdInput,
        execute=_status,
        read_only=True,
    ),
    ToolDefinition(
        name="history",
        description="Get chronological move history.",
        input_schema=HISTORY_SCHEMA,
        input_model=HistoryInput,
        execute=_history,
        read_only=True,
    ),
    ToolDefinition(
        name="get_game_history",
        description="Alias for history: get chronological move history.",
        input_schema=HISTORY_SCHEMA,
        input_model=HistoryInput,
        execute=_history,
        read_only=True,
    ),
    ToolDefinition(
        name="list_games",
        description="List public games, with my/others scopes for authenticated users.",
        input_schema={
            "type": "object",
            "properties": {
                "scope": {"type": "string", "enum": ["my", "others", "all"]},
                "limit": {"type": "number"},
            },
        },
        input_model=ListGamesInput,
        execute=lambda games, args, ctx: games.list_games(ctx.user_id, args.scope, args.limit),
        read_only=True,
    ),
    ToolDefinition(
        name="get_game",
        description="Get one game's metadata.",
        input_schema=GAME_ID_SCHEMA,
        input_model=GameIdInput,
        execute=lambda games, args, ctx: games.get_game(args.game_id, ctx.user_id),
        read_only=True,
    ),
    ToolDefinition(
        name="get_chat_messages",
        description="Get per-game chat messages.",
        input_schema=HISTORY_SCHEMA,
        input_model=GetChatInput,
        execute=lambda games, args, ctx: games.get_chat_messages(args.game_id, args.limit),
        read_only=True,
    ),
    ToolDefinition(
        name="post_chat_message",
        description="Post a message to a game's chat (players only).",
        input_schema={
            "type": "object",
            "properties": {
                "gameId": {"type": "string"},
                "body": {"type": "string"},
            },
            "required": ["gameId", "body"],
        },
        input_model=PostChatInput,
        execute=lambda games, args, ctx: games.post_chat_message(_require_user(ctx), args.game_id, args.body),
        requires_auth=True,
    ),
)


def _format_validation_error(error: ValidationError) -> str:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "arguments"
        problems.append(f"{location}: {item.get('msg')}")
    return "Invalid arguments: " + "; ".join(problems)


class ToolRegistry:
    """Immutable name -> tool mapping."""

    def __init__(self, games: GameService, definitions: Iterable[ToolDefinition] = TOOL_DEFINITIONS):
        tools: Dict[str, ToolDefinition] = {}
        for tool in definitions:
            if tool.name in tools:
                raise ValueError(f"Duplicate tool name: {tool.name}")
            tools[tool.name] = tool
        self._tools: Mapping[str, ToolDefinition] = MappingProxyType(tools)
        self.games = games

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __iter__(self):
        return iter(self._tools.values())

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    @property
    def read_only_names(self) -> frozenset:
        return frozenset(tool.name for tool in self._tools.values() if tool.read_only)

    def list_tools(self) -> list:
        return [tool.to_listing() for tool in self._tools.values()]

    def call(self, name: str, arguments: Any, ctx: ToolContext) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)

        if tool.requires_auth and ctx.user_id is None:
            raise AuthenticationRequired()

        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise InvalidToolArguments("Invalid arguments: expected an object")
        try:
            args = tool.input_model.model_validate(arguments)
        except ValidationError as e:
            raise InvalidToolArguments(_format_validation_error(e))

        logger.debug(f"Calling tool {name} as {ctx.caller.source}")
        return tool.execute(self.games, args, ctx)
