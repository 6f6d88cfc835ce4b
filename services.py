"""Process-wide collaborators shared by the blueprints."""
from dataclasses import dataclass
from typing import Any

from flask import current_app, request

from config import Settings
from discovery import get_base_url
from events import EventPublisher
from games import GameService
from mailer import Mailer
from mcp_tools import ToolRegistry
from oauth_tokens import TokenStore
from store import Database

EXTENSION_KEY = "mcp_chess"


@dataclass
class Services:
    settings: Settings
    db: Database
    tokens: TokenStore
    games: GameService
    tools: ToolRegistry
    events: EventPublisher
    mailer: Mailer
    oauth: Any = None


def build_services(settings: Settings) -> Services:
    db = Database(settings.database_path)
    events = EventPublisher(settings.ably_api_key)
    mailer = Mailer(settings)
    games = GameService(db, events, mailer)
    return Services(
        settings=settings,
        db=db,
        tokens=TokenStore(db),
        games=games,
        tools=ToolRegistry(games),
        events=events,
        mailer=mailer,
    )


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def request_base_url() -> str:
    return get_base_url(request, get_services().settings)
