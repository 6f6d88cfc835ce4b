"""Best-effort realtime fan-out through Ably's REST API."""
import json
import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from store import utcnow_iso

logger = logging.getLogger(__name__)

ABLY_REST_URL = "https://rest.ably.io"

# Browsers only ever subscribe; publishing stays server-side
SUBSCRIBER_CAPABILITY = {"game:*": ["subscribe"], "games": ["subscribe"]}
SUBSCRIBER_TOKEN_TTL_MS = 60 * 60 * 1000


class RealtimeTokenError(Exception):
    """A subscriber token could not be issued."""


class EventPublisher:
    """Publishes game events and issues subscriber tokens.

    Publish failures are logged and reported, never raised.
    """

    def __init__(self, api_key: Optional[str], base_url: str = ABLY_REST_URL, timeout: float = 5.0):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            key_name, _, key_secret = (self.api_key or "").partition(":")
            self._client = httpx.Client(
                base_url=self.base_url,
                auth=(key_name, key_secret),
                timeout=self.timeout,
            )
        return self._client

    def _publish(self, channel: str, name: str, data: Dict[str, Any]) -> dict:
        if not self.api_key:
            return {"sent": False, "skippedReason": "ABLY_API_KEY is not configured"}

        try:
            response = self.client.post(
                f"/channels/{quote(channel, safe='')}/messages",
                json={"name": name, "data": data},
            )
            response.raise_for_status()
            return {"sent": True}
        except httpx.HTTPError as e:
            logger.warning(f"Failed to publish {name} on {channel}: {e}")
            return {"sent": False, "error": str(e) or "Ably publish failed"}

    def publish_game_event(self, game_id: str, name: str, data: Dict[str, Any]) -> dict:
        payload = {**data, "gameId": game_id, "emittedAt": utcnow_iso()}
        return self._publish(f"game:{game_id}", name, payload)

    def publish_games_event(self, name: str, data: Dict[str, Any]) -> dict:
        payload = {**data, "emittedAt": utcnow_iso()}
        return self._publish("games", name, payload)

    def request_token(self, client_id: str) -> dict:
        """Ask Ably for a subscribe-only token bound to ``client_id``."""
        if not self.api_key:
            raise RealtimeTokenError("ABLY_API_KEY is not configured")

        key_name = self.api_key.partition(":")[0]
        try:
            response = self.client.post(
                f"/keys/{quote(key_name, safe='')}/requestToken",
                json={
                    "keyName": key_name,
                    "clientId": client_id,
                    "capability": json.dumps(SUBSCRIBER_CAPABILITY),
                    "ttl": SUBSCRIBER_TOKEN_TTL_MS,
                    "timestamp": int(time.time() * 1000),
                },
            )
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Failed to create Ably token for {client_id}: {e}")
            raise RealtimeTokenError(str(e) or "Unable to create Ably token") from e

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
