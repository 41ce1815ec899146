import logging
import httpx
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
from ..config import settings
from ..errors import DecodingError, NetworkError, NotFoundError, error_for_status
from ..models import (
    ProgressChanges, ProgressUpload, PushResult, RemotePlaylist, RemoteQueueEntry,
    ServerConfiguration, SubscriptionChanges,
)

logger = logging.getLogger(__name__)

class RemoteClient(ABC):
    """
    Protocol-independent view of a sync server.
    Adapters translate their wire format into these operations and every failure into
    the podsync.errors taxonomy.
    """

    supports_collections: bool = False

    def __init__(self, config: ServerConfiguration, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.client = httpx.AsyncClient(
            base_url=config.server_url.rstrip('/'),
            headers={"User-Agent": settings.USER_AGENT},
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        await self.client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            resp = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise NetworkError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            raise error_for_status(resp.status_code, self._error_message(resp))
        return resp

    async def _json(self, method: str, path: str, **kwargs) -> Any:
        resp = await self._request(method, path, **kwargs)
        return self._decode(resp)

    def _decode(self, resp: httpx.Response) -> Any:
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise DecodingError(f"Invalid JSON from {resp.request.url}: {e}") from e

    def _error_message(self, resp: httpx.Response) -> str:
        try:
            data = resp.json()
            if isinstance(data, dict) and data.get("error"):
                return str(data["error"])
        except ValueError:
            pass
        return resp.text[:200]

    # Session

    @abstractmethod
    async def login(self, username: str, password: Optional[str]) -> str:
        """Authenticate and return the session token to persist."""

    # Subscriptions

    @abstractmethod
    async def get_subscriptions(self, cursor: Optional[str]) -> SubscriptionChanges:
        ...

    @abstractmethod
    async def push_subscription_change(self, add: List[str], remove: List[str]) -> None:
        """Idempotent: already-present additions and already-absent removals succeed."""

    @abstractmethod
    async def subscribe(self, feed_url: str) -> Optional[str]:
        """Returns the server's id for the podcast, or None when the protocol has no ids."""

    @abstractmethod
    async def unsubscribe(self, feed_url: str, remote_id: Optional[str]) -> None:
        ...

    async def refresh_feed(self, remote_id: Optional[str]) -> None:
        """Ask the server to re-crawl a feed. Best effort, default no-op."""
        return None

    # Progress

    @abstractmethod
    async def get_progress(self, cursor: Optional[str]) -> ProgressChanges:
        ...

    @abstractmethod
    async def push_progress(self, uploads: List[ProgressUpload]) -> List[PushResult]:
        """Upload progress. Returns one result per upload; raises only when the whole batch failed."""

    async def get_episode_ids(self, remote_podcast_id: str) -> Dict[str, str]:
        """Map audio URL -> remote episode id for one podcast. Empty when the protocol has no ids."""
        return {}

    # Queue & playlists

    async def get_queue(self) -> List[RemoteQueueEntry]:
        raise NotFoundError("Queue is not supported by this server")

    async def add_to_queue(self, episode_id: str) -> str:
        raise NotFoundError("Queue is not supported by this server")

    async def remove_from_queue(self, entry_id: str) -> None:
        raise NotFoundError("Queue is not supported by this server")

    async def reorder_queue(self, order: List[RemoteQueueEntry]) -> List[RemoteQueueEntry]:
        raise NotFoundError("Queue is not supported by this server")

    async def get_playlists(self) -> List[RemotePlaylist]:
        raise NotFoundError("Playlists are not supported by this server")

    async def create_playlist(self, name: str, description: Optional[str]) -> str:
        raise NotFoundError("Playlists are not supported by this server")

    async def update_playlist(self, remote_id: str, name: str, description: Optional[str]) -> None:
        raise NotFoundError("Playlists are not supported by this server")

    async def delete_playlist(self, remote_id: str) -> None:
        raise NotFoundError("Playlists are not supported by this server")

def create_remote_client(config: ServerConfiguration, backend: Optional[str] = None) -> RemoteClient:
    backend = backend or settings.BACKEND
    if backend == "gpodder":
        from .gpodder_client import GpodderClient
        return GpodderClient(config)
    if backend == "rest":
        from .rest_client import RestClient
        return RestClient(config)
    raise ValueError(f"Unknown sync backend: {backend}")
