import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional
from .clients.base import RemoteClient, create_remote_client
from .config import settings
from .errors import NotFoundError, SyncError, ValidationError
from .feeds import FeedFetcher
from .models import PendingAction, Playlist, QueueEntry, ServerConfiguration, Subscription
from .store import LocalStore

logger = logging.getLogger(__name__)

class Library:
    """
    Local edits to the podcast library: session, subscriptions, feed refresh, playback
    progress, queue and playlists. Every edit is committed immediately and flagged
    dirty; SyncOrchestrator pushes it on the next pass.
    """

    def __init__(self, store: LocalStore, fetcher: FeedFetcher,
                 client_factory: Optional[Callable[[ServerConfiguration], RemoteClient]] = None,
                 fetch_concurrency: Optional[int] = None):
        self.store = store
        self.fetcher = fetcher
        self.client_factory = client_factory or create_remote_client
        self.fetch_concurrency = max(1, fetch_concurrency or settings.FEED_FETCH_CONCURRENCY)

    # Session

    async def login(self, server_url: str, username: str, password: Optional[str]) -> ServerConfiguration:
        candidate = ServerConfiguration(server_url=server_url, username=username)
        async with self.client_factory(candidate) as client:
            token = await client.login(username, password)

        config = self.store.get_server_configuration()
        if (config.server_url, config.username) != (server_url, username):
            # Cursors belong to the previous account
            state = self.store.get_sync_state()
            state.subscription_cursor = None
            state.progress_cursor = None

        config.server_url = server_url
        config.username = username
        config.session_token = token
        config.authenticated = True
        config.last_authenticated_at = time.time()
        self.store.commit()
        logger.info(f"Logged in to {server_url} as {username}")
        return config

    def logout(self):
        config = self.store.get_server_configuration()
        config.session_token = None
        config.authenticated = False
        self.store.commit()
        logger.info("Logged out")

    # Subscriptions

    async def subscribe(self, feed_url: str) -> Subscription:
        sub = self.store.get_subscription(feed_url)
        if sub is not None:
            if not sub.subscribed:
                sub.subscribed = True
                sub.needs_sync = True
                self.store.commit()
            return sub

        parsed = await self.fetcher.parse_feed(feed_url)
        return self.store.materialize_subscription(feed_url, parsed, dirty=True)

    def unsubscribe(self, feed_url: str):
        sub = self.store.get_subscription(feed_url)
        if sub is None:
            raise NotFoundError(f"Not subscribed to {feed_url}")
        sub.subscribed = False
        sub.needs_sync = True
        self.store.commit()

    async def refresh(self, feed_url: str) -> int:
        """Re-read a feed and insert its new episodes. Returns how many were added."""
        sub = self.store.get_subscription(feed_url)
        if sub is None:
            raise NotFoundError(f"Not subscribed to {feed_url}")

        parsed = await self.fetcher.parse_feed(feed_url)
        with self.store.transaction():
            added = self.store.apply_feed(sub, parsed)
        logger.info(f"Refreshed {feed_url}: {added} new episodes")

        config = self.store.get_server_configuration()
        if config.authenticated and sub.remote_id:
            try:
                async with self.client_factory(config) as client:
                    await client.refresh_feed(sub.remote_id)
            except SyncError as e:
                logger.warning(f"Server refresh of {feed_url} failed [{e.kind.value}]: {e.message}")
        return added

    async def refresh_all(self) -> Dict[str, int]:
        feed_urls = [s.feed_url for s in self.store.fetch_subscriptions(lambda s: s.subscribed)]
        added: Dict[str, int] = {}

        chunk_size = self.fetch_concurrency
        for i in range(0, len(feed_urls), chunk_size):
            chunk = feed_urls[i:i + chunk_size]
            results = await asyncio.gather(*(self.refresh(url) for url in chunk), return_exceptions=True)
            for feed_url, result in zip(chunk, results):
                if isinstance(result, SyncError):
                    logger.warning(f"Refresh of {feed_url} failed [{result.kind.value}]: {result.message}")
                    continue
                if isinstance(result, BaseException):
                    raise result
                added[feed_url] = result
        return added

    # Playback

    def record_progress(self, key: str, position_s: float, duration_s: Optional[float] = None,
                        completed: bool = False) -> PendingAction:
        episode = self.store.get_episode(key)
        if episode is None:
            raise NotFoundError(f"Unknown episode {key}")
        if position_s < 0:
            raise ValidationError(f"Position must not be negative: {position_s}")

        now = time.time()
        with self.store.transaction():
            episode.position_s = position_s
            if duration_s:
                episode.duration_s = duration_s
            episode.played = completed
            episode.last_played_at = now
            episode.needs_sync = True
            action = self.store.enqueue_action(PendingAction(
                episode_key=key,
                remote_episode_id=episode.remote_id,
                podcast_url=episode.feed_url,
                audio_url=episode.audio_url,
                position_s=position_s,
                duration_s=episode.duration_s,
                completed=completed,
                created_at=now,
            ))
        return action

    # Queue

    def _queue_entry(self, entry_id: str) -> QueueEntry:
        for entry in self.store.fetch_queue():
            if entry.id == entry_id:
                return entry
        raise NotFoundError(f"Unknown queue entry {entry_id}")

    def enqueue(self, key: str) -> QueueEntry:
        episode = self.store.get_episode(key)
        if episode is None:
            raise NotFoundError(f"Unknown episode {key}")
        if not episode.remote_id:
            raise ValidationError(f"Episode {key} is not linked to a server id yet")

        entries = self.store.fetch_queue()
        position = entries[-1].position + 1 if entries else 0
        entry = self.store.insert_queue_entry(QueueEntry(remote_episode_id=episode.remote_id, position=position, needs_sync=True))
        self.store.commit()
        return entry

    def dequeue(self, entry_id: str):
        entry = self._queue_entry(entry_id)
        if entry.remote_id is None:
            self.store.delete_queue_entry(entry.id)
        else:
            entry.removed = True
            entry.needs_sync = True
        self.store.commit()

    def move(self, entry_id: str, index: int):
        entry = self._queue_entry(entry_id)
        entries = [q for q in self.store.fetch_queue() if q.id != entry.id]
        entries.insert(max(0, min(index, len(entries))), entry)
        for position, q in enumerate(entries):
            q.position = position
        self.store.get_sync_state().queue_needs_reorder = True
        self.store.commit()

    # Playlists

    def _playlist(self, playlist_id: str) -> Playlist:
        for playlist in self.store.fetch_playlists(lambda p: not p.removed):
            if playlist.id == playlist_id:
                return playlist
        raise NotFoundError(f"Unknown playlist {playlist_id}")

    def create_playlist(self, name: str, description: Optional[str] = None) -> Playlist:
        if not name.strip():
            raise ValidationError("Playlist name must not be empty")
        playlist = self.store.insert_playlist(Playlist(name=name, description=description, needs_sync=True))
        self.store.commit()
        return playlist

    def rename_playlist(self, playlist_id: str, name: str, description: Optional[str] = None) -> Playlist:
        if not name.strip():
            raise ValidationError("Playlist name must not be empty")
        playlist = self._playlist(playlist_id)
        playlist.name = name
        playlist.description = description
        playlist.needs_sync = True
        self.store.commit()
        return playlist

    def delete_playlist(self, playlist_id: str):
        playlist = self._playlist(playlist_id)
        if playlist.remote_id is None:
            self.store.delete_playlist(playlist.id)
        else:
            playlist.removed = True
            playlist.needs_sync = True
        self.store.commit()

    def playlists(self) -> List[Playlist]:
        return self.store.fetch_playlists(lambda p: not p.removed)
