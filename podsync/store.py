import json
import logging
import os
import time
import fcntl
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional
from pydantic import ValidationError as PydanticValidationError
from .models import (
    Episode, LibraryDocument, ParsedFeed, PendingAction, Playlist, QueueEntry,
    ServerConfiguration, Subscription, SyncState, episode_key,
)
from .errors import LocalStoreError
from .config import settings

logger = logging.getLogger(__name__)

class LocalStore:
    """
    Local replica of the podcast library, persisted as a single JSON document.
    Reads and writes are synchronous and in-process; commit() is the durability boundary.
    """

    def __init__(self, path: str, persist: Optional[bool] = None):
        self.path = Path(path)
        self.persist = settings.PERSIST_ENABLED if persist is None else persist
        self.document = LibraryDocument()
        self._load()

    def _load(self):
        if not self.path.exists():
            logger.info(f"No library file found at {self.path}, creating new.")
            return

        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            self.document = LibraryDocument(**data)
        except (OSError, ValueError, PydanticValidationError) as e:
            # A corrupt replica is surfaced to the caller, never replaced
            raise LocalStoreError(f"Failed to load library from {self.path}: {e}") from e

    def commit(self):
        if not self.persist:
            return

        tmp_path = self.path.with_suffix('.tmp')
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, 'w') as f:
                try:
                    fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
                except BlockingIOError as e:
                    raise LocalStoreError(f"Library file {tmp_path} is locked by another writer") from e

                try:
                    json.dump(self.document.model_dump(mode="json"), f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                finally:
                    fcntl.flock(f, fcntl.LOCK_UN)

            os.rename(tmp_path, self.path)

        except OSError as e:
            logger.error(f"Failed to save library to {self.path}: {e}")
            raise LocalStoreError(f"Failed to save library: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[LibraryDocument]:
        """
        Group synchronous writes: restore the previous contents on error, commit on success.
        Records are restored in place, so references held by other tasks stay live.
        Must not be held across an await, or writes from other tasks could be rolled back.
        """
        snapshot = self.document.model_copy(deep=True)
        try:
            yield self.document
        except BaseException:
            self._rollback(snapshot)
            raise
        self.commit()

    def _rollback(self, snapshot: LibraryDocument):
        doc = self.document
        for name in ("sync_state", "server_configuration"):
            live, saved = getattr(doc, name), getattr(snapshot, name)
            if live is not None and saved is not None:
                _assign(live, saved)
            else:
                setattr(doc, name, saved)

        for name in ("subscriptions", "episodes"):
            live = getattr(doc, name)
            restored = {}
            for key, saved in getattr(snapshot, name).items():
                current = live.get(key)
                if current is not None:
                    _assign(current, saved)
                    saved = current
                restored[key] = saved
            live.clear()
            live.update(restored)

        for name in ("pending_actions", "queue", "playlists"):
            live = getattr(doc, name)
            by_id = {record.id: record for record in live}
            restored = []
            for saved in getattr(snapshot, name):
                current = by_id.get(saved.id)
                if current is not None:
                    _assign(current, saved)
                    saved = current
                restored.append(saved)
            live[:] = restored

    # Singletons

    def get_sync_state(self) -> SyncState:
        if self.document.sync_state is None:
            self.document.sync_state = SyncState()
        return self.document.sync_state

    def get_server_configuration(self) -> ServerConfiguration:
        if self.document.server_configuration is None:
            self.document.server_configuration = ServerConfiguration()
        return self.document.server_configuration

    # Subscriptions

    def get_subscription(self, feed_url: str) -> Optional[Subscription]:
        return self.document.subscriptions.get(feed_url)

    def fetch_subscriptions(self, predicate: Optional[Callable[[Subscription], bool]] = None) -> List[Subscription]:
        subs = list(self.document.subscriptions.values())
        if predicate is None:
            return subs
        return [s for s in subs if predicate(s)]

    def insert_subscription(self, subscription: Subscription) -> Subscription:
        if subscription.feed_url in self.document.subscriptions:
            raise LocalStoreError(f"Subscription already exists: {subscription.feed_url}")
        self.document.subscriptions[subscription.feed_url] = subscription
        return subscription

    def delete_subscription(self, feed_url: str):
        """Purge a subscription with its episodes and their queued actions."""
        self.document.subscriptions.pop(feed_url, None)
        for key in [k for k, e in self.document.episodes.items() if e.feed_url == feed_url]:
            self.delete_episode(key)

    def materialize_subscription(self, feed_url: str, parsed: ParsedFeed, remote_id: Optional[str] = None,
                                 dirty: bool = False) -> Subscription:
        """
        Create or re-flag the subscription for feed_url from a parsed feed.
        Episodes are inserted only for GUIDs not yet known for this feed.
        """
        with self.transaction():
            sub = self.get_subscription(feed_url)
            if sub is None:
                sub = self.insert_subscription(Subscription(feed_url=feed_url))
            sub.subscribed = True
            sub.needs_sync = dirty
            if remote_id:
                sub.remote_id = remote_id
            added = self.apply_feed(sub, parsed)
        logger.info(f"Materialized {feed_url} ({added} new episodes)")
        return sub

    def apply_feed(self, sub: Subscription, parsed: ParsedFeed) -> int:
        """Update metadata from a parsed feed and insert unseen episodes. Returns the number inserted."""
        sub.title = parsed.title
        sub.author = parsed.author
        sub.description = parsed.description
        sub.artwork_url = parsed.artwork_url
        sub.last_refreshed_at = time.time()

        added = 0
        for item in parsed.episodes:
            key = episode_key(sub.feed_url, item.guid)
            if key in self.document.episodes:
                continue
            self.document.episodes[key] = Episode(
                feed_url=sub.feed_url,
                guid=item.guid,
                title=item.title,
                audio_url=item.audio_url,
                description=item.description,
                publish_date=item.publish_date,
                duration_s=item.duration_s,
                artwork_url=item.artwork_url,
            )
            added += 1
        return added

    # Episodes

    def get_episode(self, key: str) -> Optional[Episode]:
        return self.document.episodes.get(key)

    def fetch_episodes(self, predicate: Optional[Callable[[Episode], bool]] = None) -> List[Episode]:
        episodes = list(self.document.episodes.values())
        if predicate is None:
            return episodes
        return [e for e in episodes if predicate(e)]

    def find_episode_by_remote_id(self, remote_id: str) -> Optional[Episode]:
        for episode in self.document.episodes.values():
            if episode.remote_id == remote_id:
                return episode
        return None

    def find_episode_by_audio_url(self, audio_url: str) -> Optional[Episode]:
        for episode in self.document.episodes.values():
            if episode.audio_url == audio_url:
                return episode
        return None

    def delete_episode(self, key: str):
        self.document.episodes.pop(key, None)
        self.document.pending_actions = [a for a in self.document.pending_actions if a.episode_key != key]

    # Pending actions

    def enqueue_action(self, action: PendingAction) -> PendingAction:
        self.document.pending_actions.append(action)
        return action

    def fetch_pending_actions(self, predicate: Optional[Callable[[PendingAction], bool]] = None) -> List[PendingAction]:
        if predicate is None:
            return list(self.document.pending_actions)
        return [a for a in self.document.pending_actions if predicate(a)]

    def unsynced_actions(self) -> List[PendingAction]:
        return self.fetch_pending_actions(lambda a: not a.synced)

    def mark_action_synced(self, action: PendingAction, at: Optional[float] = None):
        action.synced = True
        action.synced_at = at or time.time()
        action.last_error = None

    def prune_synced_actions(self, older_than_s: float) -> int:
        cutoff = time.time() - older_than_s
        before = len(self.document.pending_actions)
        self.document.pending_actions = [
            a for a in self.document.pending_actions
            if not (a.synced and (a.synced_at or a.created_at) < cutoff)
        ]
        return before - len(self.document.pending_actions)

    # Queue & playlists

    def fetch_queue(self, predicate: Optional[Callable[[QueueEntry], bool]] = None) -> List[QueueEntry]:
        entries = sorted(self.document.queue, key=lambda q: q.position)
        if predicate is None:
            return entries
        return [q for q in entries if predicate(q)]

    def insert_queue_entry(self, entry: QueueEntry) -> QueueEntry:
        self.document.queue.append(entry)
        return entry

    def delete_queue_entry(self, entry_id: str):
        self.document.queue = [q for q in self.document.queue if q.id != entry_id]

    def fetch_playlists(self, predicate: Optional[Callable[[Playlist], bool]] = None) -> List[Playlist]:
        if predicate is None:
            return list(self.document.playlists)
        return [p for p in self.document.playlists if predicate(p)]

    def insert_playlist(self, playlist: Playlist) -> Playlist:
        self.document.playlists.append(playlist)
        return playlist

    def delete_playlist(self, playlist_id: str):
        self.document.playlists = [p for p in self.document.playlists if p.id != playlist_id]

def _assign(live, saved):
    for field in type(saved).model_fields:
        setattr(live, field, getattr(saved, field))
