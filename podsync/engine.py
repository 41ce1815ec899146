import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional
from .clients.base import RemoteClient, create_remote_client
from .config import settings
from .conflict import Resolution, resolve_progress
from .errors import ErrorPolicy, NoSession, SyncError
from .feeds import FeedFetcher
from .models import (
    Episode, PendingAction, Playlist, ProgressRecord, ProgressUpload, PushResult,
    QueueEntry, RemoteQueueEntry, ServerConfiguration, Subscription, SubscriptionChanges,
    SyncPhase, SyncState,
)
from .status import StatusPublisher, SyncStatus
from .store import LocalStore

logger = logging.getLogger(__name__)

ClientFactory = Callable[[ServerConfiguration], RemoteClient]

def resolve_remote_id(sub: Subscription, changes: SubscriptionChanges) -> Optional[str]:
    """Server id for a subscription: the stored one, else the one reported in this pass's listing."""
    return sub.remote_id or changes.remote_ids.get(sub.feed_url)

def resolve_remote_episode_id(action: PendingAction, episode: Optional[Episode]) -> Optional[str]:
    """Server id for a queued progress write: captured at record time, else linked since."""
    if action.remote_episode_id:
        return action.remote_episode_id
    return episode.remote_id if episode else None

class SyncOrchestrator:
    """
    Runs reconciliation passes between the LocalStore and a sync server.
    One pass at a time: subscriptions, then episode id linking, then progress,
    then (optionally) queue and playlists, with a commit after each phase.
    """

    def __init__(self, store: LocalStore, fetcher: FeedFetcher,
                 client_factory: Optional[ClientFactory] = None,
                 publisher: Optional[StatusPublisher] = None,
                 sync_collections: Optional[bool] = None,
                 fetch_concurrency: Optional[int] = None):
        self.store = store
        self.fetcher = fetcher
        self.client_factory = client_factory or create_remote_client
        self.publisher = publisher or StatusPublisher()
        self.sync_collections = settings.SYNC_COLLECTIONS if sync_collections is None else sync_collections
        self.fetch_concurrency = max(1, fetch_concurrency or settings.FEED_FETCH_CONCURRENCY)
        self._running = False

        state = self.store.get_sync_state()
        if state.status == SyncPhase.RUNNING:
            # Left over from a process that died mid-pass
            logger.warning("Found sync state marked running from a previous run, resetting to idle")
            state.status = SyncPhase.IDLE
            self.store.commit()

    @property
    def status(self) -> SyncStatus:
        return self.publisher.current

    async def perform_sync(self) -> SyncStatus:
        """
        Run one reconciliation pass. Returns immediately with the current status if a
        pass is already running. Raises NoSession before touching any state when not
        logged in, and re-raises any error that aborted the pass.
        """
        if self._running:
            logger.info("Sync already running, skipping")
            return self.publisher.current

        config = self.store.get_server_configuration()
        if not config.authenticated or not config.session_token:
            error = NoSession()
            self.publisher.publish(SyncPhase.FAILED, error.message)
            raise error

        self._running = True
        try:
            return await self._run_pass(config)
        finally:
            self._running = False

    async def _run_pass(self, config: ServerConfiguration) -> SyncStatus:
        state = self.store.get_sync_state()
        state.status = SyncPhase.RUNNING
        state.last_attempt_at = time.time()
        state.last_error = None
        self.publisher.publish(SyncPhase.RUNNING, detail="Starting sync")
        start_time = time.time()

        try:
            self.store.commit()
            async with self.client_factory(config) as client:
                self.publisher.publish(SyncPhase.RUNNING, detail="Syncing subscriptions...")
                await self._reconcile_subscriptions(client, state)
                self.store.commit()

                self.publisher.publish(SyncPhase.RUNNING, detail="Linking episodes...")
                await self._link_episode_ids(client)
                self.store.commit()

                self.publisher.publish(SyncPhase.RUNNING, detail="Syncing episode progress...")
                await self._reconcile_progress(client, state)
                self.store.commit()

                if self.sync_collections and client.supports_collections:
                    self.publisher.publish(SyncPhase.RUNNING, detail="Syncing queue and playlists...")
                    await self._reconcile_queue(client, state)
                    await self._reconcile_playlists(client)
                    self.store.commit()

            state.status = SyncPhase.IDLE
            state.total_syncs += 1
            self.store.commit()

        except Exception as e:
            logger.error(f"Sync failed: {e}", exc_info=True)
            state.status = SyncPhase.FAILED
            state.last_error = str(e)
            state.failed_syncs += 1
            try:
                self.store.commit()
            except SyncError as save_error:
                logger.error(f"Could not persist failed sync state: {save_error}")
            self.publisher.publish(SyncPhase.FAILED, f"Sync failed: {e}")
            raise

        logger.info(f"Sync completed in {time.time() - start_time:.1f}s")
        return self.publisher.publish(SyncPhase.COMPLETED, "Sync complete")

    def _tolerate(self, error: SyncError, context: str) -> bool:
        """
        Apply the error policy to a per-record failure.
        Returns True when the error counts as success, False when the record is skipped;
        raises when the error must abort the pass.
        """
        if error.policy == ErrorPolicy.ABORT_PASS:
            raise error
        if error.policy == ErrorPolicy.ACCEPT:
            logger.info(f"{context}: {error.message} (treated as success)")
            return True
        logger.warning(f"{context} skipped [{error.kind.value}]: {error.message}")
        return False

    # Subscriptions

    async def _reconcile_subscriptions(self, client: RemoteClient, state: SyncState):
        changes = await client.get_subscriptions(state.subscription_cursor)
        logger.info(f"Subscription changes from server - add: {len(changes.added)}, remove: {len(changes.removed)}")

        local_set = {s.feed_url for s in self.store.fetch_subscriptions(lambda s: s.subscribed)}

        # 1. Server additions
        to_materialize = []
        for feed_url in dict.fromkeys(changes.added):
            if feed_url in local_set:
                continue
            existing = self.store.get_subscription(feed_url)
            if existing is not None and existing.needs_sync:
                # Unsubscribed here and not pushed yet; the removal goes out below
                logger.info(f"Keeping pending local unsubscribe for {feed_url}")
                continue
            to_materialize.append(feed_url)
        unfetched = await self._materialize(to_materialize, changes)

        # 2. Server removals
        for feed_url in changes.removed:
            sub = self.store.get_subscription(feed_url)
            if sub is not None and sub.subscribed:
                sub.subscribed = False
                sub.needs_sync = False
                logger.info(f"Marked podcast as unsubscribed: {feed_url}")

        for sub in self.store.fetch_subscriptions(lambda s: not s.remote_id):
            sub.remote_id = resolve_remote_id(sub, changes)

        # 3. Local subscriptions not yet on the server
        remote_set = set(changes.added)
        for sub in self.store.fetch_subscriptions(lambda s: s.subscribed and s.needs_sync):
            if sub.feed_url in remote_set:
                sub.needs_sync = False
                continue
            try:
                remote_id = await client.subscribe(sub.feed_url)
            except SyncError as e:
                if not self._tolerate(e, f"Subscribe {sub.feed_url}"):
                    continue
                remote_id = None
            sub.remote_id = remote_id or resolve_remote_id(sub, changes)
            sub.needs_sync = False
            logger.info(f"Uploaded subscription {sub.feed_url}")

        # 4. Local unsubscribes not yet on the server
        for sub in self.store.fetch_subscriptions(lambda s: not s.subscribed and s.needs_sync):
            try:
                await client.unsubscribe(sub.feed_url, resolve_remote_id(sub, changes))
            except SyncError as e:
                if not self._tolerate(e, f"Unsubscribe {sub.feed_url}"):
                    continue
            sub.needs_sync = False
            logger.info(f"Uploaded unsubscription {sub.feed_url}")

        # A delta cursor would never list an unfetched add again
        if unfetched:
            logger.info(f"Holding subscription cursor, {len(unfetched)} server additions not yet fetched")
        else:
            state.subscription_cursor = changes.new_cursor
        state.last_subscription_sync = time.time()

    async def _materialize(self, feed_urls: List[str], changes: SubscriptionChanges) -> List[str]:
        """Fetch and insert server-added feeds, a few at a time. Returns the feeds that failed to fetch."""
        unfetched = []
        chunk_size = self.fetch_concurrency
        for i in range(0, len(feed_urls), chunk_size):
            chunk = feed_urls[i:i + chunk_size]
            results = await asyncio.gather(*(self.fetcher.parse_feed(url) for url in chunk), return_exceptions=True)
            for feed_url, result in zip(chunk, results):
                if isinstance(result, SyncError):
                    self._tolerate(result, f"Fetch feed {feed_url}")
                    unfetched.append(feed_url)
                    continue
                if isinstance(result, BaseException):
                    raise result
                self.store.materialize_subscription(feed_url, result, remote_id=changes.remote_ids.get(feed_url))
        return unfetched

    # Episode ids

    async def _link_episode_ids(self, client: RemoteClient):
        linked = 0
        for sub in self.store.fetch_subscriptions(lambda s: s.subscribed and s.remote_id is not None):
            unlinked = self.store.fetch_episodes(lambda e: e.feed_url == sub.feed_url and not e.remote_id)
            if not unlinked:
                continue
            try:
                mapping = await client.get_episode_ids(sub.remote_id)
            except SyncError as e:
                self._tolerate(e, f"Link episodes of {sub.feed_url}")
                continue
            for episode in unlinked:
                remote_id = mapping.get(episode.audio_url)
                if remote_id:
                    episode.remote_id = remote_id
                    linked += 1

        for action in self.store.fetch_pending_actions(lambda a: not a.synced and not a.remote_episode_id):
            action.remote_episode_id = resolve_remote_episode_id(action, self.store.get_episode(action.episode_key))

        if linked:
            logger.info(f"Linked {linked} episodes to server ids")

    # Progress

    def _locate_episode(self, record: ProgressRecord) -> Optional[Episode]:
        episode = self.store.find_episode_by_remote_id(record.episode_id)
        if episode is None and record.audio_url:
            episode = self.store.find_episode_by_audio_url(record.audio_url)
            if episode is not None and not episode.remote_id:
                episode.remote_id = record.episode_id
        return episode

    async def _reconcile_progress(self, client: RemoteClient, state: SyncState):
        changes = await client.get_progress(state.progress_cursor)
        logger.info(f"Got {len(changes.records)} progress records from server")

        applied = kept = missing = 0
        for record in changes.records:
            episode = self._locate_episode(record)
            if episode is None:
                missing += 1
                continue
            if resolve_progress(episode.last_synced_at, record.timestamp) == Resolution.REMOTE_WINS:
                if self._supersede_actions(episode, record):
                    # A local write newer than the record is still queued
                    kept += 1
                    continue
                episode.position_s = record.position_s
                episode.played = record.completed
                if record.duration_s:
                    episode.duration_s = record.duration_s
                episode.last_synced_at = record.timestamp
                applied += 1
            else:
                kept += 1
        logger.info(f"Progress from server - applied: {applied}, kept local: {kept}, unknown episode: {missing}")
        self.store.commit()

        await self._upload_pending(client)

        state.progress_cursor = changes.new_cursor
        state.last_progress_sync = time.time()
        pruned = self.store.prune_synced_actions(settings.PENDING_ACTION_RETENTION_SECONDS)
        if pruned:
            logger.debug(f"Pruned {pruned} synced actions")

    def _supersede_actions(self, episode: Episode, record: ProgressRecord) -> int:
        """
        Settle the episode's queued actions written before the record, so they are never uploaded.
        Returns how many newer actions remain queued.
        """
        pending = self.store.fetch_pending_actions(lambda a: not a.synced and a.episode_key == episode.key)
        remaining = 0
        for action in pending:
            if action.created_at > record.timestamp:
                remaining += 1
                continue
            self.store.mark_action_synced(action)
            action.last_error = "Superseded by newer server progress"
        if pending and not remaining:
            logger.debug(f"Superseded {len(pending)} queued actions for {episode.key}")
            episode.needs_sync = False
        return remaining

    async def _upload_pending(self, client: RemoteClient):
        pending = self.store.unsynced_actions()
        if not pending:
            return

        # Newest write per episode supersedes older queued ones
        groups: Dict[str, List[PendingAction]] = {}
        for action in sorted(pending, key=lambda a: a.created_at):
            groups.setdefault(action.episode_key, []).append(action)

        uploads = []
        by_action: Dict[str, List[PendingAction]] = {}
        for key, actions in groups.items():
            latest = actions[-1]
            by_action[latest.id] = actions
            for action in actions:
                action.attempts += 1
            uploads.append(ProgressUpload(
                action_id=latest.id,
                episode_id=resolve_remote_episode_id(latest, self.store.get_episode(key)),
                podcast_url=latest.podcast_url,
                audio_url=latest.audio_url,
                position_s=latest.position_s,
                duration_s=latest.duration_s,
                completed=latest.completed,
                timestamp=latest.created_at,
            ))

        logger.info(f"Uploading {len(uploads)} progress updates ({len(pending)} queued actions)")
        try:
            results = await client.push_progress(uploads)
        except SyncError as e:
            if not self._tolerate(e, "Upload progress"):
                for action in pending:
                    action.last_error = e.message
                return
            results = [PushResult(action_id=u.action_id, success=True) for u in uploads]

        confirmed = 0
        for result in results:
            actions = by_action.get(result.action_id)
            if not actions:
                continue
            if not result.success:
                logger.warning(f"Server rejected progress for {actions[-1].episode_key}: {result.error}")
                for action in actions:
                    action.last_error = result.error
                continue
            for action in actions:
                self.store.mark_action_synced(action)
            self._settle_episode(actions[-1])
            confirmed += 1
        logger.info(f"Server confirmed {confirmed}/{len(uploads)} progress updates")

    def _settle_episode(self, latest: PendingAction):
        episode = self.store.get_episode(latest.episode_key)
        if episode is None:
            return
        episode.last_synced_at = max(episode.last_synced_at or 0.0, latest.created_at)
        still_pending = self.store.fetch_pending_actions(lambda a: not a.synced and a.episode_key == latest.episode_key)
        if not still_pending:
            episode.needs_sync = False

    # Queue & playlists

    async def _reconcile_queue(self, client: RemoteClient, state: SyncState):
        try:
            remote = await client.get_queue()
        except SyncError as e:
            self._tolerate(e, "Fetch queue")
            return
        remote_by_id = {r.remote_id: r for r in remote}

        known = set()
        for entry in self.store.fetch_queue():
            if entry.remote_id and entry.remote_id not in remote_by_id and not entry.removed:
                self.store.delete_queue_entry(entry.id)
            elif entry.remote_id:
                known.add(entry.remote_id)

        for r in remote:
            if r.remote_id not in known:
                self.store.insert_queue_entry(QueueEntry(remote_id=r.remote_id, remote_episode_id=r.episode_id, position=r.position))

        for entry in self.store.fetch_queue(lambda q: q.needs_sync):
            if entry.removed:
                if entry.remote_id:
                    try:
                        await client.remove_from_queue(entry.remote_id)
                    except SyncError as e:
                        if not self._tolerate(e, f"Remove queue item {entry.remote_id}"):
                            continue
                self.store.delete_queue_entry(entry.id)
            elif not entry.remote_id:
                try:
                    entry.remote_id = await client.add_to_queue(entry.remote_episode_id)
                except SyncError as e:
                    if self._tolerate(e, f"Queue episode {entry.remote_episode_id}"):
                        # Already queued remotely; its entry arrives with the next listing
                        self.store.delete_queue_entry(entry.id)
                    continue
                entry.needs_sync = False
            else:
                entry.needs_sync = False

        if state.queue_needs_reorder:
            order = [
                RemoteQueueEntry(remote_id=q.remote_id, episode_id=q.remote_episode_id, position=i)
                for i, q in enumerate(self.store.fetch_queue(lambda q: q.remote_id is not None and not q.removed))
            ]
            try:
                remote = await client.reorder_queue(order)
                state.queue_needs_reorder = False
            except SyncError as e:
                if not self._tolerate(e, "Reorder queue"):
                    return
                state.queue_needs_reorder = False
                return

        positions = {r.remote_id: r.position for r in remote}
        for entry in self.store.fetch_queue(lambda q: q.remote_id in positions):
            entry.position = positions[entry.remote_id]

    async def _reconcile_playlists(self, client: RemoteClient):
        try:
            remote = await client.get_playlists()
        except SyncError as e:
            self._tolerate(e, "Fetch playlists")
            return
        remote_by_id = {r.remote_id: r for r in remote}

        known = set()
        for playlist in self.store.fetch_playlists():
            if not playlist.remote_id:
                continue
            r = remote_by_id.get(playlist.remote_id)
            if r is None:
                self.store.delete_playlist(playlist.id)
                continue
            known.add(playlist.remote_id)
            if not playlist.needs_sync:
                playlist.name = r.name
                playlist.description = r.description

        for r in remote:
            if r.remote_id in known:
                continue
            unpushed = self.store.fetch_playlists(lambda p: not p.remote_id and not p.removed and p.name == r.name)
            if unpushed:
                # Created on both sides under the same name
                unpushed[0].remote_id = r.remote_id
            else:
                self.store.insert_playlist(Playlist(remote_id=r.remote_id, name=r.name, description=r.description))

        for playlist in self.store.fetch_playlists(lambda p: p.needs_sync):
            try:
                if playlist.removed:
                    if playlist.remote_id:
                        await client.delete_playlist(playlist.remote_id)
                    self.store.delete_playlist(playlist.id)
                    continue
                if playlist.remote_id:
                    await client.update_playlist(playlist.remote_id, playlist.name, playlist.description)
                else:
                    playlist.remote_id = await client.create_playlist(playlist.name, playlist.description)
            except SyncError as e:
                if not self._tolerate(e, f"Push playlist '{playlist.name}'"):
                    continue
                if playlist.removed:
                    self.store.delete_playlist(playlist.id)
                    continue
                if not playlist.remote_id:
                    match = next((r for r in remote if r.name == playlist.name), None)
                    if match is None:
                        continue
                    playlist.remote_id = match.remote_id
            playlist.needs_sync = False
