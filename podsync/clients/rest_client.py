import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from ..config import settings
from ..errors import ConflictError, DecodingError, NotFoundError
from ..models import (
    ProgressChanges, ProgressRecord, ProgressUpload, PushResult, RemotePlaylist,
    RemoteQueueEntry, ServerConfiguration, SubscriptionChanges,
)
from .base import RemoteClient

logger = logging.getLogger(__name__)

def parse_iso(value: str) -> float:
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise DecodingError(f"Invalid date: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()

def _items(data: Any, key: str) -> List[Dict[str, Any]]:
    if not isinstance(data, dict) or not isinstance(data.get(key), list):
        raise DecodingError(f"Expected a '{key}' list in response")
    return data[key]

class RestClient(RemoteClient):
    """
    Podcast service REST adapter: the server exposes full snapshots of podcasts and
    progress, so deltas are computed here against the opaque cursors it hands back.
    Subscription cursor: JSON list of feed URLs seen in the previous snapshot.
    Progress cursor: newest lastUpdatedAt already consumed.
    """

    supports_collections = True

    def __init__(self, config: ServerConfiguration, transport=None):
        super().__init__(config, transport=transport)
        if config.session_token:
            self.client.headers["Authorization"] = f"Bearer {config.session_token}"

    async def login(self, username: str, password: Optional[str]) -> str:
        data = await self._json("POST", "/api/auth/login", json={"email": username, "password": password})
        try:
            api_key = data["user"]["apiKey"]
        except (KeyError, TypeError) as e:
            raise DecodingError("Login response did not include an API key") from e
        self.client.headers["Authorization"] = f"Bearer {api_key}"
        logger.info(f"Logged in to podcast service as {username}")
        return api_key

    # Subscriptions

    async def _snapshot(self) -> Dict[str, str]:
        podcasts = _items(await self._json("GET", "/api/podcasts"), "podcasts")
        try:
            return {p["feedUrl"]: str(p["id"]) for p in podcasts}
        except (KeyError, TypeError) as e:
            raise DecodingError(f"Malformed podcast in snapshot: {e}") from e

    async def get_subscriptions(self, cursor: Optional[str]) -> SubscriptionChanges:
        current = await self._snapshot()
        previous: List[str] = []
        if cursor:
            try:
                previous = json.loads(cursor)
            except ValueError:
                logger.warning("Discarding unreadable subscription cursor")

        return SubscriptionChanges(
            added=sorted(current),
            removed=[url for url in previous if url not in current],
            new_cursor=json.dumps(sorted(current)),
            remote_ids=current,
        )

    async def push_subscription_change(self, add: List[str], remove: List[str]) -> None:
        for feed_url in add:
            try:
                await self.subscribe(feed_url)
            except ConflictError:
                logger.debug(f"{feed_url} already subscribed on server")
        for feed_url in remove:
            await self.unsubscribe(feed_url, None)

    async def subscribe(self, feed_url: str) -> Optional[str]:
        data = await self._json("POST", "/api/podcasts/subscribe", json={"feedUrl": feed_url})
        try:
            return str(data["podcast"]["id"])
        except (KeyError, TypeError) as e:
            raise DecodingError("Subscribe response did not include a podcast id") from e

    async def unsubscribe(self, feed_url: str, remote_id: Optional[str]) -> None:
        if not remote_id:
            remote_id = (await self._snapshot()).get(feed_url)
            if not remote_id:
                logger.debug(f"{feed_url} is not subscribed on server")
                return
        try:
            await self._request("DELETE", f"/api/podcasts/{remote_id}")
        except NotFoundError:
            logger.debug(f"Podcast {remote_id} already removed on server")

    async def refresh_feed(self, remote_id: Optional[str]) -> None:
        if remote_id:
            await self._request("POST", f"/api/podcasts/{remote_id}/refresh")

    async def get_episode_ids(self, remote_podcast_id: str) -> Dict[str, str]:
        mapping: Dict[str, str] = {}
        offset = 0
        while True:
            data = await self._json("GET", "/api/episodes", params={
                "podcastId": remote_podcast_id,
                "limit": settings.EPISODE_PAGE_SIZE,
                "offset": offset,
            })
            episodes = _items(data, "episodes")
            for ep in episodes:
                if ep.get("audioUrl") and ep.get("id"):
                    mapping[ep["audioUrl"]] = str(ep["id"])
            offset += len(episodes)
            if not episodes or offset >= int(data.get("total") or 0):
                break
        return mapping

    # Progress

    async def get_progress(self, cursor: Optional[str]) -> ProgressChanges:
        since = float(cursor) if cursor else None
        rows = _items(await self._json("GET", "/api/progress"), "progress")

        records = []
        newest = since
        for row in rows:
            try:
                ts = parse_iso(row["lastUpdatedAt"])
                record = ProgressRecord(
                    episode_id=str(row["episodeId"]),
                    position_s=float(row["positionSeconds"]),
                    duration_s=float(row["durationSeconds"]) if row.get("durationSeconds") is not None else None,
                    completed=bool(row.get("completed", False)),
                    timestamp=ts,
                )
            except (KeyError, TypeError, ValueError, DecodingError) as e:
                logger.warning(f"Skipping malformed progress row {row!r}: {e}")
                continue
            if since is not None and ts <= since:
                continue
            records.append(record)
            newest = ts if newest is None else max(newest, ts)

        return ProgressChanges(records=records, new_cursor=str(newest) if newest is not None else cursor)

    async def push_progress(self, uploads: List[ProgressUpload]) -> List[PushResult]:
        results: List[PushResult] = []
        by_episode: Dict[str, ProgressUpload] = {}
        for u in uploads:
            if not u.episode_id:
                results.append(PushResult(action_id=u.action_id, success=False, error="Episode is not linked to a server id"))
            else:
                by_episode[u.episode_id] = u

        if not by_episode:
            return results

        updates = [
            {
                "episodeId": episode_id,
                "positionSeconds": int(u.position_s),
                "durationSeconds": int(u.duration_s or 0),
                "completed": u.completed,
            }
            for episode_id, u in by_episode.items()
        ]
        rows = _items(await self._json("POST", "/api/progress", json={"updates": updates}), "results")

        answered = set()
        for row in rows:
            u = by_episode.get(str(row.get("episodeId")))
            if u is None:
                continue
            answered.add(u.episode_id)
            results.append(PushResult(action_id=u.action_id, success=bool(row.get("success")), error=row.get("error")))
        for episode_id, u in by_episode.items():
            if episode_id not in answered:
                results.append(PushResult(action_id=u.action_id, success=False, error="No result returned by server"))
        return results

    # Queue

    def _queue_entries(self, rows: List[Dict[str, Any]]) -> List[RemoteQueueEntry]:
        try:
            return [RemoteQueueEntry(remote_id=str(r["id"]), episode_id=str(r["episodeId"]), position=int(r["position"])) for r in rows]
        except (KeyError, TypeError, ValueError) as e:
            raise DecodingError(f"Malformed queue item: {e}") from e

    async def get_queue(self) -> List[RemoteQueueEntry]:
        return self._queue_entries(_items(await self._json("GET", "/api/queue"), "queue"))

    async def add_to_queue(self, episode_id: str) -> str:
        data = await self._json("POST", "/api/queue", json={"episodeId": episode_id})
        try:
            return str(data["queueItem"]["id"])
        except (KeyError, TypeError) as e:
            raise DecodingError("Queue response did not include the new item") from e

    async def remove_from_queue(self, entry_id: str) -> None:
        try:
            await self._request("DELETE", f"/api/queue/{entry_id}")
        except NotFoundError:
            logger.debug(f"Queue item {entry_id} already removed on server")

    async def reorder_queue(self, order: List[RemoteQueueEntry]) -> List[RemoteQueueEntry]:
        body = {"items": [{"id": e.remote_id, "position": e.position} for e in order]}
        return self._queue_entries(_items(await self._json("PUT", "/api/queue", json=body), "queue"))

    # Playlists

    async def get_playlists(self) -> List[RemotePlaylist]:
        rows = _items(await self._json("GET", "/api/playlists"), "playlists")
        try:
            return [RemotePlaylist(remote_id=str(r["id"]), name=r["name"], description=r.get("description")) for r in rows]
        except (KeyError, TypeError) as e:
            raise DecodingError(f"Malformed playlist: {e}") from e

    async def create_playlist(self, name: str, description: Optional[str]) -> str:
        data = await self._json("POST", "/api/playlists", json={"name": name, "description": description})
        try:
            return str(data["playlist"]["id"])
        except (KeyError, TypeError) as e:
            raise DecodingError("Playlist response did not include an id") from e

    async def update_playlist(self, remote_id: str, name: str, description: Optional[str]) -> None:
        await self._request("PUT", f"/api/playlists/{remote_id}", json={"name": name, "description": description})

    async def delete_playlist(self, remote_id: str) -> None:
        try:
            await self._request("DELETE", f"/api/playlists/{remote_id}")
        except NotFoundError:
            logger.debug(f"Playlist {remote_id} already removed on server")
