import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, List, Optional
from urllib.parse import quote
from ..config import settings
from ..errors import DecodingError, NoSession, NotFoundError, SyncError, ValidationError
from ..models import (
    ProgressChanges, ProgressRecord, ProgressUpload, PushResult, ServerConfiguration,
    SubscriptionChanges,
)
from .base import RemoteClient

logger = logging.getLogger(__name__)

OPML_FEED_URL = re.compile(r'xmlUrl="([^"]*)"')

def parse_timestamp(value: Any) -> Optional[float]:
    """gpodder timestamps are ISO 8601 (usually without offset, meaning UTC) or epoch numbers."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(value)
    except (TypeError, ValueError):
        pass
    try:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as e:
        raise DecodingError(f"Invalid timestamp: {value!r}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()

def format_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")

class GpodderClient(RemoteClient):
    """
    gpodder API v2 adapter: subscriptions are add/remove deltas per device,
    progress is an append-only log of episode actions. Podcasts and episodes are
    identified by their URLs, so there are no server ids.
    """

    def __init__(self, config: ServerConfiguration, transport=None, device_id: Optional[str] = None):
        super().__init__(config, transport=transport)
        self.username = quote(config.username, safe="-_.")
        self.device_id = quote(device_id or settings.DEVICE_ID, safe="-_.")
        if config.session_token:
            self.client.headers["Cookie"] = config.session_token

    async def login(self, username: str, password: Optional[str]) -> str:
        user = quote(username, safe="-_.")
        resp = await self._request("POST", f"/api/2/auth/{user}/login.json", auth=(username, password or ""))
        cookie = "; ".join(f"{name}={value}" for name, value in resp.cookies.items())
        if not cookie:
            cookie = resp.headers.get("set-cookie", "").split(";")[0]
        if not cookie:
            raise NoSession("Server accepted the login but returned no session cookie")
        self.username = user
        self.client.headers["Cookie"] = cookie
        logger.info(f"Logged in to gpodder server as {username}")
        return cookie

    # Subscriptions

    async def get_subscriptions(self, cursor: Optional[str]) -> SubscriptionChanges:
        path = f"/api/2/subscriptions/{self.username}/{self.device_id}.json"
        try:
            data = await self._json("GET", path, params={"since": cursor or "0"})
        except (NotFoundError, ValidationError) as e:
            logger.info(f"Device subscriptions endpoint unavailable ({e.status_code}), trying per-user endpoints")
            return await self._get_subscriptions_without_device()

        if not isinstance(data, dict):
            raise DecodingError(f"Unexpected subscriptions response: {type(data).__name__}")
        try:
            return SubscriptionChanges(
                added=[str(u) for u in data.get("add", [])],
                removed=[str(u) for u in data.get("remove", [])],
                new_cursor=str(int(data["timestamp"])),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise DecodingError(f"Malformed subscriptions response: {e}") from e

    async def _get_subscriptions_without_device(self) -> SubscriptionChanges:
        endpoints = [
            f"/api/2/subscriptions/{self.username}.json",
            f"/subscriptions/{self.username}.json",
            f"/api/2/subscriptions/{self.username}",
            f"/subscriptions/{self.username}",
        ]
        for endpoint in endpoints:
            try:
                resp = await self._request("GET", endpoint)
            except NoSession:
                raise
            except SyncError as e:
                logger.debug(f"Endpoint {endpoint} failed: {e}")
                continue

            # Full snapshot: everything is an addition, removals are unknowable
            now = str(int(time.time()))
            if "<opml" in resp.text:
                urls = OPML_FEED_URL.findall(resp.text)
                logger.info(f"Parsed {len(urls)} feed URLs from OPML at {endpoint}")
                return SubscriptionChanges(added=urls, new_cursor=now)

            data = self._decode(resp)
            if isinstance(data, list):
                return SubscriptionChanges(added=[str(u) for u in data], new_cursor=now)
            if isinstance(data, dict) and "add" in data:
                return SubscriptionChanges(
                    added=[str(u) for u in data.get("add", [])],
                    removed=[str(u) for u in data.get("remove", [])],
                    new_cursor=str(data.get("timestamp") or now),
                )
            logger.warning(f"Unrecognized subscriptions body at {endpoint}, assuming no subscriptions")
            return SubscriptionChanges(new_cursor=now)

        raise NotFoundError("No subscriptions endpoint answered")

    async def push_subscription_change(self, add: List[str], remove: List[str]) -> None:
        if not add and not remove:
            return
        body = {"add": add, "remove": remove}
        try:
            await self._request("POST", f"/api/2/subscriptions/{self.username}/{self.device_id}.json", json=body)
            return
        except (NotFoundError, ValidationError) as e:
            logger.info(f"Device subscription update unavailable ({e.status_code}), trying per-user endpoints")

        last_error: Optional[SyncError] = None
        for endpoint in (f"/api/2/subscriptions/{self.username}.json", f"/subscriptions/{self.username}.json"):
            try:
                await self._request("POST", endpoint, json=body)
                return
            except NoSession:
                raise
            except SyncError as e:
                logger.debug(f"Update endpoint {endpoint} failed: {e}")
                last_error = e
        raise last_error or NotFoundError("No subscription update endpoint answered")

    async def subscribe(self, feed_url: str) -> Optional[str]:
        await self.push_subscription_change([feed_url], [])
        return None

    async def unsubscribe(self, feed_url: str, remote_id: Optional[str]) -> None:
        await self.push_subscription_change([], [feed_url])

    # Progress

    async def get_progress(self, cursor: Optional[str]) -> ProgressChanges:
        params = {"since": cursor} if cursor else {}
        data = await self._json("GET", f"/api/2/episodes/{self.username}.json", params=params)
        if not isinstance(data, dict) or "actions" not in data:
            raise DecodingError("Malformed episode actions response")

        server_ts = parse_timestamp(data.get("timestamp")) or time.time()
        records = []
        for action in data["actions"]:
            if action.get("action", "").lower() != "play" or action.get("position") is None:
                continue
            try:
                position = float(action["position"])
                total = float(action["total"]) if action.get("total") is not None else None
                records.append(ProgressRecord(
                    episode_id=action["episode"],
                    audio_url=action["episode"],
                    podcast_url=action.get("podcast"),
                    position_s=position,
                    duration_s=total,
                    completed=bool(total and position >= total),
                    timestamp=parse_timestamp(action.get("timestamp")) or server_ts,
                ))
            except (KeyError, TypeError, ValueError, DecodingError) as e:
                # One malformed action must not hide the rest of the log
                logger.warning(f"Skipping malformed episode action {action!r}: {e}")

        return ProgressChanges(records=records, new_cursor=str(int(server_ts)))

    async def push_progress(self, uploads: List[ProgressUpload]) -> List[PushResult]:
        if not uploads:
            return []
        actions = []
        for u in uploads:
            action = {
                "podcast": u.podcast_url,
                "episode": u.audio_url,
                "device": self.device_id,
                "action": "play",
                "timestamp": format_timestamp(u.timestamp),
                "position": int(u.position_s),
            }
            if u.duration_s is not None:
                action["started"] = 0
                action["total"] = int(u.duration_s)
            actions.append(action)

        # The action log is accepted or rejected as a whole
        await self._request("POST", f"/api/2/episodes/{self.username}.json", json=actions)
        return [PushResult(action_id=u.action_id, success=True) for u in uploads]
