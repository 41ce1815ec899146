import time
import uuid
from enum import Enum
from pydantic import BaseModel, Field
from typing import Dict, List, Optional

def episode_key(feed_url: str, guid: str) -> str:
    return f"{feed_url}|{guid}"

# Local records

class Subscription(BaseModel):
    feed_url: str
    remote_id: Optional[str] = None
    title: str = ""
    author: Optional[str] = None
    description: Optional[str] = None
    artwork_url: Optional[str] = None
    subscribed: bool = True
    needs_sync: bool = False
    added_at: float = Field(default_factory=time.time)
    last_refreshed_at: Optional[float] = None

class Episode(BaseModel):
    feed_url: str
    guid: str
    remote_id: Optional[str] = None
    title: str = ""
    audio_url: str = ""
    description: Optional[str] = None
    publish_date: Optional[float] = None
    duration_s: Optional[float] = None
    artwork_url: Optional[str] = None

    # Playback
    position_s: float = 0.0
    played: bool = False
    last_played_at: Optional[float] = None

    # Sync
    needs_sync: bool = False
    last_synced_at: Optional[float] = None

    @property
    def key(self) -> str:
        return episode_key(self.feed_url, self.guid)

class PendingAction(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    episode_key: str
    remote_episode_id: Optional[str] = None
    podcast_url: str
    audio_url: str
    position_s: float
    duration_s: Optional[float] = None
    completed: bool = False
    created_at: float = Field(default_factory=time.time)
    synced: bool = False
    synced_at: Optional[float] = None
    attempts: int = 0
    last_error: Optional[str] = None

class SyncPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

class SyncState(BaseModel):
    last_subscription_sync: Optional[float] = None
    last_progress_sync: Optional[float] = None
    subscription_cursor: Optional[str] = None
    progress_cursor: Optional[str] = None
    status: SyncPhase = SyncPhase.IDLE
    last_error: Optional[str] = None
    last_attempt_at: Optional[float] = None
    total_syncs: int = 0
    failed_syncs: int = 0
    queue_needs_reorder: bool = False

class ServerConfiguration(BaseModel):
    server_url: str = ""
    username: str = ""
    session_token: Optional[str] = None
    authenticated: bool = False
    last_authenticated_at: Optional[float] = None

class QueueEntry(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    remote_id: Optional[str] = None
    remote_episode_id: str
    position: int
    removed: bool = False
    needs_sync: bool = False

class Playlist(BaseModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    remote_id: Optional[str] = None
    name: str
    description: Optional[str] = None
    removed: bool = False
    needs_sync: bool = False

class LibraryDocument(BaseModel):
    subscriptions: Dict[str, Subscription] = Field(default_factory=dict)  # feed_url -> Subscription
    episodes: Dict[str, Episode] = Field(default_factory=dict)  # "feed_url|guid" -> Episode
    pending_actions: List[PendingAction] = Field(default_factory=list)
    queue: List[QueueEntry] = Field(default_factory=list)
    playlists: List[Playlist] = Field(default_factory=list)
    sync_state: Optional[SyncState] = None
    server_configuration: Optional[ServerConfiguration] = None

# Feed parsing

class ParsedEpisode(BaseModel):
    guid: str
    audio_url: str
    title: str = "Untitled Episode"
    description: Optional[str] = None
    publish_date: Optional[float] = None
    duration_s: Optional[float] = None
    artwork_url: Optional[str] = None

class ParsedFeed(BaseModel):
    title: str = "Unknown Podcast"
    author: Optional[str] = None
    description: Optional[str] = None
    artwork_url: Optional[str] = None
    episodes: List[ParsedEpisode] = Field(default_factory=list)

# Remote contract

class SubscriptionChanges(BaseModel):
    added: List[str] = Field(default_factory=list)
    removed: List[str] = Field(default_factory=list)
    new_cursor: Optional[str] = None
    remote_ids: Dict[str, str] = Field(default_factory=dict)  # feed_url -> remote id, when the backend has ids

class ProgressRecord(BaseModel):
    episode_id: str
    audio_url: Optional[str] = None
    podcast_url: Optional[str] = None
    position_s: float
    duration_s: Optional[float] = None
    completed: bool = False
    timestamp: float

class ProgressChanges(BaseModel):
    records: List[ProgressRecord] = Field(default_factory=list)
    new_cursor: Optional[str] = None

class ProgressUpload(BaseModel):
    action_id: str
    episode_id: Optional[str] = None
    podcast_url: str
    audio_url: str
    position_s: float
    duration_s: Optional[float] = None
    completed: bool = False
    timestamp: float

class PushResult(BaseModel):
    action_id: str
    success: bool
    error: Optional[str] = None

class RemoteQueueEntry(BaseModel):
    remote_id: str
    episode_id: str
    position: int

class RemotePlaylist(BaseModel):
    remote_id: str
    name: str
    description: Optional[str] = None
