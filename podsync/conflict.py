from enum import Enum
from typing import Optional

class Resolution(str, Enum):
    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"

def resolve_progress(local_last_synced_at: Optional[float], remote_timestamp: float) -> Resolution:
    """
    Last-write-wins decision for one episode's progress.
    The remote record is applied when the episode has never been synced, or when the
    remote timestamp is at least as new as the local last-synced timestamp.
    Equal timestamps go to the remote side so both replicas settle on one value.
    """
    if local_last_synced_at is None:
        return Resolution.REMOTE_WINS
    if remote_timestamp >= local_last_synced_at:
        return Resolution.REMOTE_WINS
    return Resolution.LOCAL_WINS
