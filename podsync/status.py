import asyncio
import logging
import time
from typing import Callable, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from .models import SyncPhase

logger = logging.getLogger(__name__)

class SyncStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: SyncPhase = SyncPhase.IDLE
    message: Optional[str] = None
    detail: str = ""
    updated_at: float = Field(default_factory=time.time)

Listener = Callable[[SyncStatus], None]

class StatusPublisher:
    """Holds the current sync status and fans every change out to listeners and queue subscribers."""

    def __init__(self):
        self._status = SyncStatus()
        self._listeners: List[Listener] = []
        self._queues: List[asyncio.Queue] = []

    @property
    def current(self) -> SyncStatus:
        return self._status

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait(self._status)
        self._queues.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        if queue in self._queues:
            self._queues.remove(queue)

    def publish(self, phase: SyncPhase, message: Optional[str] = None, detail: str = "") -> SyncStatus:
        self._status = SyncStatus(phase=phase, message=message, detail=detail)
        for listener in list(self._listeners):
            try:
                listener(self._status)
            except Exception as e:
                logger.error(f"Status listener failed: {e}", exc_info=True)
        for queue in self._queues:
            queue.put_nowait(self._status)
        return self._status
