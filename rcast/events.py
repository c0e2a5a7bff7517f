"""State-change notifications pushed from the core to the UI layer.

Components publish small frozen dataclasses on an EventBus; listeners are
called synchronously on the publishing thread.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Tuple

from .db.states import DownloadState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubscriptionAdded:
    subscription_id: str
    feed_url: str


@dataclass(frozen=True)
class SubscriptionRemoved:
    subscription_id: str
    episode_ids: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SyncCompleted:
    """A sync finished; `result` is the SyncResult."""

    subscription_id: str
    result: Any = None


@dataclass(frozen=True)
class SyncFailed:
    subscription_id: str
    kind: str
    retryable: bool
    message: str


@dataclass(frozen=True)
class DownloadStateChanged:
    episode_id: str
    state: DownloadState


@dataclass(frozen=True)
class DownloadProgress:
    episode_id: str
    bytes_received: int
    bytes_total: Optional[int] = None


@dataclass(frozen=True)
class PlaybackStateChanged:
    """Transport state change; `episode_id` is None once idle."""

    state: str
    episode_id: Optional[str] = None
    position_millis: int = 0


@dataclass(frozen=True)
class PositionTick:
    episode_id: str
    position_millis: int
    duration_millis: Optional[int] = None


@dataclass(frozen=True)
class PlaybackCompleted:
    episode_id: str


Listener = Callable[[Any], None]


@dataclass
class EventBus:
    """Thread-safe publish/subscribe hub.

    A failing listener is logged and skipped; it never breaks the publisher
    or the remaining listeners.
    """

    _listeners: List[Listener] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Event listener failed for {type(event).__name__}")
