"""Command layer tying the store, sync, downloads and playback together.

UI code talks to PodcastClient only. Each command returns a result or
raises a typed RcastError; state changes are pushed through the EventBus.
"""

import logging
from typing import Callable, List, Optional

import requests

from .config import Config
from .db.factory import create_repository
from .db.models import Episode, QueueItem, Subscription
from .db.repository import EpisodeSequence, PodcastRepositoryInterface
from .db.states import DownloadState, PlaybackState, Settings
from .errors import NotFoundError, RcastError, SyncError
from .events import EventBus, PlaybackCompleted, SubscriptionAdded, SubscriptionRemoved
from .playback.audio import AudioOutputInterface, NullAudioOutput
from .playback.engine import PlaybackEngine, TransportState
from .podcast.downloader import DownloadManager, RecoveryResult
from .podcast.feed_sync import FeedSyncService, SyncResult, SyncSummary
from .scheduler import BackgroundSync

logger = logging.getLogger(__name__)


class PodcastClient:
    """Facade over the core components.

    Example:
        client = PodcastClient(Config())
        client.start()
        subscription = client.subscribe("https://example.com/feed.xml")
        for episode in client.list_episodes(subscription.id):
            print(episode.title)
        client.close()
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        repository: Optional[PodcastRepositoryInterface] = None,
        audio_output: Optional[AudioOutputInterface] = None,
        http_session: Optional[requests.Session] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """
        Build every component from `config`.

        Parameters:
            config (Optional[Config]): Settings; loaded from the environment when omitted.
            repository: Store to use instead of one built from DATABASE_URL.
            audio_output: Receiver of playback commands; defaults to a no-op output.
            http_session: requests session shared by sync and downloads.
            event_bus: Event hub; a new one is created when omitted.
        """
        self.config = config or Config()
        self.events = event_bus or EventBus()
        self.repository = repository or create_repository(
            self.config.DATABASE_URL, echo=self.config.DB_ECHO
        )
        self.sync_service = FeedSyncService(
            self.repository,
            timeout=self.config.FEED_TIMEOUT,
            user_agent=self.config.USER_AGENT,
            retry_attempts=self.config.HTTP_RETRY_ATTEMPTS,
            max_workers=self.config.SYNC_WORKERS,
            session=http_session,
            event_bus=self.events,
        )
        self.downloads = DownloadManager(
            self.repository,
            download_directory=self.config.DOWNLOAD_DIRECTORY,
            max_concurrent=self.config.MAX_CONCURRENT_DOWNLOADS,
            timeout=self.config.DOWNLOAD_TIMEOUT,
            chunk_size=self.config.DOWNLOAD_CHUNK_SIZE,
            checkpoint_bytes=self.config.DOWNLOAD_CHECKPOINT_BYTES,
            checkpoint_seconds=self.config.DOWNLOAD_CHECKPOINT_SECONDS,
            user_agent=self.config.USER_AGENT,
            retry_attempts=self.config.HTTP_RETRY_ATTEMPTS,
            session=http_session,
            event_bus=self.events,
        )
        self.playback = PlaybackEngine(
            self.repository,
            audio_output or NullAudioOutput(),
            download_manager=self.downloads,
            event_bus=self.events,
            checkpoint_seconds=self.config.PLAYBACK_CHECKPOINT_SECONDS,
            completion_policy=self.config.PLAYBACK_COMPLETION_POLICY,
        )
        self.background_sync: Optional[BackgroundSync] = None
        self._unsubscribe_self = self.events.subscribe(self._on_event)

    # --- Lifecycle ---

    def start(self, background_sync: bool = False) -> RecoveryResult:
        """Recover download state from the last run; optionally start periodic sync."""
        recovered = self.downloads.recover()
        if background_sync and self.background_sync is None:
            settings = self.repository.get_settings()
            self.background_sync = BackgroundSync(self.sync_service, settings.sync_interval_minutes)
            self.background_sync.start()
        return recovered

    def close(self) -> None:
        """Stop background work, checkpoint playback and release resources."""
        self._unsubscribe_self()
        if self.background_sync:
            self.background_sync.stop()
        try:
            self.playback.stop()
        except RcastError as e:
            logger.error(f"Could not checkpoint playback on close: {e}")
        self.downloads.close()
        self.sync_service.close()
        self.repository.close()

    def subscribe_events(self, listener: Callable) -> Callable[[], None]:
        return self.events.subscribe(listener)

    # --- Subscriptions ---

    def subscribe(self, feed_url: str) -> Subscription:
        """
        Subscribe to a feed and sync it once.

        A failed first sync keeps the subscription; the failure is reported by
        a SyncFailed event and the feed can be synced again later.

        Raises:
            DuplicateSubscription: If the feed is already subscribed.
        """
        subscription = self.repository.create_subscription(feed_url)
        self.events.publish(SubscriptionAdded(subscription.id, subscription.feed_url))
        try:
            self.sync_service.sync(subscription.id)
        except SyncError as e:
            logger.warning(f"Initial sync of {feed_url} failed: {e}")
        return self.repository.get_subscription(subscription.id) or subscription

    def unsubscribe(self, subscription_id: str) -> List[str]:
        """
        Delete a subscription and everything that depends on its episodes.

        Downloads of the removed episodes are stopped and their files deleted;
        an active playback session of one of them is dropped.

        Returns:
            Ids of the removed episodes.
        """
        episode_ids = self.repository.delete_subscription(subscription_id)
        self.downloads.discard(episode_ids)
        self.playback.discard(episode_ids)
        self.events.publish(SubscriptionRemoved(subscription_id, tuple(episode_ids)))
        logger.info(f"Unsubscribed {subscription_id}")
        return episode_ids

    def list_subscriptions(self) -> List[Subscription]:
        return self.repository.list_subscriptions()

    def list_episodes(self, subscription_id: str, newest_first: bool = True) -> EpisodeSequence:
        return self.repository.list_episodes(subscription_id, newest_first=newest_first)

    def get_episode(self, episode_id: str) -> Episode:
        episode = self.repository.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode not found: {episode_id}")
        return episode

    def sync(self, subscription_id: str) -> SyncResult:
        return self.sync_service.sync(subscription_id)

    def sync_all(self) -> SyncSummary:
        return self.sync_service.sync_all()

    # --- Downloads ---

    def enqueue_download(self, episode_id: str) -> DownloadState:
        return self.downloads.enqueue(episode_id)

    def cancel_download(self, episode_id: str) -> DownloadState:
        return self.downloads.cancel(episode_id)

    def pause_download(self, episode_id: str) -> DownloadState:
        return self.downloads.pause(episode_id)

    def resume_download(self, episode_id: str) -> DownloadState:
        return self.downloads.resume(episode_id)

    def delete_download(self, episode_id: str) -> DownloadState:
        return self.downloads.delete_download(episode_id)

    # --- Playback ---

    def load(self, episode_id: str) -> TransportState:
        return self.playback.load(episode_id)

    def play(self) -> TransportState:
        return self.playback.play()

    def pause(self) -> TransportState:
        return self.playback.pause()

    def seek(self, position_millis: int) -> int:
        return self.playback.seek(position_millis)

    def skip(self, delta_millis: int) -> int:
        return self.playback.skip(delta_millis)

    def skip_forward(self) -> int:
        return self.playback.skip_forward()

    def skip_backward(self) -> int:
        return self.playback.skip_backward()

    def set_rate(self, rate: float) -> float:
        return self.playback.set_rate(rate)

    def set_volume(self, volume: float) -> float:
        return self.playback.set_volume(volume)

    def mark_played(self, episode_id: str, played: bool = True) -> PlaybackState:
        return self.playback.mark_played(episode_id, played)

    # --- Play queue ---

    def queue_episode(self, episode_id: str) -> QueueItem:
        return self.repository.add_to_queue(episode_id)

    def remove_from_queue(self, queue_id: int) -> bool:
        return self.repository.remove_from_queue(queue_id)

    def get_queue(self) -> List[QueueItem]:
        return self.repository.get_queue()

    def play_next(self) -> Optional[str]:
        """Load and play the first queued episode.

        Returns:
            The episode id, or None when the queue is empty.
        """
        episode_id = self.repository.pop_queue()
        if episode_id is None:
            return None
        self.playback.load(episode_id)
        self.playback.play()
        return episode_id

    # --- Settings ---

    def get_settings(self) -> Settings:
        return self.repository.get_settings()

    def update_settings(self, **changes) -> Settings:
        """
        Change and persist settings fields.

        Raises:
            ValueError: If a field name is unknown.
        """
        settings = self.repository.get_settings()
        for key, value in changes.items():
            if not hasattr(settings, key):
                raise ValueError(f"Unknown setting: {key}")
            setattr(settings, key, value)
        self.repository.save_settings(settings)

        if "sync_interval_minutes" in changes and self.background_sync:
            self.background_sync.reschedule(settings.sync_interval_minutes)
        return settings

    def _on_event(self, event) -> None:
        if isinstance(event, PlaybackCompleted) and self.repository.get_settings().auto_play_next:
            next_id = self.play_next()
            if next_id:
                logger.info(f"Auto-playing next queued episode {next_id}")
