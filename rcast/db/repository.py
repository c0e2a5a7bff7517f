"""Repository pattern implementation for subscription and episode persistence.

Provides an abstract interface and a SQLAlchemy implementation. SQLite is the
default local store; any SQLAlchemy URL works.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence
from urllib.parse import urlsplit

from sqlalchemy import create_engine, delete, event, func, select
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..errors import DuplicateSubscription, NotFoundError, StateError, StorageError
from .models import Base, Episode, QueueItem, Setting, Subscription, utcnow
from .states import DownloadState, DownloadStatus, PlaybackState, Settings

logger = logging.getLogger(__name__)


def normalize_feed_url(feed_url: str) -> str:
    """
    Normalize a feed URL for duplicate detection.

    The scheme is dropped so http/https variants compare equal, the host is
    lower-cased and trailing slashes are trimmed from the path. Query strings
    are kept because some hosts key feeds by query parameters.

    Args:
        feed_url: URL as entered by the user

    Returns:
        Normalized comparison key
    """
    raw = feed_url.strip()
    if "://" not in raw:
        raw = "//" + raw
    parts = urlsplit(raw)
    netloc = parts.netloc.lower()
    path = parts.path.rstrip("/")
    key = f"{netloc}{path}"
    if parts.query:
        key = f"{key}?{parts.query}"
    return key


@dataclass
class EpisodeDraft:
    """Episode data extracted from a feed entry, not yet persisted."""

    guid: str
    title: str
    enclosure_url: str
    enclosure_type: str = "audio/mpeg"
    published_at: Optional[datetime] = None
    duration_millis: Optional[int] = None
    enclosure_length: Optional[int] = None
    description: Optional[str] = None


@dataclass
class UpsertResult:
    """Counts from one upsert batch."""

    inserted: int = 0
    updated: int = 0
    unchanged: int = 0


class EpisodeSequence:
    """Episodes of a subscription as read in a single snapshot.

    Iterating starts over from the first episode every time; the rows do not
    change after the snapshot was taken.
    """

    def __init__(self, episodes: Sequence[Episode]):
        self._episodes = tuple(episodes)

    def __iter__(self) -> Iterator[Episode]:
        for episode in self._episodes:
            yield episode

    def __len__(self) -> int:
        return len(self._episodes)

    def __bool__(self) -> bool:
        return bool(self._episodes)

    @property
    def ids(self) -> List[str]:
        return [episode.id for episode in self._episodes]


class _KeyedLocks:
    """One lock per key; an entry is dropped once no thread holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


class PodcastRepositoryInterface(ABC):
    """Abstract interface for the local data store.

    All writes are all-or-nothing. Failures surface as StorageError and leave
    prior state unchanged; the store never retries.
    """

    # --- Subscription Operations ---

    @abstractmethod
    def create_subscription(self, feed_url: str, title: Optional[str] = None, **kwargs) -> Subscription:
        """
        Create and persist a new subscription.

        Parameters:
            feed_url (str): RSS or Atom feed URL.
            title (Optional[str]): Display title; empty until the first sync when omitted.
            **kwargs: Additional Subscription attributes.

        Returns:
            Subscription: The persisted subscription.

        Raises:
            DuplicateSubscription: If the normalized feed URL is already subscribed.
        """
        pass

    @abstractmethod
    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        """
        Retrieve a subscription by id.

        Returns:
            The Subscription, or `None` if it does not exist.
        """
        pass

    @abstractmethod
    def get_subscription_by_feed_url(self, feed_url: str) -> Optional[Subscription]:
        """
        Retrieve the subscription whose normalized feed URL matches `feed_url`.

        Returns:
            The Subscription, or `None` if no match is found.
        """
        pass

    @abstractmethod
    def list_subscriptions(self) -> List[Subscription]:
        """
        Return all subscriptions ordered by title.
        """
        pass

    @abstractmethod
    def update_subscription(self, subscription_id: str, **kwargs) -> Subscription:
        """
        Update attributes of an existing subscription.

        Parameters:
            subscription_id (str): Primary key of the subscription.
            **kwargs: Subscription fields to set; unknown keys are ignored.

        Returns:
            Subscription: The updated subscription.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        pass

    @abstractmethod
    def delete_subscription(self, subscription_id: str) -> List[str]:
        """
        Delete a subscription together with its episodes and their queue entries.

        Returns:
            List[str]: Ids of the removed episodes, so downloads and playback
            referencing them can be cancelled and cleaned up.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        pass

    # --- Episode Operations ---

    @abstractmethod
    def upsert_episodes(
        self,
        subscription_id: str,
        drafts: Iterable[EpisodeDraft],
        subscription_updates: Optional[Dict[str, Any]] = None,
    ) -> UpsertResult:
        """
        Insert new episodes and update changed ones in one atomic batch.

        Drafts are matched to existing episodes by GUID. New GUIDs are inserted;
        existing GUIDs whose title or enclosure URL changed are updated; nothing
        else is modified. Existing episodes missing from `drafts` are left alone.
        Repeated GUIDs within the batch collapse to the first occurrence.

        Parameters:
            subscription_id (str): Owning subscription.
            drafts (Iterable[EpisodeDraft]): Episodes parsed from the feed.
            subscription_updates (Optional[dict]): Subscription fields committed in
                the same transaction (caching hints, last_synced_at, metadata).

        Returns:
            UpsertResult: Inserted, updated and unchanged counts.

        Raises:
            NotFoundError: If the subscription does not exist.
        """
        pass

    @abstractmethod
    def get_episode(self, episode_id: str) -> Optional[Episode]:
        """
        Retrieve an episode by id.

        Returns:
            The Episode, or `None` if it does not exist.
        """
        pass

    @abstractmethod
    def get_episode_by_guid(self, subscription_id: str, guid: str) -> Optional[Episode]:
        """
        Retrieve an episode by its feed GUID within a subscription.
        """
        pass

    @abstractmethod
    def count_episodes(self, subscription_id: str) -> int:
        """
        Count the episodes of a subscription.
        """
        pass

    @abstractmethod
    def list_episodes(self, subscription_id: str, newest_first: bool = True) -> EpisodeSequence:
        """
        List a subscription's episodes ordered by publish date.

        The result is a snapshot taken at call time; it can be iterated any
        number of times and always yields the same rows.

        Parameters:
            subscription_id (str): Subscription to list.
            newest_first (bool): Order by published date descending when True.

        Returns:
            EpisodeSequence: Snapshot of the episodes.
        """
        pass

    @abstractmethod
    def list_episodes_by_download_status(
        self, statuses: Iterable[DownloadStatus]
    ) -> List[Episode]:
        """
        Return every episode whose download status is one of `statuses`.
        """
        pass

    @abstractmethod
    def update_download_state(self, episode_id: str, state: DownloadState) -> Episode:
        """
        Replace an episode's download state in one write.

        Raises:
            NotFoundError: If the episode does not exist.
        """
        pass

    @abstractmethod
    def transition_download_state(
        self,
        episode_id: str,
        allowed_from: Iterable[DownloadStatus],
        state: DownloadState,
    ) -> Episode:
        """
        Compare-and-set an episode's download state.

        Parameters:
            episode_id (str): Episode to update.
            allowed_from (Iterable[DownloadStatus]): Statuses the episode must
                currently be in for the write to happen.
            state (DownloadState): New state.

        Returns:
            Episode: The updated episode.

        Raises:
            StateError: If the current status is not in `allowed_from`.
            NotFoundError: If the episode does not exist.
        """
        pass

    @abstractmethod
    def update_playback_state(self, episode_id: str, state: PlaybackState) -> Episode:
        """
        Replace an episode's playback state in one write.

        Raises:
            NotFoundError: If the episode does not exist.
        """
        pass

    # --- Settings ---

    @abstractmethod
    def get_settings(self) -> Settings:
        """Return stored settings, with defaults for anything not stored."""
        pass

    @abstractmethod
    def save_settings(self, settings: Settings) -> None:
        """Persist every settings field."""
        pass

    # --- Play Queue ---

    @abstractmethod
    def add_to_queue(self, episode_id: str) -> QueueItem:
        """
        Append an episode to the end of the play queue.

        Raises:
            NotFoundError: If the episode does not exist.
        """
        pass

    @abstractmethod
    def get_queue(self) -> List[QueueItem]:
        """Return queue items in play order."""
        pass

    @abstractmethod
    def remove_from_queue(self, queue_id: int) -> bool:
        """
        Remove one queue item.

        Returns:
            bool: `True` if the item existed.
        """
        pass

    @abstractmethod
    def pop_queue(self) -> Optional[str]:
        """
        Remove the first queue item and return its episode id.

        Returns:
            Optional[str]: Episode id, or `None` when the queue is empty.
        """
        pass

    def close(self) -> None:
        """Release database resources."""
        pass


class SQLAlchemyPodcastRepository(PodcastRepositoryInterface):
    """SQLAlchemy-based implementation of the repository.

    Each call runs in its own session. Writes touching one episode are
    serialized by a per-episode lock and episode batches by a per-subscription
    lock, so different records are never blocked behind each other here.
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
        create_tables: bool = True,
        busy_timeout: float = 30.0,
    ):
        """
        Initialize the repository and configure its SQLAlchemy engine and session factory.

        Parameters:
            database_url (str): SQLAlchemy-compatible database URL.
            pool_size (int): Connection pool size for non-SQLite databases.
            max_overflow (int): Maximum overflow connections for non-SQLite databases.
            echo (bool): If true, enable SQLAlchemy SQL statement logging.
            create_tables (bool): Create missing tables from the ORM metadata.
            busy_timeout (float): Seconds SQLite waits on a locked database file.
        """
        self.database_url = database_url
        self._is_sqlite = database_url.startswith("sqlite")

        if self._is_sqlite:
            in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
            kwargs: Dict[str, Any] = {
                "echo": echo,
                "connect_args": {"check_same_thread": False, "timeout": busy_timeout},
            }
            if in_memory:
                # A single shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, **kwargs)
            event.listen(self.engine, "connect", self._configure_sqlite(in_memory))
        else:
            self.engine = create_engine(
                database_url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                echo=echo,
            )

        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

        if create_tables:
            Base.metadata.create_all(self.engine)

        self._episode_locks = _KeyedLocks()
        self._subscription_locks = _KeyedLocks()
        self._queue_lock = threading.Lock()

        logger.info(f"Database initialized: {database_url.split('@')[-1] if '@' in database_url else database_url}")

    @staticmethod
    def _configure_sqlite(in_memory: bool):
        def on_connect(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if not in_memory:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

        return on_connect

    def _get_session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any error."""
        session = self._get_session()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Database write failed: {e}")
            raise StorageError(f"Database write failed: {e}", cause=e) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _reading(self) -> Iterator[Session]:
        session = self._get_session()
        try:
            yield session
        except SQLAlchemyError as e:
            logger.error(f"Database read failed: {e}")
            raise StorageError(f"Database read failed: {e}", cause=e) from e
        finally:
            session.close()

    # --- Subscription Operations ---

    def create_subscription(self, feed_url: str, title: Optional[str] = None, **kwargs) -> Subscription:
        normalized = normalize_feed_url(feed_url)
        with self._transaction() as session:
            existing = session.scalar(
                select(Subscription).where(Subscription.normalized_feed_url == normalized)
            )
            if existing:
                raise DuplicateSubscription(feed_url, existing.id)

            subscription = Subscription(
                feed_url=feed_url.strip(),
                normalized_feed_url=normalized,
                title=title or "",
                **kwargs,
            )
            session.add(subscription)
            try:
                session.flush()
            except DBIntegrityError:
                # Created concurrently by another caller
                raise DuplicateSubscription(feed_url)
        logger.info(f"Created subscription: {feed_url} ({subscription.id})")
        return subscription

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._reading() as session:
            return session.get(Subscription, subscription_id)

    def get_subscription_by_feed_url(self, feed_url: str) -> Optional[Subscription]:
        with self._reading() as session:
            stmt = select(Subscription).where(
                Subscription.normalized_feed_url == normalize_feed_url(feed_url)
            )
            return session.scalar(stmt)

    def list_subscriptions(self) -> List[Subscription]:
        with self._reading() as session:
            stmt = select(Subscription).order_by(Subscription.title, Subscription.created_at)
            return list(session.scalars(stmt).all())

    def update_subscription(self, subscription_id: str, **kwargs) -> Subscription:
        with self._subscription_locks.hold(subscription_id), self._transaction() as session:
            subscription = session.get(Subscription, subscription_id)
            if not subscription:
                raise NotFoundError(f"Subscription not found: {subscription_id}")
            self._apply(subscription, kwargs)
            subscription.updated_at = utcnow()
        logger.debug(f"Updated subscription {subscription_id}: {kwargs.keys()}")
        return subscription

    def delete_subscription(self, subscription_id: str) -> List[str]:
        with self._subscription_locks.hold(subscription_id), self._transaction() as session:
            subscription = session.get(Subscription, subscription_id)
            if not subscription:
                raise NotFoundError(f"Subscription not found: {subscription_id}")

            episode_ids = list(
                session.scalars(
                    select(Episode.id).where(Episode.subscription_id == subscription_id)
                ).all()
            )
            if episode_ids:
                session.execute(delete(QueueItem).where(QueueItem.episode_id.in_(episode_ids)))
                session.execute(delete(Episode).where(Episode.subscription_id == subscription_id))
            session.execute(delete(Subscription).where(Subscription.id == subscription_id))

        logger.info(
            f"Deleted subscription {subscription_id} with {len(episode_ids)} episodes"
        )
        return episode_ids

    # --- Episode Operations ---

    def upsert_episodes(
        self,
        subscription_id: str,
        drafts: Iterable[EpisodeDraft],
        subscription_updates: Optional[Dict[str, Any]] = None,
    ) -> UpsertResult:
        result = UpsertResult()
        with self._subscription_locks.hold(subscription_id), self._transaction() as session:
            subscription = session.get(Subscription, subscription_id)
            if not subscription:
                raise NotFoundError(f"Subscription not found: {subscription_id}")

            existing = {
                episode.guid: episode
                for episode in session.scalars(
                    select(Episode).where(Episode.subscription_id == subscription_id)
                )
            }
            seen = set()

            for draft in drafts:
                if draft.guid in seen:
                    continue
                seen.add(draft.guid)

                episode = existing.get(draft.guid)
                if episode is None:
                    session.add(
                        Episode(
                            subscription_id=subscription_id,
                            guid=draft.guid,
                            title=draft.title,
                            description=draft.description,
                            published_at=draft.published_at,
                            duration_millis=draft.duration_millis,
                            enclosure_url=draft.enclosure_url,
                            enclosure_type=draft.enclosure_type,
                            enclosure_length=draft.enclosure_length,
                        )
                    )
                    result.inserted += 1
                elif episode.title != draft.title or episode.enclosure_url != draft.enclosure_url:
                    episode.title = draft.title
                    episode.enclosure_url = draft.enclosure_url
                    result.updated += 1
                else:
                    result.unchanged += 1

            if subscription_updates:
                self._apply(subscription, subscription_updates)
                subscription.updated_at = utcnow()

        logger.debug(
            f"Upserted episodes for {subscription_id}: "
            f"{result.inserted} inserted, {result.updated} updated, {result.unchanged} unchanged"
        )
        return result

    def get_episode(self, episode_id: str) -> Optional[Episode]:
        with self._reading() as session:
            return session.get(Episode, episode_id)

    def get_episode_by_guid(self, subscription_id: str, guid: str) -> Optional[Episode]:
        with self._reading() as session:
            stmt = select(Episode).where(
                Episode.subscription_id == subscription_id, Episode.guid == guid
            )
            return session.scalar(stmt)

    def count_episodes(self, subscription_id: str) -> int:
        with self._reading() as session:
            stmt = select(func.count(Episode.id)).where(Episode.subscription_id == subscription_id)
            return session.scalar(stmt) or 0

    def list_episodes(self, subscription_id: str, newest_first: bool = True) -> EpisodeSequence:
        with self._reading() as session:
            stmt = select(Episode).where(Episode.subscription_id == subscription_id)
            if newest_first:
                stmt = stmt.order_by(Episode.published_at.desc().nulls_last(), Episode.id)
            else:
                stmt = stmt.order_by(Episode.published_at.asc().nulls_last(), Episode.id)
            return EpisodeSequence(session.scalars(stmt).all())

    def list_episodes_by_download_status(
        self, statuses: Iterable[DownloadStatus]
    ) -> List[Episode]:
        values = [DownloadStatus(s).value for s in statuses]
        with self._reading() as session:
            stmt = (
                select(Episode)
                .where(Episode.download_status.in_(values))
                .order_by(Episode.updated_at)
            )
            return list(session.scalars(stmt).all())

    def update_download_state(self, episode_id: str, state: DownloadState) -> Episode:
        return self._write_episode(episode_id, state.to_columns())

    def transition_download_state(
        self,
        episode_id: str,
        allowed_from: Iterable[DownloadStatus],
        state: DownloadState,
    ) -> Episode:
        allowed = {DownloadStatus(s) for s in allowed_from}
        return self._write_episode(episode_id, state.to_columns(), allowed_from=allowed)

    def update_playback_state(self, episode_id: str, state: PlaybackState) -> Episode:
        return self._write_episode(episode_id, state.to_columns())

    def _write_episode(
        self,
        episode_id: str,
        columns: Dict[str, Any],
        allowed_from: Optional[set] = None,
    ) -> Episode:
        with self._episode_locks.hold(episode_id), self._transaction() as session:
            episode = session.get(Episode, episode_id)
            if not episode:
                raise NotFoundError(f"Episode not found: {episode_id}")
            if allowed_from is not None:
                current = DownloadStatus(episode.download_status)
                if current not in allowed_from:
                    raise StateError(
                        f"Episode {episode_id} is {current.value}, expected one of "
                        f"{sorted(s.value for s in allowed_from)}"
                    )
            self._apply(episode, columns)
            episode.updated_at = utcnow()
        return episode

    @staticmethod
    def _apply(record: Any, values: Dict[str, Any]) -> None:
        for key, value in values.items():
            if hasattr(record, key):
                setattr(record, key, value)

    # --- Settings ---

    def get_settings(self) -> Settings:
        with self._reading() as session:
            rows = {row.key: row.value for row in session.scalars(select(Setting))}
        return Settings.from_rows(rows)

    def save_settings(self, settings: Settings) -> None:
        with self._transaction() as session:
            for key, value in settings.to_rows().items():
                session.merge(Setting(key=key, value=value))
        logger.debug("Saved settings")

    # --- Play Queue ---

    def add_to_queue(self, episode_id: str) -> QueueItem:
        with self._queue_lock, self._transaction() as session:
            if session.get(Episode, episode_id) is None:
                raise NotFoundError(f"Episode not found: {episode_id}")
            max_position = session.scalar(select(func.max(QueueItem.position)))
            item = QueueItem(
                episode_id=episode_id,
                position=(max_position if max_position is not None else -1) + 1,
            )
            session.add(item)
        return item

    def get_queue(self) -> List[QueueItem]:
        with self._reading() as session:
            stmt = select(QueueItem).order_by(QueueItem.position)
            return list(session.scalars(stmt).all())

    def remove_from_queue(self, queue_id: int) -> bool:
        with self._queue_lock, self._transaction() as session:
            result = session.execute(delete(QueueItem).where(QueueItem.id == queue_id))
            return result.rowcount > 0

    def pop_queue(self) -> Optional[str]:
        with self._queue_lock, self._transaction() as session:
            item = session.scalars(select(QueueItem).order_by(QueueItem.position).limit(1)).first()
            if item is None:
                return None
            episode_id = item.episode_id
            session.delete(item)
        return episode_id

    def close(self) -> None:
        self.engine.dispose()
