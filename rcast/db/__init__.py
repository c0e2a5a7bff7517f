"""Local data store: ORM models, state value types and the repository."""

from .factory import DEFAULT_DATABASE_URL, create_repository
from .models import Base, Episode, QueueItem, Setting, Subscription
from .repository import (
    EpisodeDraft,
    EpisodeSequence,
    PodcastRepositoryInterface,
    SQLAlchemyPodcastRepository,
    UpsertResult,
    normalize_feed_url,
)
from .states import DownloadState, DownloadStatus, PlaybackState, Settings

__all__ = [
    "Base",
    "DownloadState",
    "DownloadStatus",
    "Episode",
    "EpisodeDraft",
    "EpisodeSequence",
    "PlaybackState",
    "PodcastRepositoryInterface",
    "QueueItem",
    "SQLAlchemyPodcastRepository",
    "Setting",
    "Settings",
    "Subscription",
    "UpsertResult",
    "DEFAULT_DATABASE_URL",
    "create_repository",
    "normalize_feed_url",
]
