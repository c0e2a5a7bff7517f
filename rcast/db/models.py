"""SQLAlchemy ORM models for subscriptions, episodes, settings and the play queue."""

import uuid
from datetime import UTC, datetime
from typing import List, Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .states import DownloadState, DownloadStatus, PlaybackState


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite does not keep tzinfo, so all stored times are naive UTC."""
    return datetime.now(UTC).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class Subscription(Base):
    """Podcast subscription.

    Stores feed identity, feed-level metadata and the HTTP caching hints used
    for conditional requests on the next sync.
    """

    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )

    # Feed identity; duplicates are detected on the normalized form
    feed_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    normalized_feed_url: Mapped[str] = mapped_column(String(2048), unique=True, nullable=False)

    # Metadata from the feed
    title: Mapped[str] = mapped_column(String(512), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text)
    website_url: Mapped[Optional[str]] = mapped_column(String(2048))
    author: Mapped[Optional[str]] = mapped_column(String(512))
    image_url: Mapped[Optional[str]] = mapped_column(String(2048))

    # Sync bookkeeping
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    etag: Mapped[Optional[str]] = mapped_column(String(512))
    last_modified: Mapped[Optional[str]] = mapped_column(String(128))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    episodes: Mapped[List["Episode"]] = relationship(
        "Episode", back_populates="subscription", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, title={self.title!r})>"


class Episode(Base):
    """Episode metadata plus its download and playback state columns."""

    __tablename__ = "episodes"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    subscription_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("subscriptions.id", ondelete="CASCADE"), nullable=False
    )

    # GUID is unique per subscription
    guid: Mapped[str] = mapped_column(String(2048), nullable=False)

    # Metadata from the feed
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    published_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    duration_millis: Mapped[Optional[int]] = mapped_column(BigInteger)

    # Enclosure
    enclosure_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    enclosure_type: Mapped[str] = mapped_column(String(64), nullable=False, default="audio/mpeg")
    enclosure_length: Mapped[Optional[int]] = mapped_column(BigInteger)

    # Download state (see DownloadState.to_columns)
    download_status: Mapped[str] = mapped_column(
        String(32), default=DownloadStatus.NOT_DOWNLOADED.value, nullable=False
    )
    download_bytes_received: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    download_bytes_total: Mapped[Optional[int]] = mapped_column(BigInteger)
    local_file_path: Mapped[Optional[str]] = mapped_column(String(1024))
    file_size_bytes: Mapped[Optional[int]] = mapped_column(BigInteger)
    download_error: Mapped[Optional[str]] = mapped_column(Text)
    download_attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Playback state (see PlaybackState.to_columns)
    playback_position_millis: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    playback_rate: Mapped[float] = mapped_column(Float, default=1.0, nullable=False)
    last_played_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    playback_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    subscription: Mapped["Subscription"] = relationship("Subscription", back_populates="episodes")

    __table_args__ = (
        UniqueConstraint("subscription_id", "guid", name="uq_episode_subscription_guid"),
        Index("ix_episodes_subscription_id", "subscription_id"),
        Index("ix_episodes_download_status", "download_status"),
        Index("ix_episodes_published_at", "published_at"),
    )

    def __repr__(self) -> str:
        return f"<Episode(id={self.id}, title={self.title!r})>"

    @property
    def download_state(self) -> DownloadState:
        return DownloadState.from_columns(self)

    @property
    def playback_state(self) -> PlaybackState:
        return PlaybackState.from_columns(self)


class Setting(Base):
    """Single user preference stored as a string."""

    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


class QueueItem(Base):
    """Entry in the "up next" play queue."""

    __tablename__ = "play_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    episode_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("episodes.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (Index("ix_play_queue_position", "position"),)

    def __repr__(self) -> str:
        return f"<QueueItem(id={self.id}, episode_id={self.episode_id}, position={self.position})>"
