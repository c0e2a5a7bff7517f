"""Value types for per-episode download and playback state.

Both are persisted as flat columns on the ``episodes`` row and rebuilt from
them, so a state is always written and read as one unit.
"""

import enum
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Dict, Optional

MIN_RATE = 0.5
MAX_RATE = 3.0

SIZE_MISMATCH = "SizeMismatch"


class DownloadStatus(str, enum.Enum):
    NOT_DOWNLOADED = "not_downloaded"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class DownloadState:
    """Download state of one episode.

    Which fields are meaningful depends on ``status``:

    - IN_PROGRESS: bytes_received, bytes_total (may be None)
    - PAUSED: bytes_received
    - QUEUED: bytes_received is the resume offset (0 for a fresh download)
    - COMPLETED: local_path, file_size
    - FAILED: reason, attempt

    ``attempt`` counts failed attempts so far and is carried through
    re-queues so the next failure reports ``attempt + 1``.
    """

    status: DownloadStatus = DownloadStatus.NOT_DOWNLOADED
    bytes_received: int = 0
    bytes_total: Optional[int] = None
    local_path: Optional[str] = None
    file_size: Optional[int] = None
    reason: Optional[str] = None
    attempt: int = 0

    @classmethod
    def not_downloaded(cls) -> "DownloadState":
        return cls(DownloadStatus.NOT_DOWNLOADED)

    @classmethod
    def queued(cls, resume_from: int = 0, attempt: int = 0) -> "DownloadState":
        return cls(DownloadStatus.QUEUED, bytes_received=resume_from, attempt=attempt)

    @classmethod
    def in_progress(
        cls, bytes_received: int, bytes_total: Optional[int] = None, attempt: int = 0
    ) -> "DownloadState":
        return cls(
            DownloadStatus.IN_PROGRESS,
            bytes_received=bytes_received,
            bytes_total=bytes_total,
            attempt=attempt,
        )

    @classmethod
    def paused(
        cls, bytes_received: int, bytes_total: Optional[int] = None, attempt: int = 0
    ) -> "DownloadState":
        return cls(
            DownloadStatus.PAUSED,
            bytes_received=bytes_received,
            bytes_total=bytes_total,
            attempt=attempt,
        )

    @classmethod
    def completed(cls, local_path: str, file_size: int) -> "DownloadState":
        return cls(
            DownloadStatus.COMPLETED,
            bytes_received=file_size,
            bytes_total=file_size,
            local_path=local_path,
            file_size=file_size,
        )

    @classmethod
    def failed(cls, reason: str, attempt: int = 1) -> "DownloadState":
        return cls(DownloadStatus.FAILED, reason=reason, attempt=attempt)

    def to_columns(self) -> Dict[str, Any]:
        """Map this state onto the episode's download columns."""
        return {
            "download_status": self.status.value,
            "download_bytes_received": self.bytes_received,
            "download_bytes_total": self.bytes_total,
            "local_file_path": self.local_path,
            "file_size_bytes": self.file_size,
            "download_error": self.reason,
            "download_attempt": self.attempt,
        }

    @classmethod
    def from_columns(cls, row: Any) -> "DownloadState":
        """Rebuild a state from an object carrying the download columns."""
        return cls(
            status=DownloadStatus(row.download_status or DownloadStatus.NOT_DOWNLOADED.value),
            bytes_received=row.download_bytes_received or 0,
            bytes_total=row.download_bytes_total,
            local_path=row.local_file_path,
            file_size=row.file_size_bytes,
            reason=row.download_error,
            attempt=row.download_attempt or 0,
        )


def clamp_rate(rate: float) -> float:
    """Clamp a playback rate into [MIN_RATE, MAX_RATE]."""
    return max(MIN_RATE, min(MAX_RATE, float(rate)))


def clamp_position(position_millis: int, duration_millis: Optional[int]) -> int:
    """Clamp a position into [0, duration] (or [0, inf) when duration is unknown)."""
    position = max(0, int(position_millis))
    if duration_millis is not None and duration_millis > 0:
        position = min(position, duration_millis)
    return position


@dataclass(frozen=True)
class PlaybackState:
    """Persisted playback bookkeeping for one episode."""

    position_millis: int = 0
    rate: float = 1.0
    last_played_at: Optional[datetime] = None
    completed: bool = False

    def __post_init__(self):
        object.__setattr__(self, "rate", clamp_rate(self.rate))
        object.__setattr__(self, "position_millis", max(0, int(self.position_millis)))

    def to_columns(self) -> Dict[str, Any]:
        return {
            "playback_position_millis": self.position_millis,
            "playback_rate": self.rate,
            "last_played_at": self.last_played_at,
            "playback_completed": self.completed,
        }

    @classmethod
    def from_columns(cls, row: Any) -> "PlaybackState":
        return cls(
            position_millis=row.playback_position_millis or 0,
            rate=row.playback_rate if row.playback_rate is not None else 1.0,
            last_played_at=row.last_played_at,
            completed=bool(row.playback_completed),
        )


@dataclass
class Settings:
    """User preferences kept in the ``settings`` key/value table."""

    default_volume: float = 50.0
    skip_backward_seconds: int = 15
    skip_forward_seconds: int = 15
    sync_interval_minutes: int = 30
    auto_play_next: bool = True

    def to_rows(self) -> Dict[str, str]:
        """Serialize every field to its string form."""
        rows = {}
        for f in fields(self):
            value = getattr(self, f.name)
            rows[f.name] = str(value).lower() if isinstance(value, bool) else str(value)
        return rows

    @classmethod
    def from_rows(cls, rows: Dict[str, str]) -> "Settings":
        """Build settings from stored rows; unknown keys and bad values fall back to defaults."""
        settings = cls()
        for f in fields(cls):
            if f.name not in rows:
                continue
            raw = rows[f.name]
            default = getattr(settings, f.name)
            try:
                if isinstance(default, bool):
                    value = raw.strip().lower() == "true"
                elif isinstance(default, int):
                    value = int(raw)
                else:
                    value = float(raw)
            except (TypeError, ValueError):
                continue
            setattr(settings, f.name, value)
        return settings
