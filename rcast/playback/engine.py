"""Playback transport state machine and position bookkeeping.

One PlaybackEngine owns the single active playback session. It issues
decoding intents to an AudioOutputInterface and persists a PlaybackState
checkpoint on every pause, seek, rate change, load of another episode and at
a bounded cadence while playing.
"""

import enum
import itertools
import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from ..db.models import Episode, utcnow
from ..db.repository import PodcastRepositoryInterface
from ..db.states import DownloadStatus, PlaybackState, clamp_position, clamp_rate
from ..errors import NotFoundError, StateError, StorageError
from ..events import EventBus, PlaybackCompleted, PlaybackStateChanged, PositionTick
from .audio import AudioOutputInterface, SetRate, SetVolume, StartDecodingFrom, StopDecoding

logger = logging.getLogger(__name__)


class TransportState(str, enum.Enum):
    IDLE = "idle"
    LOADED = "loaded"
    PLAYING = "playing"
    PAUSED = "paused"
    COMPLETED = "completed"


class CompletionPolicy(str, enum.Enum):
    """Stored position once an episode completes."""

    RESET = "reset"  # position 0
    KEEP = "keep"  # position == duration


@dataclass
class _Session:
    """The active episode's in-memory transport data."""

    episode_id: str
    title: str
    source: str
    token: int
    position_millis: int
    duration_millis: Optional[int]
    rate: float
    completed: bool
    last_played_at: Optional[datetime]
    last_checkpoint: float = 0.0


class PlaybackEngine:
    """Single-owner playback state machine.

    States: IDLE, LOADED, PLAYING, PAUSED, COMPLETED. Every StartDecodingFrom
    carries a fresh token; position and end-of-stream callbacks with any other
    token are ignored, so late callbacks from an earlier session or an earlier
    seek cannot move the current position.

    Example:
        engine = PlaybackEngine(repository, audio_output)
        engine.load(episode_id)
        engine.play()
        engine.skip(30_000)
        engine.pause()
    """

    def __init__(
        self,
        repository: PodcastRepositoryInterface,
        audio_output: AudioOutputInterface,
        download_manager=None,
        event_bus: Optional[EventBus] = None,
        checkpoint_seconds: float = 5.0,
        completion_policy: str = "reset",
        volume: Optional[float] = None,
    ):
        """
        Parameters:
            repository: Store for playback checkpoints.
            audio_output: Receiver of decoding commands.
            download_manager (Optional[DownloadManager]): Resolves verified local files.
            event_bus (Optional[EventBus]): Receives playback events.
            checkpoint_seconds (float): Minimum interval between checkpoints while playing.
            completion_policy (str): "reset" or "keep".
            volume (Optional[float]): Initial volume; defaults to the stored setting.
        """
        self.repository = repository
        self.audio_output = audio_output
        self.download_manager = download_manager
        self.event_bus = event_bus
        self.checkpoint_seconds = checkpoint_seconds
        self.completion_policy = CompletionPolicy(completion_policy)

        self._lock = threading.RLock()
        self._tokens = itertools.count(1)
        self._session: Optional[_Session] = None
        self._state = TransportState.IDLE
        if volume is None:
            volume = repository.get_settings().default_volume
        self._volume = self._clamp_volume(volume)

    # --- Introspection ---

    @property
    def state(self) -> TransportState:
        return self._state

    @property
    def episode_id(self) -> Optional[str]:
        session = self._session
        return session.episode_id if session else None

    @property
    def position_millis(self) -> int:
        session = self._session
        return session.position_millis if session else 0

    @property
    def rate(self) -> Optional[float]:
        session = self._session
        return session.rate if session else None

    @property
    def volume(self) -> float:
        return self._volume

    @property
    def token(self) -> Optional[int]:
        """Token of the current decoding session, for the audio collaborator."""
        session = self._session
        return session.token if session else None

    # --- Commands ---

    def load(self, episode_id: str) -> TransportState:
        """Make `episode_id` the active episode, positioned at its last checkpoint.

        The current episode is stopped and its checkpoint is written before the
        new session exists. A completed episode loads at position 0.

        Raises:
            NotFoundError: If the episode does not exist
            StorageError: If the current episode's checkpoint cannot be written
        """
        with self._lock:
            episode = self.repository.get_episode(episode_id)
            if episode is None:
                raise NotFoundError(f"Episode not found: {episode_id}")

            if self._session:
                self._halt()
                try:
                    self._checkpoint()
                except NotFoundError:
                    # Previous episode was deleted; its session is already gone
                    pass

            playback = episode.playback_state
            if playback.completed:
                position = 0
            else:
                position = clamp_position(playback.position_millis, episode.duration_millis)

            self._session = _Session(
                episode_id=episode.id,
                title=episode.title,
                source=self._resolve_source(episode),
                token=next(self._tokens),
                position_millis=position,
                duration_millis=episode.duration_millis,
                rate=playback.rate,
                completed=playback.completed,
                last_played_at=playback.last_played_at,
            )
            logger.info(f"Loaded episode: {episode.title} at {position} ms")
            self._set_state(TransportState.LOADED)
            return self._state

    def play(self) -> TransportState:
        """Start decoding from the current position.

        From COMPLETED this replays from the start. A no-op while playing.

        Raises:
            StateError: If nothing is loaded
        """
        with self._lock:
            session = self._require_session("play")
            if self._state == TransportState.PLAYING:
                return self._state
            if self._state == TransportState.COMPLETED:
                session.position_millis = 0

            session.last_played_at = utcnow()
            self._start_decoding()
            session.last_checkpoint = time.monotonic()
            self._set_state(TransportState.PLAYING)
            return self._state

    def pause(self) -> TransportState:
        """Stop decoding and checkpoint. A no-op when already paused.

        Raises:
            StateError: If not playing or paused
        """
        with self._lock:
            if self._state == TransportState.PAUSED:
                return self._state
            if self._state != TransportState.PLAYING:
                raise StateError(f"Cannot pause in state {self._state.value}")

            self._stop_decoding()
            self._set_state(TransportState.PAUSED)
            self._checkpoint()
            return self._state

    def seek(self, position_millis: int) -> int:
        """Jump to a position clamped into [0, duration].

        While playing, decoding restarts at the new position. From COMPLETED
        the engine moves to PAUSED.

        Returns:
            The clamped position

        Raises:
            StateError: If nothing is loaded
        """
        with self._lock:
            session = self._require_session("seek")
            session.position_millis = clamp_position(position_millis, session.duration_millis)

            if self._state == TransportState.PLAYING:
                self._start_decoding()
            elif self._state == TransportState.COMPLETED:
                self._set_state(TransportState.PAUSED)

            self._checkpoint()
            return session.position_millis

    def skip(self, delta_millis: int) -> int:
        """Seek relative to the current position.

        Landing at or past a known duration completes the episode.

        Returns:
            The resulting position
        """
        with self._lock:
            session = self._require_session("skip")
            target = session.position_millis + int(delta_millis)
            if session.duration_millis and target >= session.duration_millis:
                if self._state == TransportState.PLAYING:
                    self._stop_decoding()
                position = self._complete(session)
                return position
            return self.seek(target)

    def skip_forward(self) -> int:
        seconds = self.repository.get_settings().skip_forward_seconds
        return self.skip(seconds * 1000)

    def skip_backward(self) -> int:
        seconds = self.repository.get_settings().skip_backward_seconds
        return self.skip(-seconds * 1000)

    def set_rate(self, rate: float) -> float:
        """Set the playback rate, clamped into [0.5, 3.0].

        Returns:
            The effective rate

        Raises:
            StateError: If nothing is loaded
        """
        with self._lock:
            session = self._require_session("set rate")
            session.rate = clamp_rate(rate)
            if self._state == TransportState.PLAYING:
                self.audio_output.send(SetRate(rate=session.rate, token=session.token))
            self._checkpoint()
            return session.rate

    def set_volume(self, volume: float) -> float:
        """Set the output volume, clamped into [0, 100]. Valid in any state."""
        with self._lock:
            self._volume = self._clamp_volume(volume)
            self.audio_output.send(SetVolume(volume=self._volume))
            return self._volume

    def stop(self) -> None:
        """Stop decoding, checkpoint the active episode and return to IDLE."""
        with self._lock:
            if not self._session:
                return
            self._halt()
            self._checkpoint()
            self._session = None
            self._set_state(TransportState.IDLE)

    def mark_played(self, episode_id: str, played: bool = True) -> PlaybackState:
        """Set or clear an episode's completed flag.

        Marking an episode played stores the completion position for the
        configured policy; clearing the flag keeps the position.

        Raises:
            NotFoundError: If the episode does not exist
        """
        with self._lock:
            session = self._session
            if session and session.episode_id == episode_id:
                session.completed = played
                if played:
                    session.position_millis = self._completion_position(session.duration_millis)
                self._checkpoint()
                return self._session_state(session)

            episode = self.repository.get_episode(episode_id)
            if episode is None:
                raise NotFoundError(f"Episode not found: {episode_id}")
            current = episode.playback_state
            position = (
                self._completion_position(episode.duration_millis) if played else current.position_millis
            )
            state = PlaybackState(
                position_millis=position,
                rate=current.rate,
                last_played_at=current.last_played_at,
                completed=played,
            )
            self.repository.update_playback_state(episode_id, state)
            return state

    def discard(self, episode_ids: Iterable[str]) -> None:
        """Drop the session without a checkpoint if its episode was deleted."""
        with self._lock:
            session = self._session
            if session and session.episode_id in set(episode_ids):
                self._stop_decoding()
                self._session = None
                logger.info(f"Discarded playback of deleted episode {session.episode_id}")
                self._set_state(TransportState.IDLE)

    # --- Audio collaborator callbacks ---

    def on_position(self, token: int, position_millis: int) -> bool:
        """Position report from the audio output.

        Returns:
            False if the report was stale and ignored
        """
        with self._lock:
            session = self._session
            if not session or token != session.token or self._state != TransportState.PLAYING:
                return False

            session.position_millis = clamp_position(position_millis, session.duration_millis)
            self._publish(
                PositionTick(session.episode_id, session.position_millis, session.duration_millis)
            )
            if time.monotonic() - session.last_checkpoint >= self.checkpoint_seconds:
                self._checkpoint()
            return True

    def on_end_of_stream(self, token: int) -> bool:
        """End-of-stream signal from the audio output.

        Returns:
            False if the signal was stale and ignored
        """
        with self._lock:
            session = self._session
            if not session or token != session.token or self._state != TransportState.PLAYING:
                return False
            self._complete(session)
            return True

    # --- Internals ---

    def _complete(self, session: _Session) -> int:
        session.position_millis = self._completion_position(session.duration_millis)
        session.completed = True
        self._set_state(TransportState.COMPLETED)
        self._checkpoint()
        logger.info(f"Completed episode: {session.title}")
        position = session.position_millis
        # Listeners may load the next episode from here
        self._publish(PlaybackCompleted(session.episode_id))
        return position

    def _completion_position(self, duration_millis: Optional[int]) -> int:
        if self.completion_policy == CompletionPolicy.KEEP and duration_millis:
            return duration_millis
        return 0

    def _resolve_source(self, episode: Episode) -> str:
        """Verified local file when downloaded, otherwise the enclosure URL."""
        if self.download_manager is not None:
            path = self.download_manager.playable_path(episode.id)
            if path:
                return path
        else:
            state = episode.download_state
            if (
                state.status == DownloadStatus.COMPLETED
                and state.local_path
                and os.path.exists(state.local_path)
                and os.path.getsize(state.local_path) == state.file_size
            ):
                return state.local_path
        return episode.enclosure_url

    def _start_decoding(self) -> None:
        session = self._session
        session.token = next(self._tokens)
        self.audio_output.send(
            StartDecodingFrom(
                source=session.source,
                position_millis=session.position_millis,
                rate=session.rate,
                token=session.token,
            )
        )

    def _stop_decoding(self) -> None:
        if self._state == TransportState.PLAYING and self._session:
            self.audio_output.send(StopDecoding(token=self._session.token))

    def _halt(self) -> None:
        """Stop decoding, leaving a playing session PAUSED."""
        if self._state == TransportState.PLAYING:
            self._stop_decoding()
            self._set_state(TransportState.PAUSED)

    def _session_state(self, session: _Session) -> PlaybackState:
        return PlaybackState(
            position_millis=session.position_millis,
            rate=session.rate,
            last_played_at=session.last_played_at,
            completed=session.completed,
        )

    def _checkpoint(self) -> None:
        """Persist the session; on failure reload the stored state and re-raise."""
        session = self._session
        try:
            self.repository.update_playback_state(session.episode_id, self._session_state(session))
        except NotFoundError:
            logger.warning(f"Episode {session.episode_id} no longer exists; dropping session")
            self._session = None
            self._set_state(TransportState.IDLE)
            raise
        except StorageError:
            logger.error(f"Playback checkpoint failed for {session.episode_id}; reloading")
            self._reload(session)
            raise
        session.last_checkpoint = time.monotonic()
        logger.debug(f"Playback checkpoint {session.episode_id}: {session.position_millis} ms")

    def _reload(self, session: _Session) -> None:
        try:
            episode = self.repository.get_episode(session.episode_id)
        except StorageError as e:
            logger.error(f"Could not reload playback state: {e}")
            return
        if episode is None:
            return
        stored = episode.playback_state
        session.position_millis = clamp_position(stored.position_millis, session.duration_millis)
        session.rate = stored.rate
        session.completed = stored.completed
        session.last_played_at = stored.last_played_at

    def _require_session(self, action: str) -> _Session:
        if self._state == TransportState.IDLE or not self._session:
            raise StateError(f"Cannot {action} with no episode loaded")
        return self._session

    def _set_state(self, state: TransportState) -> None:
        self._state = state
        session = self._session
        self._publish(
            PlaybackStateChanged(
                state=state.value,
                episode_id=session.episode_id if session else None,
                position_millis=session.position_millis if session else 0,
            )
        )

    @staticmethod
    def _clamp_volume(volume: float) -> float:
        return max(0.0, min(100.0, float(volume)))

    def _publish(self, event) -> None:
        if self.event_bus:
            self.event_bus.publish(event)
