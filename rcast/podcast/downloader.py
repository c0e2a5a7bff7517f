"""Episode download manager with bounded concurrency.

Downloads episode audio with support for:
- A fixed global concurrency limit with a FIFO queue
- Pause, cancel and byte-range resume
- Progress checkpoints at a bounded cadence
- Size verification before a file is moved into place
- Crash recovery at startup
"""

import glob
import logging
import os
import threading
import time
from collections import deque
from contextlib import contextmanager
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional, Tuple
from urllib.parse import unquote, urlparse

import requests

from ..db.models import Episode
from ..db.repository import PodcastRepositoryInterface
from ..db.states import SIZE_MISMATCH, DownloadState, DownloadStatus
from ..errors import (
    AlreadyQueuedOrDownloaded,
    IntegrityError,
    NetworkError,
    NotFoundError,
    StateError,
    StorageError,
)
from ..events import DownloadProgress, DownloadStateChanged, EventBus
from .http import DEFAULT_USER_AGENT, create_session

logger = logging.getLogger(__name__)

PART_SUFFIX = ".part"

MIME_TO_EXT = {
    "audio/mpeg": ".mp3",
    "audio/mp3": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/aac": ".aac",
    "audio/ogg": ".ogg",
    "audio/opus": ".opus",
    "audio/wav": ".wav",
    "audio/flac": ".flac",
}

CANCELLABLE = (DownloadStatus.QUEUED, DownloadStatus.IN_PROGRESS, DownloadStatus.PAUSED)
ENQUEUEABLE = (DownloadStatus.NOT_DOWNLOADED, DownloadStatus.FAILED)


@dataclass
class _DownloadJob:
    """A queued or running download of one episode."""

    episode_id: str
    offset: int = 0
    attempt: int = 0
    started: bool = False
    cancel_event: threading.Event = field(default_factory=threading.Event)
    pause_event: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)


@dataclass
class RecoveryResult:
    """Episodes whose persisted download state was corrected at startup."""

    paused: List[str] = field(default_factory=list)
    reset: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


class DownloadManager:
    """Downloads episode audio with a fixed concurrency limit.

    Jobs start in FIFO order as slots free up. Each running job checks its
    cancel and pause flags before every chunk, so an interruption takes at most
    one chunk. While a job runs, its worker thread is the only writer of the
    episode's download state.

    Example:
        manager = DownloadManager(
            repository=repo,
            download_directory="./cache/audio",
            max_concurrent=3,
        )
        manager.recover()
        manager.enqueue(episode_id)
        manager.wait_until_idle()
    """

    DEFAULT_CHUNK_SIZE = 65536
    DEFAULT_TIMEOUT = 300  # 5 minutes

    def __init__(
        self,
        repository: PodcastRepositoryInterface,
        download_directory: str,
        max_concurrent: int = 3,
        timeout: int = DEFAULT_TIMEOUT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        checkpoint_bytes: int = 1024 * 1024,
        checkpoint_seconds: float = 1.0,
        user_agent: Optional[str] = None,
        retry_attempts: int = 0,
        session: Optional[requests.Session] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """Initialize the download manager.

        Args:
            repository: Database repository
            download_directory: Directory for finished and partial files
            max_concurrent: Maximum simultaneous downloads
            timeout: Request timeout in seconds
            chunk_size: Chunk size for streaming downloads
            checkpoint_bytes: Bytes received between progress checkpoints
            checkpoint_seconds: Seconds between progress checkpoints
            user_agent: Custom user agent string
            retry_attempts: Connection-level retries of the HTTP adapter
            session: Preconfigured requests session
            event_bus: Receives DownloadStateChanged and DownloadProgress events
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self.repository = repository
        self.download_directory = download_directory
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.checkpoint_bytes = checkpoint_bytes
        self.checkpoint_seconds = checkpoint_seconds
        self.event_bus = event_bus

        os.makedirs(download_directory, exist_ok=True)

        self._session = session or create_session(
            user_agent or DEFAULT_USER_AGENT, retry_attempts
        )
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix="download"
        )

        self._lock = threading.Lock()
        self._idle = threading.Condition(self._lock)
        self._pending: Deque[_DownloadJob] = deque()
        self._jobs: Dict[str, _DownloadJob] = {}
        self._active = 0
        self._closed = False

    # --- Paths ---

    def final_path(self, episode: Episode) -> str:
        """Deterministic location of an episode's finished file."""
        return os.path.join(self.download_directory, f"{episode.id}{self._extension(episode)}")

    def part_path(self, episode: Episode) -> str:
        return self.final_path(episode) + PART_SUFFIX

    def _extension(self, episode: Episode) -> str:
        url_path = urlparse(episode.enclosure_url).path
        _, ext = os.path.splitext(unquote(os.path.basename(url_path)))
        ext = ext.lower()
        if not ext or len(ext) > 6 or not ext[1:].isalnum():
            ext = MIME_TO_EXT.get(episode.enclosure_type, ".mp3")
        return ext

    # --- Commands ---

    def enqueue(self, episode_id: str) -> DownloadState:
        """Queue an episode for download.

        Allowed from NotDownloaded, and from Failed as a manual retry.

        Raises:
            NotFoundError: If the episode does not exist
            AlreadyQueuedOrDownloaded: If the episode is in any other state
        """
        with self._command() as events:
            self._check_open()
            episode = self._get_episode(episode_id)
            current = episode.download_state
            if current.status not in ENQUEUEABLE:
                raise AlreadyQueuedOrDownloaded(
                    f"Episode {episode_id} is already {current.status.value}"
                )

            attempt = current.attempt if current.status == DownloadStatus.FAILED else 0
            state = DownloadState.queued(attempt=attempt)
            try:
                self._transition(episode_id, ENQUEUEABLE, state, events)
            except StateError as e:
                raise AlreadyQueuedOrDownloaded(str(e)) from e

            job = _DownloadJob(episode_id=episode_id, attempt=attempt)
            self._jobs[episode_id] = job
            self._pending.append(job)
            logger.info(f"Queued download: {episode.title}")
            self._schedule_locked()
        return state

    def cancel(self, episode_id: str, wait: bool = True, timeout: Optional[float] = None) -> DownloadState:
        """Stop a queued, running or paused download and remove its partial file.

        Raises:
            NotFoundError: If the episode does not exist
            StateError: If the episode is not Queued, InProgress or Paused
        """
        with self._command() as events:
            episode = self._get_episode(episode_id)
            status = episode.download_state.status
            job = self._jobs.get(episode_id)

            if job and job.started:
                job.cancel_event.set()
            else:
                if status not in CANCELLABLE:
                    raise StateError(f"Cannot cancel download in state {status.value}")
                if job:
                    self._drop_pending_locked(job)
                self._remove_file(self.part_path(episode))
                state = DownloadState.not_downloaded()
                self._transition(episode_id, CANCELLABLE, state, events)
                logger.info(f"Cancelled download: {episode.title}")
                return state

        if wait:
            job.done.wait(timeout)
        return self._current_state(episode_id)

    def pause(self, episode_id: str, wait: bool = True, timeout: Optional[float] = None) -> DownloadState:
        """Pause a running download, keeping the bytes received so far.

        A resumed download still waiting for a slot can be paused again.

        Raises:
            NotFoundError: If the episode does not exist
            StateError: If the download is not running
        """
        with self._command() as events:
            episode = self._get_episode(episode_id)
            current = episode.download_state
            job = self._jobs.get(episode_id)

            if job and job.started:
                job.pause_event.set()
            elif job and current.status == DownloadStatus.QUEUED and job.offset > 0:
                self._drop_pending_locked(job)
                state = DownloadState.paused(job.offset, attempt=job.attempt)
                self._transition(episode_id, (DownloadStatus.QUEUED,), state, events)
                return state
            elif job is None and current.status == DownloadStatus.IN_PROGRESS:
                # Persisted InProgress with no worker behind it
                state = DownloadState.paused(
                    current.bytes_received, current.bytes_total, current.attempt
                )
                self._transition(episode_id, (DownloadStatus.IN_PROGRESS,), state, events)
                return state
            else:
                raise StateError(f"Cannot pause download in state {current.status.value}")

        if wait:
            job.done.wait(timeout)
        return self._current_state(episode_id)

    def resume(self, episode_id: str) -> DownloadState:
        """Resume a paused download from its received byte count.

        The download goes back through Queued with its offset kept, and starts
        as soon as a slot is free.

        Raises:
            NotFoundError: If the episode does not exist
            StateError: If the download is not paused
        """
        with self._command() as events:
            self._check_open()
            episode = self._get_episode(episode_id)
            current = episode.download_state
            if current.status != DownloadStatus.PAUSED:
                raise StateError(f"Cannot resume download in state {current.status.value}")

            offset = self._usable_offset(self.part_path(episode), current.bytes_received)
            state = DownloadState.queued(resume_from=offset, attempt=current.attempt)
            self._transition(episode_id, (DownloadStatus.PAUSED,), state, events)

            job = _DownloadJob(episode_id=episode_id, offset=offset, attempt=current.attempt)
            self._jobs[episode_id] = job
            self._pending.append(job)
            logger.info(f"Resuming download of {episode.title} from byte {offset}")
            self._schedule_locked()
        return state

    def delete_download(self, episode_id: str) -> DownloadState:
        """Remove a finished or failed download's file and reset its state.

        Raises:
            NotFoundError: If the episode does not exist
            StateError: If the download is not Completed or Failed
        """
        allowed = (DownloadStatus.COMPLETED, DownloadStatus.FAILED)
        with self._command() as events:
            episode = self._get_episode(episode_id)
            current = episode.download_state
            if current.status not in allowed:
                raise StateError(f"Cannot delete download in state {current.status.value}")

            self._remove_file(current.local_path or self.final_path(episode))
            self._remove_file(self.part_path(episode))
            state = DownloadState.not_downloaded()
            self._transition(episode_id, allowed, state, events)
        logger.info(f"Deleted download: {episode.title}")
        return state

    def discard(self, episode_ids: Iterable[str], timeout: Optional[float] = None) -> None:
        """Stop jobs for deleted episodes and remove every file they left.

        Used after the episodes' rows are gone, so no state is written.
        """
        episode_ids = list(episode_ids)
        waiting = []
        with self._lock:
            for episode_id in episode_ids:
                job = self._jobs.get(episode_id)
                if job is None:
                    continue
                job.cancel_event.set()
                if job.started:
                    waiting.append(job)
                else:
                    self._drop_pending_locked(job)

        for job in waiting:
            job.done.wait(timeout)

        for episode_id in episode_ids:
            for path in glob.glob(os.path.join(glob.escape(self.download_directory), f"{episode_id}.*")):
                self._remove_file(path)

    # --- Startup and integrity ---

    def recover(self) -> RecoveryResult:
        """Correct download states left behind by an unclean shutdown.

        Never starts network I/O:
        - InProgress becomes Paused at its last checkpoint
        - Queued with a resume offset becomes Paused, otherwise NotDownloaded
        - Completed is verified; a missing or wrong-size file becomes Failed
        """
        result = RecoveryResult()
        episodes = self.repository.list_episodes_by_download_status(
            [DownloadStatus.IN_PROGRESS, DownloadStatus.QUEUED, DownloadStatus.COMPLETED]
        )

        for episode in episodes:
            with self._lock:
                if episode.id in self._jobs:
                    continue
            current = episode.download_state

            if current.status == DownloadStatus.COMPLETED:
                if not self.verify(episode.id):
                    result.failed.append(episode.id)
                continue

            if current.status == DownloadStatus.IN_PROGRESS or current.bytes_received > 0:
                state = DownloadState.paused(
                    current.bytes_received, current.bytes_total, current.attempt
                )
                result.paused.append(episode.id)
                logger.warning(
                    f"Recovered interrupted download of {episode.title} as paused at "
                    f"{current.bytes_received} bytes"
                )
            else:
                state = DownloadState.not_downloaded()
                result.reset.append(episode.id)
                logger.warning(f"Recovered queued download of {episode.title} as not downloaded")

            try:
                self._transition(episode.id, (current.status,), state)
            except (StateError, NotFoundError) as e:
                logger.warning(f"Skipped recovery of {episode.id}: {e}")

        logger.info(
            f"Download recovery: {len(result.paused)} paused, {len(result.reset)} reset, "
            f"{len(result.failed)} failed verification"
        )
        return result

    def verify(self, episode_id: str) -> bool:
        """Check that a completed download's file exists with the recorded size.

        A failed check demotes the episode to Failed.

        Returns:
            True if the episode is Completed and its file is intact
        """
        episode = self._get_episode(episode_id)
        current = episode.download_state
        if current.status != DownloadStatus.COMPLETED:
            return False

        path = current.local_path
        if not path or not os.path.exists(path):
            reason = "File missing"
        elif current.file_size is not None and os.path.getsize(path) != current.file_size:
            reason = SIZE_MISMATCH
        else:
            return True

        logger.warning(f"Download of {episode.title} failed verification: {reason}")
        try:
            self._transition(
                episode_id,
                (DownloadStatus.COMPLETED,),
                DownloadState.failed(reason, current.attempt + 1),
            )
        except StateError:
            pass
        return False

    def playable_path(self, episode_id: str) -> Optional[str]:
        """Local file to play, or None when there is no verified download."""
        if not self.verify(episode_id):
            return None
        return self._get_episode(episode_id).local_file_path

    # --- Scheduling ---

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    def wait_until_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no download is running or pending.

        Returns:
            False if the timeout expired first
        """
        with self._idle:
            return self._idle.wait_for(lambda: self._active == 0 and not self._pending, timeout)

    def _schedule_locked(self) -> None:
        while not self._closed and self._active < self.max_concurrent and self._pending:
            job = self._pending.popleft()
            job.started = True
            self._active += 1
            self._executor.submit(self._run_job, job)

    def _drop_pending_locked(self, job: _DownloadJob) -> None:
        try:
            self._pending.remove(job)
        except ValueError:
            pass
        if self._jobs.get(job.episode_id) is job:
            del self._jobs[job.episode_id]
        job.done.set()
        self._idle.notify_all()

    def _run_job(self, job: _DownloadJob) -> None:
        try:
            self._download(job)
        except Exception as e:
            logger.exception(f"Download worker failed for {job.episode_id}: {e}")
        finally:
            with self._lock:
                self._active -= 1
                if self._jobs.get(job.episode_id) is job:
                    del self._jobs[job.episode_id]
                self._schedule_locked()
                self._idle.notify_all()
            job.done.set()

    # --- Worker ---

    def _download(self, job: _DownloadJob) -> None:
        episode = self.repository.get_episode(job.episode_id)
        if episode is None:
            return

        final_path = self.final_path(episode)
        part_path = final_path + PART_SUFFIX
        offset = self._usable_offset(part_path, job.offset)

        # Recorded before the first byte so a crash is visible on restart
        try:
            self._transition(
                job.episode_id,
                (DownloadStatus.QUEUED,),
                DownloadState.in_progress(offset, None, job.attempt),
            )
        except (StateError, NotFoundError) as e:
            logger.debug(f"Download of {job.episode_id} no longer queued: {e}")
            return

        if self._interrupted(job):
            self._finish_interrupted(job, part_path, offset, None)
            return

        logger.info(f"Downloading: {episode.title}")
        started_at = time.monotonic()
        try:
            received, total = self._stream(job, episode.enclosure_url, part_path, offset)
        except requests.exceptions.RequestException as e:
            status_code = e.response.status_code if getattr(e, "response", None) is not None else None
            error = NetworkError(str(e), retryable=True, status_code=status_code)
            logger.error(f"Download failed for {episode.title}: {error}")
            self._fail(job, part_path, str(error))
            return
        except OSError as e:
            logger.error(f"Could not write download for {episode.title}: {e}")
            self._fail(job, part_path, f"Write failed: {e}")
            return

        if self._interrupted(job):
            self._finish_interrupted(job, part_path, received, total)
            return

        try:
            size = self._verify_part(part_path, received, total)
        except IntegrityError as e:
            logger.error(f"Download of {episode.title} is incomplete: {e}")
            self._fail(job, part_path, SIZE_MISMATCH)
            return

        if self._interrupted(job):
            self._finish_interrupted(job, part_path, received, total)
            return

        try:
            os.replace(part_path, final_path)
        except OSError as e:
            logger.error(f"Could not move download of {episode.title} into place: {e}")
            self._fail(job, part_path, f"Write failed: {e}")
            return
        self._write_terminal(job, DownloadState.completed(final_path, size), cleanup=final_path)

        duration = time.monotonic() - started_at
        logger.info(
            f"Downloaded: {episode.title} "
            f"({size / 1024 / 1024:.1f} MB in {duration:.1f}s)"
        )

    def _stream(
        self, job: _DownloadJob, url: str, part_path: str, offset: int
    ) -> Tuple[int, Optional[int]]:
        """Fetch the enclosure into the part file, starting at `offset`.

        Returns:
            Tuple of (bytes received in total, expected total or None)
        """
        while True:
            headers = {"Range": f"bytes={offset}-"} if offset else {}
            with self._session.get(
                url,
                stream=True,
                headers=headers,
                timeout=self.timeout,
                allow_redirects=True,
            ) as response:
                if offset and response.status_code == 416:
                    logger.warning(
                        f"Server rejected range for {job.episode_id} at byte {offset}; "
                        f"restarting from zero"
                    )
                    offset = 0
                    continue

                response.raise_for_status()

                if offset and response.status_code != 206:
                    logger.warning(
                        f"Server ignored range request for {job.episode_id}; restarting from zero"
                    )
                    offset = 0

                total = self._expected_total(response, offset)
                received = offset
                last_bytes = received
                last_time = time.monotonic()

                with open(part_path, "ab" if offset else "wb") as f:
                    for chunk in response.iter_content(chunk_size=self.chunk_size):
                        if self._interrupted(job):
                            break
                        if not chunk:
                            continue
                        f.write(chunk)
                        received += len(chunk)

                        now = time.monotonic()
                        if (
                            received - last_bytes >= self.checkpoint_bytes
                            or now - last_time >= self.checkpoint_seconds
                        ):
                            f.flush()
                            self._checkpoint(job, received, total)
                            last_bytes = received
                            last_time = now

                    f.flush()
                    os.fsync(f.fileno())

                return received, total

    @staticmethod
    def _expected_total(response: requests.Response, offset: int) -> Optional[int]:
        """Full file size from Content-Range, or Content-Length plus the offset."""
        content_range = response.headers.get("Content-Range")
        if response.status_code == 206 and content_range and "/" in content_range:
            total = content_range.rsplit("/", 1)[1].strip()
            if total.isdigit():
                return int(total)

        length = response.headers.get("Content-Length")
        if length and length.strip().isdigit():
            return int(length) + (offset if response.status_code == 206 else 0)
        return None

    @staticmethod
    def _verify_part(part_path: str, received: int, total: Optional[int]) -> int:
        size = os.path.getsize(part_path)
        if total is not None and received != total:
            raise IntegrityError(
                f"received {received} of {total} bytes", expected=total, actual=received
            )
        if size != received:
            raise IntegrityError(
                f"file holds {size} bytes, received {received}", expected=received, actual=size
            )
        return size

    def _checkpoint(self, job: _DownloadJob, received: int, total: Optional[int]) -> None:
        try:
            self.repository.update_download_state(
                job.episode_id, DownloadState.in_progress(received, total, job.attempt)
            )
        except NotFoundError:
            # Episode deleted underneath the download
            job.cancel_event.set()
            return
        except StorageError as e:
            logger.warning(f"Progress checkpoint failed for {job.episode_id}: {e}")
            return
        logger.debug(f"Checkpoint {job.episode_id}: {received}/{total}")
        self._publish(DownloadProgress(job.episode_id, received, total))

    def _finish_interrupted(
        self, job: _DownloadJob, part_path: str, received: int, total: Optional[int]
    ) -> None:
        if job.cancel_event.is_set():
            self._remove_file(part_path)
            self._write_terminal(job, DownloadState.not_downloaded())
            logger.info(f"Cancelled download: {job.episode_id}")
        else:
            self._write_terminal(job, DownloadState.paused(received, total, job.attempt))
            logger.info(f"Paused download {job.episode_id} at {received} bytes")

    def _fail(self, job: _DownloadJob, part_path: str, reason: str) -> None:
        self._remove_file(part_path)
        self._write_terminal(job, DownloadState.failed(reason, job.attempt + 1))

    def _write_terminal(
        self, job: _DownloadJob, state: DownloadState, cleanup: Optional[str] = None
    ) -> None:
        """Write the state a worker ends with; a deleted episode only has its file removed."""
        try:
            self._transition(job.episode_id, (DownloadStatus.IN_PROGRESS,), state)
        except NotFoundError:
            if cleanup:
                self._remove_file(cleanup)
        except StateError as e:
            logger.warning(f"Download state of {job.episode_id} changed underneath worker: {e}")
        except StorageError as e:
            logger.error(f"Could not record {state.status.value} for {job.episode_id}: {e}")
            if state.status == DownloadStatus.FAILED:
                # Left InProgress; recover() pauses it on the next start
                return
            if cleanup:
                self._remove_file(cleanup)
            self._write_terminal(
                job, DownloadState.failed(f"Could not record state: {e}", job.attempt + 1)
            )

    # --- Helpers ---

    @staticmethod
    def _interrupted(job: _DownloadJob) -> bool:
        return job.cancel_event.is_set() or job.pause_event.is_set()

    @staticmethod
    def _usable_offset(part_path: str, offset: int) -> int:
        """Resume offset that the part file can actually back.

        Bytes past the last checkpoint are trimmed; a short or missing part
        file lowers the offset.
        """
        if offset <= 0 or not os.path.exists(part_path):
            return 0
        size = os.path.getsize(part_path)
        if size > offset:
            with open(part_path, "r+b") as f:
                f.truncate(offset)
            return offset
        if size < offset:
            logger.warning(f"Partial file {part_path} is shorter than checkpoint; resuming at {size}")
        return size

    @staticmethod
    def _remove_file(path: Optional[str]) -> None:
        if path and os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.error(f"Failed to delete {path}: {e}")

    def _get_episode(self, episode_id: str) -> Episode:
        episode = self.repository.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode not found: {episode_id}")
        return episode

    def _current_state(self, episode_id: str) -> DownloadState:
        episode = self.repository.get_episode(episode_id)
        return episode.download_state if episode else DownloadState.not_downloaded()

    @contextmanager
    def _command(self):
        """Hold the manager lock; events collected inside are published once it is released."""
        events: List = []
        try:
            with self._lock:
                yield events
        finally:
            for event in events:
                self._publish(event)

    def _transition(
        self,
        episode_id: str,
        allowed_from: Iterable[DownloadStatus],
        state: DownloadState,
        events: Optional[List] = None,
    ) -> None:
        self.repository.transition_download_state(episode_id, allowed_from, state)
        event = DownloadStateChanged(episode_id, state)
        if events is None:
            self._publish(event)
        else:
            events.append(event)

    def _publish(self, event) -> None:
        if self.event_bus:
            self.event_bus.publish(event)

    def _check_open(self) -> None:
        if self._closed:
            raise StateError("Download manager is closed")

    def close(self) -> None:
        """Pause running downloads and release resources.

        Jobs still waiting for a slot stay Queued in the store; recover()
        settles them on the next start.
        """
        with self._lock:
            self._closed = True
            self._pending.clear()
            self._jobs = {k: job for k, job in self._jobs.items() if job.started}
            for job in self._jobs.values():
                job.pause_event.set()
            self._idle.notify_all()
        self._executor.shutdown(wait=True)
        self._session.close()
