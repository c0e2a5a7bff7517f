"""Tests for the episode download manager."""

import os
import threading
import time
from unittest.mock import patch

import pytest
import requests

from rcast.db.states import SIZE_MISMATCH, DownloadState, DownloadStatus
from rcast.errors import AlreadyQueuedOrDownloaded, NotFoundError, StateError, StorageError
from rcast.events import DownloadProgress, DownloadStateChanged, EventBus
from rcast.podcast.downloader import PART_SUFFIX, DownloadManager

BODY = b"0123456789" * 10


class TestDownloadManager:
    """Tests for DownloadManager."""

    @pytest.fixture
    def download_dir(self, tmp_path):
        """Create a temporary download directory path."""
        return str(tmp_path / "audio")

    @pytest.fixture
    def events(self):
        bus = EventBus()
        bus.received = []
        bus.subscribe(bus.received.append)
        return bus

    @pytest.fixture
    def manager(self, repository, download_dir, fake_session, events):
        """Create a DownloadManager with a scripted HTTP session."""
        manager = DownloadManager(
            repository=repository,
            download_directory=download_dir,
            max_concurrent=3,
            chunk_size=10,
            checkpoint_bytes=1024 * 1024,
            checkpoint_seconds=3600,
            session=fake_session,
            event_bus=events,
        )
        yield manager
        manager.close()

    @pytest.fixture
    def gated(self, make_response):
        """Factory for a full-body response that stalls after its first chunk."""
        gate = threading.Event()
        started = threading.Event()

        def _response():
            return make_response(
                content=BODY, headers={"Content-Length": str(len(BODY))}, gate=gate, started=started
            )

        _response.gate = gate
        _response.started = started
        return _response

    def _state(self, repository, episode_id) -> DownloadState:
        return repository.get_episode(episode_id).download_state

    def test_init_creates_directory(self, repository, download_dir, fake_session):
        assert not os.path.exists(download_dir)

        manager = DownloadManager(repository, download_dir, session=fake_session)
        manager.close()

        assert os.path.isdir(download_dir)

    def test_final_path_uses_episode_id_and_extension(self, manager, add_episode, download_dir):
        episode = add_episode("a", enclosure_url="https://cdn.example.com/show/ep.m4a?token=1")

        assert manager.final_path(episode) == os.path.join(download_dir, f"{episode.id}.m4a")
        assert manager.part_path(episode).endswith(".m4a" + PART_SUFFIX)

    def test_download_completes(self, manager, repository, add_episode, fake_session, make_response, events):
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, make_response(content=BODY, headers={"Content-Length": "100"}))

        manager.enqueue(episode.id)
        assert manager.wait_until_idle(10)

        state = self._state(repository, episode.id)
        assert state.status == DownloadStatus.COMPLETED
        assert state.file_size == len(BODY)
        assert state.local_path == manager.final_path(episode)
        with open(state.local_path, "rb") as f:
            assert f.read() == BODY
        assert not os.path.exists(manager.part_path(episode))

        statuses = [e.state.status for e in events.received if isinstance(e, DownloadStateChanged)]
        assert statuses == [DownloadStatus.QUEUED, DownloadStatus.IN_PROGRESS, DownloadStatus.COMPLETED]

    def test_enqueue_rejects_completed(self, manager, repository, add_episode):
        episode = add_episode("a")
        repository.update_download_state(episode.id, DownloadState.completed("/tmp/x.mp3", 1))

        with pytest.raises(AlreadyQueuedOrDownloaded):
            manager.enqueue(episode.id)

    def test_enqueue_missing_episode(self, manager):
        with pytest.raises(NotFoundError):
            manager.enqueue("missing")

    def test_size_mismatch_fails(self, manager, repository, add_episode, fake_session, make_response, download_dir):
        """A body shorter than Content-Length ends in Failed and leaves no files."""
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, make_response(content=BODY, headers={"Content-Length": "200"}))

        manager.enqueue(episode.id)
        assert manager.wait_until_idle(10)

        state = self._state(repository, episode.id)
        assert state.status == DownloadStatus.FAILED
        assert state.reason == SIZE_MISMATCH
        assert state.attempt == 1
        assert os.listdir(download_dir) == []

    def test_network_error_fails_and_retry_counts_attempts(self, manager, repository, add_episode, fake_session):
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, requests.ConnectionError("connection refused"))

        manager.enqueue(episode.id)
        assert manager.wait_until_idle(10)
        first = self._state(repository, episode.id)

        manager.enqueue(episode.id)
        assert manager.wait_until_idle(10)
        second = self._state(repository, episode.id)

        assert first.status == DownloadStatus.FAILED
        assert "connection refused" in first.reason
        assert first.attempt == 1
        assert second.attempt == 2

    def test_http_error_fails(self, manager, repository, add_episode, fake_session, make_response):
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, make_response(status_code=404))

        manager.enqueue(episode.id)
        assert manager.wait_until_idle(10)

        assert self._state(repository, episode.id).status == DownloadStatus.FAILED

    def test_move_into_place_failure_fails(self, manager, repository, add_episode, fake_session, make_response, download_dir):
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, make_response(content=BODY, headers={"Content-Length": "100"}))

        with patch("rcast.podcast.downloader.os.replace", side_effect=OSError("read-only file system")):
            manager.enqueue(episode.id)
            assert manager.wait_until_idle(10)

        state = self._state(repository, episode.id)
        assert state.status == DownloadStatus.FAILED
        assert "read-only file system" in state.reason
        assert os.listdir(download_dir) == []

    def test_unrecorded_completion_fails(self, manager, repository, add_episode, fake_session, make_response, download_dir):
        """A Completed state the store cannot write leaves the episode Failed with no file."""
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, make_response(content=BODY, headers={"Content-Length": "100"}))
        transition = repository.transition_download_state

        def refuse_completed(episode_id, allowed_from, state):
            if state.status == DownloadStatus.COMPLETED:
                raise StorageError("database is locked")
            return transition(episode_id, allowed_from, state)

        with patch.object(repository, "transition_download_state", side_effect=refuse_completed):
            manager.enqueue(episode.id)
            assert manager.wait_until_idle(10)

        state = self._state(repository, episode.id)
        assert state.status == DownloadStatus.FAILED
        assert "database is locked" in state.reason
        assert os.listdir(download_dir) == []

    def test_listener_can_read_manager(self, manager, add_episode, fake_session, make_response, events):
        """Listeners run after the manager lock is released, so they may query it."""
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, make_response(content=BODY, headers={"Content-Length": "100"}))
        seen = []

        def redraw(event):
            if isinstance(event, DownloadStateChanged):
                seen.append(manager.active_count)

        events.subscribe(redraw)
        worker = threading.Thread(target=manager.enqueue, args=(episode.id,), daemon=True)
        worker.start()
        worker.join(5)

        assert not worker.is_alive()
        assert manager.wait_until_idle(10)
        assert seen

    def test_listener_can_enqueue(self, manager, repository, add_episode, fake_session, make_response, events):
        first = add_episode("a")
        second = add_episode("b")
        for episode in (first, second):
            fake_session.add(episode.enclosure_url, make_response(content=BODY, headers={"Content-Length": "100"}))

        def auto_download(event):
            if (
                isinstance(event, DownloadStateChanged)
                and event.episode_id == first.id
                and event.state.status == DownloadStatus.QUEUED
            ):
                manager.enqueue(second.id)

        events.subscribe(auto_download)
        worker = threading.Thread(target=manager.enqueue, args=(first.id,), daemon=True)
        worker.start()
        worker.join(5)

        assert not worker.is_alive()
        assert manager.wait_until_idle(10)
        assert self._state(repository, second.id).status == DownloadStatus.COMPLETED

    def test_pause_and_resume_with_range(self, manager, repository, add_episode, fake_session, make_response, gated):
        """A paused download resumes from its byte count with a Range request."""
        episode = add_episode("a")
        fake_session.add(
            episode.enclosure_url,
            gated(),
            make_response(
                status_code=206,
                content=BODY[10:],
                headers={"Content-Range": "bytes 10-99/100", "Content-Length": "90"},
            ),
        )

        manager.enqueue(episode.id)
        assert gated.started.wait(10)
        manager.pause(episode.id, wait=False)
        gated.gate.set()
        assert manager.wait_until_idle(10)

        paused = self._state(repository, episode.id)
        assert paused.status == DownloadStatus.PAUSED
        assert paused.bytes_received == 10
        assert os.path.getsize(manager.part_path(episode)) == 10

        queued = manager.resume(episode.id)
        assert queued.bytes_received == 10
        assert manager.wait_until_idle(10)

        state = self._state(repository, episode.id)
        assert state.status == DownloadStatus.COMPLETED
        with open(state.local_path, "rb") as f:
            assert f.read() == BODY
        assert fake_session.calls_for(episode.enclosure_url)[1]["headers"]["Range"] == "bytes=10-"

    def test_resume_restarts_when_range_ignored(self, manager, repository, add_episode, fake_session, make_response):
        episode = add_episode("a")
        with open(manager.part_path(episode), "wb") as f:
            f.write(b"XXXXX")
        repository.update_download_state(episode.id, DownloadState.paused(5))
        fake_session.add(episode.enclosure_url, make_response(content=BODY, headers={"Content-Length": "100"}))

        manager.resume(episode.id)
        assert manager.wait_until_idle(10)

        state = self._state(repository, episode.id)
        assert state.status == DownloadStatus.COMPLETED
        with open(state.local_path, "rb") as f:
            assert f.read() == BODY

    def test_resume_restarts_after_416(self, manager, repository, add_episode, fake_session, make_response):
        episode = add_episode("a")
        with open(manager.part_path(episode), "wb") as f:
            f.write(b"XXXXX")
        repository.update_download_state(episode.id, DownloadState.paused(5))
        fake_session.add(
            episode.enclosure_url,
            make_response(status_code=416),
            make_response(content=BODY, headers={"Content-Length": "100"}),
        )

        manager.resume(episode.id)
        assert manager.wait_until_idle(10)

        calls = fake_session.calls_for(episode.enclosure_url)
        assert calls[0]["headers"]["Range"] == "bytes=5-"
        assert "Range" not in calls[1]["headers"]
        assert self._state(repository, episode.id).status == DownloadStatus.COMPLETED

    def test_resume_trims_bytes_past_checkpoint(self, manager, repository, add_episode, fake_session, make_response):
        episode = add_episode("a")
        with open(manager.part_path(episode), "wb") as f:
            f.write(BODY[:15])
        repository.update_download_state(episode.id, DownloadState.paused(10))
        fake_session.add(
            episode.enclosure_url,
            make_response(
                status_code=206,
                content=BODY[10:],
                headers={"Content-Range": "bytes 10-99/100"},
            ),
        )

        manager.resume(episode.id)
        assert manager.wait_until_idle(10)

        state = self._state(repository, episode.id)
        assert state.status == DownloadStatus.COMPLETED
        with open(state.local_path, "rb") as f:
            assert f.read() == BODY

    def test_resume_requires_paused(self, manager, add_episode):
        with pytest.raises(StateError):
            manager.resume(add_episode("a").id)

    def test_pause_requires_running(self, manager, add_episode):
        with pytest.raises(StateError):
            manager.pause(add_episode("a").id)

    def test_cancel_running_removes_partial_file(self, manager, repository, add_episode, fake_session, gated, download_dir):
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, gated())

        manager.enqueue(episode.id)
        assert gated.started.wait(10)
        manager.cancel(episode.id, wait=False)
        gated.gate.set()
        assert manager.wait_until_idle(10)

        assert self._state(repository, episode.id).status == DownloadStatus.NOT_DOWNLOADED
        assert os.listdir(download_dir) == []

    def test_cancel_paused(self, manager, repository, add_episode):
        episode = add_episode("a")
        with open(manager.part_path(episode), "wb") as f:
            f.write(b"12345")
        repository.update_download_state(episode.id, DownloadState.paused(5))

        state = manager.cancel(episode.id)

        assert state.status == DownloadStatus.NOT_DOWNLOADED
        assert not os.path.exists(manager.part_path(episode))

    def test_cancel_not_downloaded(self, manager, add_episode):
        with pytest.raises(StateError):
            manager.cancel(add_episode("a").id)

    def test_cancel_waiting_job(self, repository, download_dir, fake_session, gated, add_episode):
        """A job still waiting for a slot is dropped without network I/O."""
        manager = DownloadManager(
            repository, download_dir, max_concurrent=1, chunk_size=10, session=fake_session
        )
        try:
            running = add_episode("a")
            waiting = add_episode("b")
            fake_session.add(running.enclosure_url, gated())

            manager.enqueue(running.id)
            manager.enqueue(waiting.id)
            state = manager.cancel(waiting.id)
            gated.gate.set()
            assert manager.wait_until_idle(10)
        finally:
            manager.close()

        assert state.status == DownloadStatus.NOT_DOWNLOADED
        assert fake_session.calls_for(waiting.enclosure_url) == []
        assert repository.get_episode(running.id).download_state.status == DownloadStatus.COMPLETED

    def test_concurrency_limit(self, repository, download_dir, fake_session, make_response, add_episode):
        """Ten downloads with a limit of three never run, or show as InProgress, more than three at once."""
        manager = DownloadManager(
            repository, download_dir, max_concurrent=3, chunk_size=10, session=fake_session
        )
        gate = threading.Event()
        lock = threading.Lock()
        active = [0]
        peak = [0]
        stored_peak = [0]

        def record_stored():
            in_progress = repository.list_episodes_by_download_status([DownloadStatus.IN_PROGRESS])
            with lock:
                stored_peak[0] = max(stored_peak[0], len(in_progress))

        def finished():
            with lock:
                active[0] -= 1

        def handler(headers):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            record_stored()
            return make_response(
                content=BODY, headers={"Content-Length": "100"}, gate=gate, on_exit=finished
            )

        episodes = [add_episode(f"ep-{i}") for i in range(10)]
        for episode in episodes:
            fake_session.add(episode.enclosure_url, handler)

        try:
            for episode in episodes:
                manager.enqueue(episode.id)

            deadline = time.monotonic() + 10
            while time.monotonic() < deadline and active[0] < 3:
                time.sleep(0.01)
            time.sleep(0.2)
            record_stored()
            assert active[0] == 3
            assert manager.active_count == 3

            gate.set()
            assert manager.wait_until_idle(30)
        finally:
            gate.set()
            manager.close()

        assert peak[0] == 3
        assert stored_peak[0] == 3
        for episode in episodes:
            assert repository.get_episode(episode.id).download_state.status == DownloadStatus.COMPLETED

    def test_progress_checkpoints(self, repository, download_dir, fake_session, make_response, add_episode, events):
        manager = DownloadManager(
            repository,
            download_dir,
            chunk_size=10,
            checkpoint_bytes=20,
            checkpoint_seconds=3600,
            session=fake_session,
            event_bus=events,
        )
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, make_response(content=BODY, headers={"Content-Length": "100"}))

        try:
            manager.enqueue(episode.id)
            assert manager.wait_until_idle(10)
        finally:
            manager.close()

        progress = [e for e in events.received if isinstance(e, DownloadProgress)]
        assert [p.bytes_received for p in progress] == [20, 40, 60, 80, 100]
        assert all(p.bytes_total == 100 for p in progress)

    def test_discard_stops_job_and_removes_files(self, manager, add_episode, fake_session, gated, download_dir):
        episode = add_episode("a")
        fake_session.add(episode.enclosure_url, gated())

        manager.enqueue(episode.id)
        assert gated.started.wait(10)
        timer = threading.Timer(0.2, gated.gate.set)
        timer.start()
        manager.discard([episode.id], timeout=10)
        timer.join()

        assert manager.active_count == 0
        assert os.listdir(download_dir) == []

    def test_delete_download(self, manager, repository, add_episode):
        episode = add_episode("a")
        path = manager.final_path(episode)
        with open(path, "wb") as f:
            f.write(BODY)
        repository.update_download_state(episode.id, DownloadState.completed(path, len(BODY)))

        state = manager.delete_download(episode.id)

        assert state.status == DownloadStatus.NOT_DOWNLOADED
        assert not os.path.exists(path)

    def test_delete_download_requires_finished(self, manager, add_episode):
        with pytest.raises(StateError):
            manager.delete_download(add_episode("a").id)


class TestRecovery:
    """Tests for startup recovery and verification."""

    @pytest.fixture
    def manager(self, repository, tmp_path, fake_session):
        manager = DownloadManager(repository, str(tmp_path / "audio"), session=fake_session)
        yield manager
        manager.close()

    def test_recover_in_progress_becomes_paused(self, manager, repository, add_episode, fake_session):
        episode = add_episode("a")
        repository.update_download_state(episode.id, DownloadState.in_progress(500000, 1000000))

        result = manager.recover()

        state = repository.get_episode(episode.id).download_state
        assert result.paused == [episode.id]
        assert state.status == DownloadStatus.PAUSED
        assert state.bytes_received == 500000
        assert fake_session.calls == []

    def test_recover_queued(self, manager, repository, add_episode):
        fresh = add_episode("a")
        resumed = add_episode("b")
        repository.update_download_state(fresh.id, DownloadState.queued())
        repository.update_download_state(resumed.id, DownloadState.queued(resume_from=300))

        result = manager.recover()

        assert result.reset == [fresh.id]
        assert result.paused == [resumed.id]
        assert repository.get_episode(fresh.id).download_state.status == DownloadStatus.NOT_DOWNLOADED
        assert repository.get_episode(resumed.id).download_state == DownloadState.paused(300)

    def test_recover_verifies_completed(self, manager, repository, add_episode):
        intact = add_episode("a")
        missing = add_episode("b")
        path = manager.final_path(intact)
        with open(path, "wb") as f:
            f.write(BODY)
        repository.update_download_state(intact.id, DownloadState.completed(path, len(BODY)))
        repository.update_download_state(
            missing.id, DownloadState.completed(manager.final_path(missing), 100)
        )

        result = manager.recover()

        assert result.failed == [missing.id]
        assert repository.get_episode(intact.id).download_state.status == DownloadStatus.COMPLETED
        assert repository.get_episode(missing.id).download_state.status == DownloadStatus.FAILED

    def test_verify_size_mismatch(self, manager, repository, add_episode):
        episode = add_episode("a")
        path = manager.final_path(episode)
        with open(path, "wb") as f:
            f.write(b"short")
        repository.update_download_state(episode.id, DownloadState.completed(path, 100))

        assert manager.verify(episode.id) is False

        state = repository.get_episode(episode.id).download_state
        assert state.status == DownloadStatus.FAILED
        assert state.reason == SIZE_MISMATCH
        assert manager.playable_path(episode.id) is None

    def test_playable_path(self, manager, repository, add_episode):
        episode = add_episode("a")
        path = manager.final_path(episode)
        with open(path, "wb") as f:
            f.write(BODY)
        repository.update_download_state(episode.id, DownloadState.completed(path, len(BODY)))

        assert manager.playable_path(episode.id) == path
