"""Tests for download/playback state value types and settings."""

from types import SimpleNamespace

from rcast.db.states import (
    MAX_RATE,
    MIN_RATE,
    DownloadState,
    DownloadStatus,
    PlaybackState,
    Settings,
    clamp_position,
    clamp_rate,
)


class TestDownloadState:
    """Tests for DownloadState."""

    def test_default_is_not_downloaded(self):
        assert DownloadState().status == DownloadStatus.NOT_DOWNLOADED

    def test_columns_round_trip(self):
        state = DownloadState.failed("SizeMismatch", attempt=2)

        rebuilt = DownloadState.from_columns(SimpleNamespace(**state.to_columns()))

        assert rebuilt == state

    def test_completed_sets_size_fields(self):
        state = DownloadState.completed("/tmp/a.mp3", 1000)

        assert state.file_size == 1000
        assert state.bytes_received == 1000
        assert state.local_path == "/tmp/a.mp3"

    def test_queued_carries_resume_offset(self):
        assert DownloadState.queued(resume_from=500).bytes_received == 500


class TestClamping:
    """Tests for rate and position clamping."""

    def test_rate_bounds(self):
        assert clamp_rate(10) == MAX_RATE
        assert clamp_rate(0.1) == MIN_RATE
        assert clamp_rate(1.25) == 1.25

    def test_position_bounds(self):
        assert clamp_position(-500, 60000) == 0
        assert clamp_position(90000, 60000) == 60000
        assert clamp_position(90000, None) == 90000

    def test_playback_state_clamps_on_creation(self):
        state = PlaybackState(position_millis=-10, rate=5.0)

        assert state.position_millis == 0
        assert state.rate == MAX_RATE


class TestSettings:
    """Tests for Settings serialization."""

    def test_rows_round_trip(self):
        settings = Settings(default_volume=75.0, skip_forward_seconds=45, auto_play_next=False)

        assert Settings.from_rows(settings.to_rows()) == settings

    def test_bool_rows_are_lowercase(self):
        assert Settings(auto_play_next=True).to_rows()["auto_play_next"] == "true"

    def test_bad_values_fall_back_to_defaults(self):
        settings = Settings.from_rows({"skip_forward_seconds": "abc", "unknown": "1"})

        assert settings == Settings()
