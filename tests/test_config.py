"""Tests for environment-based configuration."""

import pytest

from rcast.config import Config

MANAGED_VARS = (
    "DATABASE_URL",
    "DOWNLOAD_DIRECTORY",
    "MAX_CONCURRENT_DOWNLOADS",
    "SYNC_WORKERS",
    "DOWNLOAD_CHECKPOINT_SECONDS",
    "PLAYBACK_COMPLETION_POLICY",
    "DB_ECHO",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Start every test without the variables under test; restored afterwards."""
    for name in MANAGED_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


class TestConfig:
    """Tests for Config."""

    def test_defaults(self, tmp_path):
        config = Config(env_file=str(tmp_path / "missing.env"))

        assert config.DATABASE_URL == "sqlite:///./rcast.db"
        assert config.MAX_CONCURRENT_DOWNLOADS == 3
        assert config.SYNC_WORKERS == 4
        assert config.DOWNLOAD_CHECKPOINT_SECONDS == 1.0
        assert config.PLAYBACK_COMPLETION_POLICY == "reset"
        assert config.DB_ECHO is False

    def test_environment_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("MAX_CONCURRENT_DOWNLOADS", "5")
        monkeypatch.setenv("PLAYBACK_COMPLETION_POLICY", "KEEP")
        monkeypatch.setenv("DB_ECHO", "true")

        config = Config(env_file=str(tmp_path / "missing.env"))

        assert config.MAX_CONCURRENT_DOWNLOADS == 5
        assert config.PLAYBACK_COMPLETION_POLICY == "keep"
        assert config.DB_ECHO is True

    def test_env_file(self, tmp_path):
        env_file = tmp_path / ".env"
        env_file.write_text("DOWNLOAD_DIRECTORY=/data/audio\nDATABASE_URL=sqlite:///data.db\n")

        config = Config(env_file=str(env_file))

        assert config.DOWNLOAD_DIRECTORY == "/data/audio"
        assert config.DATABASE_URL == "sqlite:///data.db"

    @pytest.mark.parametrize(
        "name,value",
        [
            ("MAX_CONCURRENT_DOWNLOADS", "0"),
            ("MAX_CONCURRENT_DOWNLOADS", "three"),
            ("SYNC_WORKERS", "100"),
            ("DOWNLOAD_CHECKPOINT_SECONDS", "soon"),
            ("PLAYBACK_COMPLETION_POLICY", "rewind"),
        ],
    )
    def test_invalid_values(self, monkeypatch, tmp_path, name, value):
        monkeypatch.setenv(name, value)

        with pytest.raises(ValueError):
            Config(env_file=str(tmp_path / "missing.env"))
