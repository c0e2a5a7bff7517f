import os
from typing import Optional

from dotenv import load_dotenv

from .db.factory import DEFAULT_DATABASE_URL

COMPLETION_POLICIES = ("reset", "keep")


def _get_int_env(
    name: str,
    default: int,
    min_val: Optional[int] = None,
    max_val: Optional[int] = None,
) -> int:
    """Parse an integer from an environment variable with validation.

    Args:
        name: Environment variable name.
        default: Default value if env var is not set.
        min_val: Minimum allowed value (inclusive), or None for no minimum.
        max_val: Maximum allowed value (inclusive), or None for no maximum.

    Returns:
        The parsed and validated integer value.

    Raises:
        ValueError: If the value cannot be parsed as an integer or is out of range.
    """
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default

    try:
        value = int(raw)
    except ValueError:
        raise ValueError(
            f"Invalid value for {name}: '{raw}' is not a valid integer"
        )

    if min_val is not None and value < min_val:
        raise ValueError(
            f"Invalid value for {name}: {value} must be >= {min_val}"
        )

    if max_val is not None and value > max_val:
        raise ValueError(
            f"Invalid value for {name}: {value} must be <= {max_val}"
        )

    return value


def _get_float_env(name: str, default: float, min_val: Optional[float] = None) -> float:
    """Parse a float from an environment variable; same rules as _get_int_env."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default

    try:
        value = float(raw)
    except ValueError:
        raise ValueError(
            f"Invalid value for {name}: '{raw}' is not a valid number"
        )

    if min_val is not None and value < min_val:
        raise ValueError(
            f"Invalid value for {name}: {value} must be >= {min_val}"
        )

    return value


def _get_bool_env(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == "true"


class Config:
    def __init__(self, env_file=None):
        """
        Load environment variables and set configuration attributes.

        Loads variables from `env_file` when given, otherwise from the default
        .env discovery. Then sets database, download, sync and playback options
        from the environment with defaults for a local library.

        Parameters:
            env_file (str | None): Optional path to a .env file.

        Raises:
            ValueError: If a numeric variable is malformed or out of range, or
                the completion policy is unknown.
        """
        if env_file:
            load_dotenv(env_file)
        else:
            load_dotenv()

        # Database configuration
        self.DATABASE_URL = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
        self.DB_ECHO = _get_bool_env("DB_ECHO", False)

        # Download configuration
        self.DOWNLOAD_DIRECTORY = os.getenv("DOWNLOAD_DIRECTORY", "./cache/audio")
        self.MAX_CONCURRENT_DOWNLOADS = _get_int_env("MAX_CONCURRENT_DOWNLOADS", 3, min_val=1)
        self.DOWNLOAD_TIMEOUT = _get_int_env("DOWNLOAD_TIMEOUT", 300, min_val=1)
        self.DOWNLOAD_CHUNK_SIZE = _get_int_env("DOWNLOAD_CHUNK_SIZE", 65536, min_val=1024)
        # A checkpoint is written when either threshold is crossed
        self.DOWNLOAD_CHECKPOINT_SECONDS = _get_float_env(
            "DOWNLOAD_CHECKPOINT_SECONDS", 1.0, min_val=0.0
        )
        self.DOWNLOAD_CHECKPOINT_BYTES = _get_int_env(
            "DOWNLOAD_CHECKPOINT_BYTES", 1024 * 1024, min_val=1
        )

        # Feed sync configuration
        self.FEED_TIMEOUT = _get_int_env("FEED_TIMEOUT", 30, min_val=1)
        self.SYNC_WORKERS = _get_int_env("SYNC_WORKERS", 4, min_val=1, max_val=64)
        # Connection-level retries in the HTTP adapter only; sync reports once per call
        self.HTTP_RETRY_ATTEMPTS = _get_int_env("HTTP_RETRY_ATTEMPTS", 0, min_val=0, max_val=10)
        self.USER_AGENT = os.getenv(
            "USER_AGENT", "rcast/0.1 (+https://github.com/rcast/rcast)"
        )

        # Playback configuration
        self.PLAYBACK_CHECKPOINT_SECONDS = _get_float_env(
            "PLAYBACK_CHECKPOINT_SECONDS", 5.0, min_val=0.0
        )
        self.PLAYBACK_COMPLETION_POLICY = os.getenv("PLAYBACK_COMPLETION_POLICY", "reset").lower()
        if self.PLAYBACK_COMPLETION_POLICY not in COMPLETION_POLICIES:
            raise ValueError(
                f"PLAYBACK_COMPLETION_POLICY must be one of {COMPLETION_POLICIES}, "
                f"got: {self.PLAYBACK_COMPLETION_POLICY}"
            )
