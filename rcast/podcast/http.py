"""HTTP session setup shared by feed sync and downloads."""

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

DEFAULT_USER_AGENT = "rcast/0.1 (+https://github.com/rcast/rcast)"


def create_session(user_agent: str = DEFAULT_USER_AGENT, retry_attempts: int = 0) -> requests.Session:
    """Create a requests session.

    Retries are limited to connection setup; read errors and HTTP statuses are
    reported to the caller unchanged so each sync or download attempt fails once.

    Args:
        user_agent: User-Agent header sent with every request
        retry_attempts: Connection retries per request

    Returns:
        Configured requests session
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=retry_attempts,
        connect=retry_attempts,
        read=0,
        status=0,
        backoff_factor=1,
        allowed_methods=["GET", "HEAD"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": user_agent})

    return session
