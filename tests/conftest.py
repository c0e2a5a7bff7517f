"""
Pytest configuration and shared fixtures for rcast tests.

Provides a file-backed SQLite repository, a scripted stand-in for
requests.Session and helpers to build feeds and episodes.
"""

import threading
from typing import Callable, Dict, List, Optional, Union

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from rcast.db.factory import create_repository
from rcast.db.repository import EpisodeDraft

FEED_URL = "https://example.com/feed.xml"


class FakeResponse:
    """Minimal requests.Response replacement.

    When `gate` is given, iteration yields the first chunk, sets `started`
    and then blocks on `gate` before yielding the rest.
    """

    def __init__(
        self,
        status_code: int = 200,
        content: bytes = b"",
        headers: Optional[Dict[str, str]] = None,
        chunk_size: Optional[int] = None,
        gate: Optional[threading.Event] = None,
        started: Optional[threading.Event] = None,
        on_exit: Optional[Callable[[], None]] = None,
    ):
        self.status_code = status_code
        self.content = content
        self.headers = CaseInsensitiveDict(headers or {})
        self._chunk_size = chunk_size
        self._gate = gate
        self._started = started
        self._on_exit = on_exit

    def iter_content(self, chunk_size: int = 1):
        size = self._chunk_size or chunk_size
        chunks = [self.content[i:i + size] for i in range(0, len(self.content), size)]
        for index, chunk in enumerate(chunks):
            yield chunk
            if index == 0:
                if self._started:
                    self._started.set()
                if self._gate:
                    self._gate.wait(10)

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if self._on_exit:
            self._on_exit()
        return False


Handler = Union[FakeResponse, Exception, Callable[..., FakeResponse]]


class FakeSession:
    """Scripted requests.Session.

    Each URL maps to a list of handlers consumed in order; the last handler
    is reused once the list runs out. A handler is a FakeResponse, an
    exception to raise, or a callable receiving the request headers.
    """

    def __init__(self):
        self.routes: Dict[str, List[Handler]] = {}
        self.calls: List[Dict] = []
        self.headers: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add(self, url: str, *handlers: Handler) -> None:
        self.routes.setdefault(url, []).extend(handlers)

    def get(self, url, headers=None, **kwargs):
        headers = dict(headers or {})
        with self._lock:
            self.calls.append({"url": url, "headers": headers, **kwargs})
            handlers = self.routes.get(url)
            if not handlers:
                raise requests.ConnectionError(f"No route for {url}")
            handler = handlers.pop(0) if len(handlers) > 1 else handlers[0]

        if isinstance(handler, Exception):
            raise handler
        if callable(handler) and not isinstance(handler, FakeResponse):
            return handler(headers)
        return handler

    def calls_for(self, url: str) -> List[Dict]:
        return [call for call in self.calls if call["url"] == url]

    def close(self) -> None:
        pass


def build_rss(items, title: str = "Test Podcast") -> bytes:
    """Build an RSS 2.0 document from (guid, title, enclosure_url) tuples."""
    entries = []
    for guid, item_title, url in items:
        guid_tag = f"<guid>{guid}</guid>" if guid else ""
        enclosure = f'<enclosure url="{url}" type="audio/mpeg" length="1000"/>' if url else ""
        entries.append(
            f"<item><title>{item_title}</title>{guid_tag}{enclosure}"
            f"<pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate>"
            f"<itunes:duration>30:00</itunes:duration></item>"
        )
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">'
        f"<channel><title>{title}</title><link>https://example.com</link>"
        "<description>A test podcast</description>"
        f"{''.join(entries)}</channel></rss>"
    ).encode("utf-8")


@pytest.fixture
def repository(tmp_path):
    """
    Create a temporary SQLite-backed repository for tests.

    Yields a repository using a SQLite file under the temporary path and
    closes it when the fixture is torn down.
    """
    db_path = tmp_path / "test.db"
    repo = create_repository(f"sqlite:///{db_path}", create_tables=True)
    yield repo
    repo.close()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def make_response():
    """Factory for FakeResponse objects."""
    return FakeResponse


@pytest.fixture
def rss():
    """Factory building RSS documents; see build_rss."""
    return build_rss


@pytest.fixture
def subscription(repository):
    """A persisted subscription with no episodes."""
    return repository.create_subscription(FEED_URL, title="Test Podcast")


@pytest.fixture
def add_episode(repository, subscription):
    """
    Factory inserting an episode into the sample subscription.

    Returns:
        Callable taking (guid, duration_millis=60000, enclosure_url=None) and
        returning the stored Episode.
    """

    def _add(guid: str, duration_millis: Optional[int] = 60000, enclosure_url: Optional[str] = None):
        url = enclosure_url or f"https://cdn.example.com/{guid}.mp3"
        repository.upsert_episodes(
            subscription.id,
            [EpisodeDraft(guid=guid, title=f"Episode {guid}", enclosure_url=url, duration_millis=duration_millis)],
        )
        return repository.get_episode_by_guid(subscription.id, guid)

    return _add
