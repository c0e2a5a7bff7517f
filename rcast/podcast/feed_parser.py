"""RSS/Atom feed parser for podcast metadata and episodes.

Uses the feedparser library to handle the various feed formats, including
iTunes namespace extensions. Parsing is tolerant per entry and strict per
document: a broken entry is skipped and recorded in ``ParsedFeed.errors``;
a document with no recognizable feed envelope raises ParseError.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import List, Optional, Union
from urllib.parse import urlparse

import feedparser

from ..db.repository import EpisodeDraft
from ..errors import ParseError

logger = logging.getLogger(__name__)

AUDIO_EXTENSIONS = (".mp3", ".m4a", ".mp4", ".ogg", ".oga", ".opus", ".wav", ".aac", ".flac")


@dataclass
class EntryError:
    """A feed entry that was skipped."""

    index: int
    reason: str
    title: Optional[str] = None


@dataclass
class ParsedFeed:
    """Parsed podcast data from a feed document."""

    title: str
    description: Optional[str] = None
    website_url: Optional[str] = None
    author: Optional[str] = None
    image_url: Optional[str] = None

    # Entries in document order
    episodes: List[EpisodeDraft] = field(default_factory=list)

    # Entries that were skipped
    errors: List[EntryError] = field(default_factory=list)


class FeedParser:
    """Parser for podcast RSS/Atom feeds.

    Example:
        parser = FeedParser()
        feed = parser.parse_bytes(response.content, feed_url)
        for draft in feed.episodes:
            print(draft.title)
        for error in feed.errors:
            print(f"skipped entry {error.index}: {error.reason}")
    """

    def parse_bytes(self, content: Union[bytes, str], feed_url: str = "") -> ParsedFeed:
        """Parse a feed document.

        Args:
            content: Raw feed document
            feed_url: Original URL of the feed (for log messages)

        Returns:
            ParsedFeed with feed metadata, episode drafts and skipped entries

        Raises:
            ParseError: If the document has no recognizable feed envelope
        """
        # feedparser treats a str as a possible URL or file name
        if isinstance(content, str):
            content = content.encode("utf-8")
        feed = feedparser.parse(content)

        if not feed.get("version") and not feed.entries:
            reason = feed.get("bozo_exception") or "no feed envelope found"
            raise ParseError(f"Failed to parse feed {feed_url}: {reason}")

        if feed.bozo and feed.get("bozo_exception"):
            logger.warning(f"Feed parsing warning for {feed_url}: {feed.bozo_exception}")

        return self._parse_feed(feed, feed_url)

    def parse_string(self, content: str, feed_url: str = "") -> ParsedFeed:
        return self.parse_bytes(content, feed_url)

    def _parse_feed(self, feed: feedparser.FeedParserDict, feed_url: str) -> ParsedFeed:
        f = feed.feed

        parsed = ParsedFeed(
            title=f.get("title") or "Unknown Podcast",
            description=self._clean_html(f.get("description") or f.get("subtitle")),
            website_url=f.get("link"),
            author=f.get("author") or f.get("itunes_author"),
            image_url=self._extract_image_url(f),
        )

        for index, entry in enumerate(feed.entries):
            try:
                draft = self._parse_episode(entry)
            except Exception as e:
                parsed.errors.append(
                    EntryError(index=index, reason=f"unreadable entry: {e}", title=entry.get("title"))
                )
                logger.warning(f"Skipping unreadable entry {index} in {feed_url}: {e}")
                continue

            if draft is None:
                parsed.errors.append(
                    EntryError(index=index, reason="no audio enclosure", title=entry.get("title"))
                )
                logger.warning(
                    f"Skipping entry without audio enclosure in {feed_url}: {entry.get('title')}"
                )
                continue

            parsed.episodes.append(draft)

        logger.info(
            f"Parsed feed '{parsed.title}' with {len(parsed.episodes)} episodes"
            f" ({len(parsed.errors)} skipped)"
        )
        return parsed

    def _parse_episode(self, entry: feedparser.FeedParserDict) -> Optional[EpisodeDraft]:
        """Parse a feed entry into an EpisodeDraft.

        Returns:
            EpisodeDraft or None if the entry has no audio enclosure
        """
        enclosure = self._extract_enclosure(entry)
        if not enclosure:
            return None

        enclosure_url, enclosure_type, enclosure_length = enclosure

        # GUID falls back to the enclosure URL
        guid = entry.get("id") or entry.get("guid") or enclosure_url

        title = entry.get("title") or entry.get("itunes_title") or "Untitled Episode"

        content = entry.get("content") or [{}]
        draft = EpisodeDraft(
            guid=guid,
            title=title,
            enclosure_url=enclosure_url,
            enclosure_type=enclosure_type,
            enclosure_length=enclosure_length,
            description=self._clean_html(
                entry.get("description") or entry.get("summary") or content[0].get("value")
            ),
        )

        if entry.get("published_parsed"):
            try:
                draft.published_at = datetime(*entry.published_parsed[:6])
            except (TypeError, ValueError):
                pass
        elif entry.get("published"):
            try:
                published = parsedate_to_datetime(entry.published)
                draft.published_at = published.replace(tzinfo=None)
            except (TypeError, ValueError):
                pass

        seconds = self._parse_duration(entry.get("itunes_duration") or entry.get("duration"))
        if seconds is not None:
            draft.duration_millis = seconds * 1000

        return draft

    def _extract_enclosure(self, entry: feedparser.FeedParserDict) -> Optional[tuple]:
        """Extract the audio enclosure from a feed entry.

        Returns:
            Tuple of (url, type, length) or None if no audio found
        """
        candidates = []
        for enclosure in entry.get("enclosures", []):
            candidates.append(
                (enclosure.get("href") or enclosure.get("url"), enclosure.get("type", ""), enclosure.get("length"))
            )
        for media in entry.get("media_content", []):
            candidates.append((media.get("url"), media.get("type", ""), media.get("filesize")))
        for link in entry.get("links", []):
            if link.get("rel") == "enclosure":
                candidates.append((link.get("href"), link.get("type", ""), link.get("length")))

        for url, mime_type, raw_length in candidates:
            if url and self._is_audio_type(mime_type, url):
                return (url, mime_type or "audio/mpeg", self._parse_length(raw_length))

        return None

    @staticmethod
    def _parse_length(value) -> Optional[int]:
        if not value:
            return None
        try:
            length = int(value)
        except (ValueError, TypeError):
            return None
        return length if length > 0 else None

    def _is_audio_type(self, mime_type: str, url: str) -> bool:
        """Check if an enclosure is an audio file, by MIME type or URL extension."""
        if mime_type:
            if mime_type.startswith("audio/"):
                return True
            if mime_type != "application/octet-stream":
                return False

        path = urlparse(url).path.lower()
        return any(path.endswith(ext) for ext in AUDIO_EXTENSIONS)

    def _extract_image_url(self, feed: feedparser.FeedParserDict) -> Optional[str]:
        if feed.get("itunes_image"):
            if isinstance(feed.itunes_image, dict):
                return feed.itunes_image.get("href")
            return feed.itunes_image

        if feed.get("image"):
            if isinstance(feed.image, dict):
                return feed.image.get("href") or feed.image.get("url")
            return feed.image

        if feed.get("media_thumbnail"):
            thumbs = feed.media_thumbnail
            if thumbs and isinstance(thumbs, list):
                return thumbs[0].get("url")

        return None

    def _parse_duration(self, value) -> Optional[int]:
        """Parse a duration string into seconds.

        Handles:
        - Seconds: "3600" (fractions are truncated)
        - MM:SS: "60:00"
        - HH:MM:SS: "1:00:00"
        """
        if not value:
            return None

        value_str = str(value).strip()

        try:
            return int(float(value_str))
        except ValueError:
            pass

        parts = value_str.split(":")
        try:
            if len(parts) == 2:
                return int(parts[0]) * 60 + int(float(parts[1]))
            elif len(parts) == 3:
                return int(parts[0]) * 3600 + int(parts[1]) * 60 + int(float(parts[2]))
        except (ValueError, TypeError):
            pass

        return None

    def _clean_html(self, text: Optional[str]) -> Optional[str]:
        """Remove HTML tags and common entities from text."""
        if not text:
            return None

        clean = re.sub(r"<[^>]+>", "", text)
        clean = clean.replace("&amp;", "&")
        clean = clean.replace("&lt;", "<")
        clean = clean.replace("&gt;", ">")
        clean = clean.replace("&quot;", '"')
        clean = clean.replace("&#39;", "'")
        clean = clean.replace("&nbsp;", " ")
        clean = re.sub(r"\s+", " ", clean).strip()

        return clean if clean else None
