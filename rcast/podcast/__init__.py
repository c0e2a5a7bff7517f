"""Podcast feed and audio handling.

Provides functionality for:
- RSS/Atom feed parsing
- Feed synchronization
- Episode downloading
"""

from .downloader import DownloadManager, RecoveryResult
from .feed_parser import EntryError, FeedParser, ParsedFeed
from .feed_sync import FeedSyncService, SyncResult, SyncSummary

__all__ = [
    "DownloadManager",
    "EntryError",
    "FeedParser",
    "FeedSyncService",
    "ParsedFeed",
    "RecoveryResult",
    "SyncResult",
    "SyncSummary",
]
