"""Feed synchronization service for podcast updates.

Fetches feeds with conditional requests, parses them and applies the new and
changed episodes to the store in one batch.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from ..db.models import Subscription, utcnow
from ..db.repository import PodcastRepositoryInterface
from ..errors import (
    AlreadyInProgress,
    NetworkError,
    NotFoundError,
    ParseError,
    RcastError,
    StorageError,
    SyncError,
)
from ..events import EventBus, SyncCompleted, SyncFailed
from .feed_parser import EntryError, FeedParser, ParsedFeed
from .http import DEFAULT_USER_AGENT, create_session

logger = logging.getLogger(__name__)

# Client statuses worth retrying later; every 5xx is retryable too
RETRYABLE_STATUS_CODES = (429,)


@dataclass
class SyncResult:
    """Outcome of one successful sync."""

    subscription_id: str
    added: int = 0
    updated: int = 0
    unchanged: int = 0
    not_modified: bool = False
    skipped_entries: List[EntryError] = field(default_factory=list)


@dataclass
class SyncSummary:
    """Aggregated outcome of sync_all."""

    synced: int = 0
    failed: int = 0
    added: int = 0
    updated: int = 0
    results: List[SyncResult] = field(default_factory=list)
    errors: Dict[str, RcastError] = field(default_factory=dict)


class FeedSyncService:
    """Service for synchronizing subscription feeds with the store.

    A second sync of a subscription that is already syncing is rejected with
    AlreadyInProgress rather than queued. Different subscriptions sync in
    parallel. The service never retries; a failed call raises SyncError once
    and the caller decides when to try again.

    Example:
        sync_service = FeedSyncService(repository)
        result = sync_service.sync(subscription_id)
        print(f"New episodes: {result.added}")
    """

    def __init__(
        self,
        repository: PodcastRepositoryInterface,
        timeout: int = 30,
        user_agent: Optional[str] = None,
        retry_attempts: int = 0,
        max_workers: int = 4,
        session: Optional[requests.Session] = None,
        event_bus: Optional[EventBus] = None,
    ):
        """
        Create a FeedSyncService bound to a repository.

        Parameters:
            repository: Store the episodes are written to.
            timeout (int): Feed request timeout in seconds.
            user_agent (Optional[str]): User-Agent header for feed requests.
            retry_attempts (int): Connection-level retries of the HTTP adapter.
            max_workers (int): Thread pool size for sync_all.
            session (Optional[requests.Session]): Preconfigured HTTP session.
            event_bus (Optional[EventBus]): Receives SyncCompleted/SyncFailed events.
        """
        self.repository = repository
        self.timeout = timeout
        self.max_workers = max_workers
        self.feed_parser = FeedParser()
        self.event_bus = event_bus
        self._session = session or create_session(
            user_agent or DEFAULT_USER_AGENT, retry_attempts
        )
        self._in_flight: set = set()
        self._lock = threading.Lock()

    def sync(self, subscription_id: str) -> SyncResult:
        """
        Sync one subscription.

        Parameters:
            subscription_id (str): Subscription to sync.

        Returns:
            SyncResult: Added, updated and unchanged counts. `not_modified` is
            set when the server answered 304; the feed is not parsed then.

        Raises:
            NotFoundError: If the subscription does not exist.
            AlreadyInProgress: If this subscription is already syncing.
            SyncError: On network, HTTP, parse or storage failure; nothing is written.
        """
        with self._lock:
            if subscription_id in self._in_flight:
                raise AlreadyInProgress(f"Sync already running for {subscription_id}")
            self._in_flight.add(subscription_id)

        try:
            try:
                subscription = self.repository.get_subscription(subscription_id)
            except StorageError as e:
                raise SyncError(f"Could not read subscription: {e}", kind="storage", retryable=False) from e
            if subscription is None:
                raise NotFoundError(f"Subscription not found: {subscription_id}")

            try:
                result = self._sync_subscription(subscription)
            except SyncError as e:
                logger.error(f"Failed to sync {subscription.feed_url}: {e}")
                self._publish(
                    SyncFailed(
                        subscription_id=subscription_id,
                        kind=e.kind,
                        retryable=e.retryable,
                        message=str(e),
                    )
                )
                raise

            self._publish(SyncCompleted(subscription_id=subscription_id, result=result))
            return result
        finally:
            with self._lock:
                self._in_flight.discard(subscription_id)

    def _sync_subscription(self, subscription: Subscription) -> SyncResult:
        logger.info(f"Syncing subscription: {subscription.title or subscription.feed_url}")
        response = self._fetch(subscription)

        if response.status_code == 304:
            try:
                self.repository.update_subscription(subscription.id, last_synced_at=utcnow())
                unchanged = self.repository.count_episodes(subscription.id)
            except StorageError as e:
                raise SyncError(f"Could not record sync: {e}", kind="storage", retryable=False) from e
            logger.info(f"Feed not modified: {subscription.feed_url}")
            return SyncResult(
                subscription_id=subscription.id,
                unchanged=unchanged,
                not_modified=True,
            )

        try:
            parsed = self.feed_parser.parse_bytes(response.content, subscription.feed_url)
        except ParseError as e:
            raise SyncError(str(e), kind="parse", retryable=False) from e

        updates = self._subscription_updates(subscription, parsed)
        updates["etag"] = response.headers.get("ETag")
        updates["last_modified"] = response.headers.get("Last-Modified")
        updates["last_synced_at"] = utcnow()

        try:
            upsert = self.repository.upsert_episodes(subscription.id, parsed.episodes, updates)
        except StorageError as e:
            raise SyncError(f"Could not store episodes: {e}", kind="storage", retryable=False) from e

        logger.info(
            f"Sync complete for '{parsed.title}': {upsert.inserted} new, "
            f"{upsert.updated} updated, {upsert.unchanged} unchanged"
        )
        return SyncResult(
            subscription_id=subscription.id,
            added=upsert.inserted,
            updated=upsert.updated,
            unchanged=upsert.unchanged,
            skipped_entries=list(parsed.errors),
        )

    def _fetch(self, subscription: Subscription) -> requests.Response:
        """GET the feed with conditional-request headers from the stored hints."""
        headers = {}
        if subscription.etag:
            headers["If-None-Match"] = subscription.etag
        if subscription.last_modified:
            headers["If-Modified-Since"] = subscription.last_modified

        try:
            response = self._session.get(
                subscription.feed_url,
                headers=headers,
                timeout=self.timeout,
                allow_redirects=True,
            )
        except requests.exceptions.Timeout as e:
            raise SyncError(f"Timed out fetching {subscription.feed_url}", kind="timeout", retryable=True) from e
        except requests.exceptions.RequestException as e:
            cause = NetworkError(str(e), retryable=True)
            raise SyncError(
                f"Network error fetching {subscription.feed_url}: {e}", kind="network", retryable=True
            ) from cause

        if response.status_code >= 400:
            retryable = response.status_code >= 500 or response.status_code in RETRYABLE_STATUS_CODES
            cause = NetworkError(
                f"HTTP {response.status_code}", retryable=retryable, status_code=response.status_code
            )
            raise SyncError(
                f"HTTP {response.status_code} fetching {subscription.feed_url}",
                kind="http",
                retryable=retryable,
            ) from cause

        return response

    def _subscription_updates(self, subscription: Subscription, parsed: ParsedFeed) -> Dict[str, Any]:
        """Feed metadata fields that differ from the stored subscription."""
        updates = {}
        if parsed.title and parsed.title != subscription.title:
            updates["title"] = parsed.title
        if parsed.description and parsed.description != subscription.description:
            updates["description"] = parsed.description
        if parsed.website_url and parsed.website_url != subscription.website_url:
            updates["website_url"] = parsed.website_url
        if parsed.author and parsed.author != subscription.author:
            updates["author"] = parsed.author
        if parsed.image_url and parsed.image_url != subscription.image_url:
            updates["image_url"] = parsed.image_url
        return updates

    def sync_all(self) -> SyncSummary:
        """
        Sync every subscription on a thread pool.

        Returns:
            SyncSummary: Per-subscription results plus the errors of failed syncs,
            keyed by subscription id.
        """
        subscriptions = self.repository.list_subscriptions()
        summary = SyncSummary()
        if not subscriptions:
            logger.info("No subscriptions to sync")
            return summary

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="feed-sync"
        ) as executor:
            future_to_id = {
                executor.submit(self.sync, subscription.id): subscription.id
                for subscription in subscriptions
            }
            for future in as_completed(future_to_id):
                subscription_id = future_to_id[future]
                try:
                    result = future.result()
                except RcastError as e:
                    summary.failed += 1
                    summary.errors[subscription_id] = e
                    continue
                summary.synced += 1
                summary.added += result.added
                summary.updated += result.updated
                summary.results.append(result)

        logger.info(
            f"Sync complete: {summary.synced} synced, {summary.failed} failed, "
            f"{summary.added} new episodes"
        )
        return summary

    def _publish(self, event) -> None:
        if self.event_bus:
            self.event_bus.publish(event)

    def close(self) -> None:
        self._session.close()
