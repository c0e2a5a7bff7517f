"""CLI commands for the podcast library.

Provides commands for:
- Adding and removing subscriptions
- Listing subscriptions and episodes
- Syncing feeds
- Downloading episodes
- Recovering download state after a crash
- Viewing and changing settings
"""

import argparse
import logging
import sys

from ..argparse_shared import add_episode_ids_argument, add_log_level_argument, get_base_parser
from ..client import PodcastClient
from ..config import Config
from ..db.states import DownloadStatus, Settings
from ..errors import DuplicateSubscription, NotFoundError, RcastError, SyncError
from ..events import SyncFailed

logger = logging.getLogger(__name__)


def add_subscription(args, client: PodcastClient):
    """
    Subscribe to the feed at `args.url` and sync it once.

    Exits with status 1 if the feed is already subscribed. A failed first sync
    keeps the subscription and is reported as a warning.
    """
    logger.info(f"Adding subscription: {args.url}")
    failures = []
    unsubscribe = client.subscribe_events(
        lambda event: failures.append(event) if isinstance(event, SyncFailed) else None
    )
    try:
        subscription = client.subscribe(args.url)
    except DuplicateSubscription as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        unsubscribe()

    print(f"\nAdded subscription: {subscription.title or subscription.feed_url}")
    print(f"  ID: {subscription.id}")
    print(f"  Episodes: {client.repository.count_episodes(subscription.id)}")
    for failure in failures:
        print(f"  Warning: initial sync failed ({failure.kind}): {failure.message}")


def remove_subscription(args, client: PodcastClient):
    """Unsubscribe and delete the subscription's episodes and downloaded files."""
    try:
        episode_ids = client.unsubscribe(args.subscription_id)
    except NotFoundError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Removed subscription {args.subscription_id} ({len(episode_ids)} episodes)")


def list_subscriptions(args, client: PodcastClient):
    """
    Print a table of subscriptions with ID, title (truncated to 40 characters),
    episode count and last sync time.
    """
    subscriptions = client.list_subscriptions()
    if not subscriptions:
        print("No subscriptions found")
        return

    print(f"\n{'ID':<36}  {'Title':<40}  {'Episodes':<10}  {'Last synced'}")
    print("-" * 110)

    for subscription in subscriptions:
        synced = subscription.last_synced_at.strftime("%Y-%m-%d %H:%M") if subscription.last_synced_at else "never"
        title = subscription.title or subscription.feed_url
        print(
            f"{subscription.id:<36}  "
            f"{title[:40]:<40}  "
            f"{client.repository.count_episodes(subscription.id):<10}  "
            f"{synced}"
        )


def list_episodes(args, client: PodcastClient):
    """Print a subscription's episodes, newest first unless `--oldest-first`."""
    if client.repository.get_subscription(args.subscription_id) is None:
        print(f"Subscription not found: {args.subscription_id}")
        sys.exit(1)

    episodes = client.list_episodes(args.subscription_id, newest_first=not args.oldest_first)
    if not episodes:
        print("No episodes found")
        return

    print(f"\n{'ID':<36}  {'Published':<10}  {'Title':<50}  {'Download':<14}  {'Played'}")
    print("-" * 130)
    for episode in episodes:
        published = episode.published_at.strftime("%Y-%m-%d") if episode.published_at else "-"
        played = "yes" if episode.playback_completed else "no"
        print(
            f"{episode.id:<36}  "
            f"{published:<10}  "
            f"{episode.title[:50]:<50}  "
            f"{episode.download_status:<14}  "
            f"{played}"
        )


def sync_feeds(args, client: PodcastClient):
    """Sync one subscription, or all of them when no ID is given."""
    if args.subscription_id:
        logger.info(f"Syncing subscription: {args.subscription_id}")
        try:
            result = client.sync(args.subscription_id)
        except (SyncError, NotFoundError) as e:
            print(f"Error: {e}")
            sys.exit(1)

        print(f"\nSync complete:")
        if result.not_modified:
            print(f"  Feed not modified")
        print(f"  New episodes: {result.added}")
        print(f"  Updated: {result.updated}")
        print(f"  Unchanged: {result.unchanged}")
        if result.skipped_entries:
            print(f"  Skipped entries: {len(result.skipped_entries)}")
    else:
        logger.info("Syncing all subscriptions")
        summary = client.sync_all()

        print(f"\nSync complete:")
        print(f"  Subscriptions synced: {summary.synced}")
        print(f"  Subscriptions failed: {summary.failed}")
        print(f"  New episodes: {summary.added}")
        print(f"  Updated episodes: {summary.updated}")
        for subscription_id, error in summary.errors.items():
            print(f"  - {subscription_id}: {error}")


def download_episodes(args, client: PodcastClient):
    """
    Download the given episodes and wait for them to finish.

    Download state left by an earlier run is recovered first. Prints the final
    state of each episode and exits with status 1 if any download failed.
    """
    client.start()

    for episode_id in args.episode_ids:
        try:
            client.enqueue_download(episode_id)
        except RcastError as e:
            print(f"  - {episode_id}: {e}")

    client.downloads.wait_until_idle()

    failed = 0
    print(f"\nDownload results:")
    for episode_id in args.episode_ids:
        episode = client.repository.get_episode(episode_id)
        if episode is None:
            continue
        state = episode.download_state
        if state.status == DownloadStatus.FAILED:
            failed += 1
            print(f"  - {episode.title}: failed ({state.reason})")
        elif state.status == DownloadStatus.COMPLETED:
            print(f"  - {episode.title}: {state.local_path} ({state.file_size} bytes)")
        else:
            print(f"  - {episode.title}: {state.status.value}")

    if failed:
        sys.exit(1)


def recover_downloads(args, client: PodcastClient):
    """Settle download state left behind by an unclean shutdown."""
    result = client.start()
    print(f"\nRecovery complete:")
    print(f"  Paused: {len(result.paused)}")
    print(f"  Reset: {len(result.reset)}")
    print(f"  Failed verification: {len(result.failed)}")


def show_settings(args, client: PodcastClient):
    """Print settings, applying any `--set key=value` pairs first."""
    if args.set:
        current = client.get_settings()
        rows = current.to_rows()
        for pair in args.set:
            key, sep, value = pair.partition("=")
            if not sep or key not in rows:
                print(f"Error: invalid setting '{pair}'")
                sys.exit(1)
            rows[key] = value
        parsed = Settings.from_rows(rows)
        client.update_settings(**vars(parsed))

    for key, value in client.get_settings().to_rows().items():
        print(f"{key}: {value}")


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = get_base_parser("Local-first podcast client")
    add_log_level_argument(parser)

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # add command
    add_parser = subparsers.add_parser("add", help="Subscribe to a feed")
    add_parser.add_argument("url", help="RSS/Atom feed URL")

    # remove command
    remove_parser = subparsers.add_parser("remove", help="Unsubscribe and delete episodes")
    remove_parser.add_argument("subscription_id", help="Subscription ID")

    # list command
    subparsers.add_parser("list", help="List subscriptions")

    # episodes command
    episodes_parser = subparsers.add_parser("episodes", help="List a subscription's episodes")
    episodes_parser.add_argument("subscription_id", help="Subscription ID")
    episodes_parser.add_argument(
        "--oldest-first",
        action="store_true",
        help="Order by publish date ascending",
    )

    # sync command
    sync_parser = subparsers.add_parser("sync", help="Sync feeds for new episodes")
    sync_parser.add_argument(
        "subscription_id",
        nargs="?",
        default=None,
        help="Sync only this subscription",
    )
    sync_parser.add_argument(
        "--all",
        action="store_true",
        help="Sync all subscriptions (the default without an ID)",
    )

    # download command
    download_parser = subparsers.add_parser("download", help="Download episodes and wait")
    add_episode_ids_argument(download_parser)

    # recover command
    subparsers.add_parser("recover", help="Recover download state after a crash")

    # settings command
    settings_parser = subparsers.add_parser("settings", help="Show or change settings")
    settings_parser.add_argument(
        "--set",
        action="append",
        metavar="KEY=VALUE",
        help="Change a setting (repeatable)",
    )

    return parser


def main():
    """Main entry point for the CLI."""
    parser = create_parser()
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not args.command:
        parser.print_help()
        sys.exit(1)

    commands = {
        "add": add_subscription,
        "remove": remove_subscription,
        "list": list_subscriptions,
        "episodes": list_episodes,
        "sync": sync_feeds,
        "download": download_episodes,
        "recover": recover_downloads,
        "settings": show_settings,
    }

    command_func = commands.get(args.command)
    if not command_func:
        parser.print_help()
        sys.exit(1)

    config = Config(env_file=args.env_file)
    client = PodcastClient(config)
    try:
        command_func(args, client)
    finally:
        client.close()


if __name__ == "__main__":
    main()
