import argparse


def get_base_parser(description: str = "Local-first podcast client") -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=description)
    parser.add_argument("-e", "--env-file", help="Path to a custom .env file", default=None)
    return parser


def add_log_level_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-l", "--log-level", help="Set log level (DEBUG, INFO, WARNING, ERROR)", default="INFO")


def add_episode_ids_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("episode_ids", nargs="+", metavar="EPISODE_ID", help="Episode IDs")
