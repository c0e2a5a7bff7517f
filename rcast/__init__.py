"""rcast: local-first podcast client backend."""

__version__ = "0.1.0"
