# src/__init__.py — v1
"""tierfetch: tiered content cache with a learning fetch-strategy resolver."""

from tierfetch.version import __version__

__all__ = ["__version__"]
