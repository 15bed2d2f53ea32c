"""
Feed fetchers.

Importing this package registers the built-in http and ftp transports.
"""

from .base import DEFAULT_TIMEOUT, FeedFetcher, FetchResult
from .ftp import FtpFeedFetcher
from .http import HttpFeedFetcher
from .registry import FetcherRegistry, fetcher_registry

__all__ = [
    "DEFAULT_TIMEOUT",
    "FeedFetcher",
    "FetchResult",
    "FetcherRegistry",
    "FtpFeedFetcher",
    "HttpFeedFetcher",
    "fetcher_registry",
]
