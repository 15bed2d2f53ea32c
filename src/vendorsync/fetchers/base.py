"""Fetcher boundary shared by all transports."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional

from ..errors import CredentialSchemaError
from ..models import utcnow
from ..vendors.config import VendorSchema

DEFAULT_TIMEOUT = 120.0


@dataclass
class FetchResult:
    content: bytes
    fetched_at: datetime = field(default_factory=utcnow)
    source: str = ""

    @property
    def size(self) -> int:
        return len(self.content)


class FeedFetcher(ABC):
    """Downloads one vendor feed.

    ``fetch`` fails only with FeedConnectionError, FeedAuthError or
    FeedNotFoundError (plus credential errors raised while reading the bag).
    """

    transport: str = ""

    def __init__(self, schema: VendorSchema, timeout: Optional[float] = None):
        self.schema = schema
        self.timeout = schema.source.timeout_seconds or timeout or DEFAULT_TIMEOUT

    @abstractmethod
    async def fetch(self, credentials: Mapping[str, str]) -> FetchResult: ...

    def require(self, credentials: Mapping[str, str], name: str) -> str:
        """Read a credential field the transport cannot work without."""
        value = credentials[name] if name in credentials else ""
        if not value:
            raise CredentialSchemaError(
                f"{self.schema.code}: credential field '{name}' is required "
                f"for {self.transport} feeds"
            )
        return value
