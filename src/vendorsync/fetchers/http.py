"""HTTP(S) feed transport."""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

import httpx

from ..errors import FeedAuthError, FeedConnectionError, FeedNotFoundError
from ..vendors.config import VendorSchema
from .base import FeedFetcher, FetchResult
from .registry import fetcher_registry

logger = logging.getLogger(__name__)


@fetcher_registry.register("http")
class HttpFeedFetcher(FeedFetcher):
    """GET a feed over HTTP.

    Credentials come from the vault bag according to ``source.auth``:
    - bearer: ``token`` field as an Authorization header
    - basic: ``username`` / ``password`` fields
    - query: ``source.query_fields`` maps query parameters to field names
    A ``url`` credential field overrides ``source.url`` when set.
    """

    def __init__(
        self,
        schema: VendorSchema,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(schema, timeout)
        self._transport = transport

    def _request_args(self, credentials: Mapping[str, str]) -> dict:
        source = self.schema.source
        headers: Dict[str, str] = dict(source.headers)
        params: Dict[str, str] = {}
        auth = None

        if source.auth == "bearer":
            headers["Authorization"] = f"Bearer {self.require(credentials, 'token')}"
        elif source.auth == "basic":
            auth = httpx.BasicAuth(
                self.require(credentials, "username"),
                self.require(credentials, "password"),
            )
        elif source.auth == "query":
            for param, field_name in source.query_fields.items():
                params[param] = self.require(credentials, field_name)

        return {"headers": headers, "params": params, "auth": auth}

    async def fetch(self, credentials: Mapping[str, str]) -> FetchResult:
        url = (credentials["url"] if "url" in credentials else "") or self.schema.source.url
        if not url:
            raise FeedNotFoundError(f"{self.schema.code}: no feed URL configured")

        request_args = self._request_args(credentials)
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.get(url, **request_args)
        except httpx.TimeoutException as e:
            raise FeedConnectionError(f"Timed out fetching {url}: {e}") from e
        except httpx.TransportError as e:
            raise FeedConnectionError(f"Could not reach {url}: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise FeedAuthError(f"{url} returned HTTP {status}")
        if status == 404:
            raise FeedNotFoundError(f"{url} returned HTTP 404")
        if status >= 500 or status == 429:
            raise FeedConnectionError(f"{url} returned HTTP {status}")
        if status >= 400:
            raise FeedNotFoundError(
                f"{url} returned HTTP {status}",
                user_message=f"Vendor feed request was rejected (HTTP {status})",
            )

        logger.info(f"{self.schema.code}: fetched {len(response.content)} bytes from {url}")
        return FetchResult(content=response.content, source=url)
