"""Shared fixtures: in-memory store, test vendors and a scriptable fetcher."""

from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from vendorsync.config import RetryConfig, SyncConfig
from vendorsync.fetchers.base import FeedFetcher, FetchResult
from vendorsync.fetchers.registry import FetcherRegistry
from vendorsync.storage import MemoryStore
from vendorsync.sync.detector import ChangeDetector
from vendorsync.sync.orchestrator import SyncOrchestrator
from vendorsync.sync.priority import VendorPriorityCache
from vendorsync.sync.reconciler import CatalogReconciler
from vendorsync.vault import CredentialVault
from vendorsync.vendors.config import VendorCatalog, parse_vendor_schema

KEYED_FEED = {
    "key_column": "sku",
    "sku_column": "sku",
    "price_column": "price",
    "quantity_column": "qty",
    "description_column": "description",
}

VENDORS = {
    # Keyed feed with credentials
    "acme": {
        "category": "firearms",
        "source": {"type": "fake"},
        "feed": KEYED_FEED,
        "credentials": [
            {"name": "host", "required": True, "aliases": ["ftp_server", "ftpServer"]},
            {"name": "username"},
            {"name": "token", "sensitive": True},
            {"name": "password", "sensitive": True, "aliases": ["ftpPassword"]},
        ],
    },
    # Keyed feed, no credentials
    "zulu": {
        "category": "firearms",
        "source": {"type": "fake"},
        "feed": KEYED_FEED,
    },
    # Unkeyed feed: rows compared as raw lines
    "lines": {
        "source": {"type": "fake"},
        "feed": {"sku_column": "sku", "price_column": "price"},
    },
}

HEADER = "sku,price,qty,description"


def make_feed(rows, header: str | None = HEADER) -> bytes:
    lines = ([header] if header is not None else []) + list(rows)
    return ("\n".join(lines) + "\n").encode()


def make_catalog() -> VendorCatalog:
    return VendorCatalog(
        {code: parse_vendor_schema(code, {"vendor": data}) for code, data in VENDORS.items()}
    )


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def encryption_key():
    return Fernet.generate_key().decode()


@pytest.fixture
def audit_events():
    return []


@pytest.fixture
def vault(store, catalog, encryption_key, audit_events):
    return CredentialVault(store, catalog, keys=[encryption_key], audit_sink=audit_events.append)


@pytest.fixture
def priorities(store):
    return VendorPriorityCache(store)


@pytest.fixture
def detector(store, catalog):
    return ChangeDetector(store, catalog)


@pytest.fixture
def reconciler(store, catalog, priorities):
    return CatalogReconciler(store, catalog, priorities)


@pytest.fixture
def sync_config():
    return SyncConfig(
        run_timeout_sec=5.0,
        max_run_duration_sec=60.0,
        retry=RetryConfig(max_attempts=3, base_delay=0.0, max_delay=0.0),
    )


@pytest.fixture
def feeds():
    """Vendor code -> feed outcome for the fake transport.

    An outcome is bytes, an exception to raise, an async callable taking
    the credentials, or a list of outcomes consumed one per fetch.
    """
    return {}


@pytest.fixture
def fetch_calls():
    return []


@pytest.fixture
def fetchers(feeds, fetch_calls):
    registry = FetcherRegistry()

    @registry.register("fake")
    class FakeFetcher(FeedFetcher):
        async def fetch(self, credentials):
            fetch_calls.append((self.schema.code, dict(credentials)))
            outcome = feeds[self.schema.code]
            if isinstance(outcome, list):
                outcome = outcome.pop(0)
            if isinstance(outcome, BaseException):
                raise outcome
            if callable(outcome):
                outcome = await outcome(credentials)
                if isinstance(outcome, FetchResult):
                    return outcome
            return FetchResult(content=outcome)

    return registry


@pytest.fixture
def orchestrator(store, catalog, vault, fetchers, priorities, sync_config):
    return SyncOrchestrator(
        store,
        catalog,
        vault,
        fetchers=fetchers,
        priorities=priorities,
        config=sync_config,
    )
