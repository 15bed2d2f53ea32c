"""
Tests for feed fetchers and the fetcher registry.
"""

import asyncio
import ftplib
import threading

import httpx
import pytest

from vendorsync.errors import (
    CredentialSchemaError,
    FeedAuthError,
    FeedConnectionError,
    FeedNotFoundError,
    VendorSyncError,
)
from vendorsync.fetchers import FetcherRegistry, fetcher_registry
from vendorsync.fetchers.ftp import FtpFeedFetcher
from vendorsync.fetchers.http import HttpFeedFetcher
from vendorsync.vendors.config import parse_vendor_schema

FEED = b"sku,price\nA-1,1.00\n"


def http_schema(**source):
    source = {"type": "http", "url": "https://feeds.example.test/items.csv", **source}
    return parse_vendor_schema("webvendor", {"vendor": {"source": source}})


def ftp_schema(path="inventory.csv"):
    return parse_vendor_schema("ftpvendor", {"vendor": {"source": {"type": "ftp", "path": path}}})


def mock_transport(status=200, content=FEED, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, content=content)

    return httpx.MockTransport(handler)


class TestHttpFeedFetcher:
    """Test HTTP downloads, auth modes and error mapping."""

    @pytest.mark.asyncio
    async def test_fetch_returns_content(self):
        fetcher = HttpFeedFetcher(http_schema(), transport=mock_transport())

        result = await fetcher.fetch({})

        assert result.content == FEED
        assert result.size == len(FEED)
        assert result.source == "https://feeds.example.test/items.csv"

    @pytest.mark.asyncio
    async def test_bearer_auth(self):
        seen = []
        fetcher = HttpFeedFetcher(http_schema(auth="bearer"), transport=mock_transport(seen=seen))

        await fetcher.fetch({"token": "abc123"})

        assert seen[0].headers["Authorization"] == "Bearer abc123"

    @pytest.mark.asyncio
    async def test_query_auth(self):
        seen = []
        schema = http_schema(auth="query", query_fields={"UserName": "username", "Source": "source"})
        fetcher = HttpFeedFetcher(schema, transport=mock_transport(seen=seen))

        await fetcher.fetch({"username": "u1", "source": "s1"})

        assert seen[0].url.params["UserName"] == "u1"
        assert seen[0].url.params["Source"] == "s1"

    @pytest.mark.asyncio
    async def test_missing_auth_field(self):
        fetcher = HttpFeedFetcher(http_schema(auth="bearer"), transport=mock_transport())

        with pytest.raises(CredentialSchemaError, match="token"):
            await fetcher.fetch({})

    @pytest.mark.asyncio
    async def test_url_credential_overrides_source(self):
        seen = []
        fetcher = HttpFeedFetcher(http_schema(), transport=mock_transport(seen=seen))

        await fetcher.fetch({"url": "https://mirror.example.test/feed.csv"})

        assert seen[0].url.host == "mirror.example.test"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,error,retryable",
        [
            (401, FeedAuthError, False),
            (403, FeedAuthError, False),
            (404, FeedNotFoundError, False),
            (400, FeedNotFoundError, False),
            (429, FeedConnectionError, True),
            (503, FeedConnectionError, True),
        ],
    )
    async def test_status_mapping(self, status, error, retryable):
        fetcher = HttpFeedFetcher(http_schema(), transport=mock_transport(status=status))

        with pytest.raises(error) as exc_info:
            await fetcher.fetch({})

        assert exc_info.value.retryable is retryable

    @pytest.mark.asyncio
    async def test_connect_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        fetcher = HttpFeedFetcher(http_schema(), transport=httpx.MockTransport(handler))

        with pytest.raises(FeedConnectionError) as exc_info:
            await fetcher.fetch({})

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_no_url_configured(self):
        fetcher = HttpFeedFetcher(http_schema(url=""), transport=mock_transport())

        with pytest.raises(FeedNotFoundError):
            await fetcher.fetch({})


class FakeConn:
    """Data connection serving ``content`` in one block."""

    def __init__(self, content):
        self.blocks = [content]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def recv(self, size):
        return self.blocks.pop(0) if self.blocks else b""

    def shutdown(self, how):
        self.blocks = []


class StalledConn(FakeConn):
    """Data connection that never delivers until it is shut down."""

    def __init__(self):
        super().__init__(b"")
        self.receiving = threading.Event()
        self.released = threading.Event()
        self.shut_down = False

    def recv(self, size):
        self.receiving.set()
        self.released.wait(10)
        return b""

    def shutdown(self, how):
        self.shut_down = True
        self.released.set()


class FakeFTP:
    """Stand-in for ftplib.FTP recording calls."""

    sock = None

    def __init__(
        self, content=FEED, login_error=None, retr_error=None, connect_error=None, conn=None
    ):
        self.content = content
        self.login_error = login_error
        self.retr_error = retr_error
        self.connect_error = connect_error
        self.conn = conn
        self.calls = []
        self.closed_event = threading.Event()

    @property
    def closed(self):
        return self.closed_event.is_set()

    def __call__(self):
        return self

    def connect(self, host, port, timeout=None):
        self.calls.append(("connect", host, port))
        if self.connect_error:
            raise self.connect_error

    def login(self, user, passwd):
        self.calls.append(("login", user))
        if self.login_error:
            raise self.login_error

    def voidcmd(self, cmd):
        self.calls.append(("cmd", cmd))

    def transfercmd(self, cmd):
        self.calls.append(("retr", cmd))
        if self.retr_error:
            raise self.retr_error
        return self.conn or FakeConn(self.content)

    def voidresp(self):
        return "226 Transfer complete."

    def close(self):
        self.closed_event.set()


CREDS = {"host": "ftp.vendor.test", "username": "user", "password": "pw"}


class TestFtpFeedFetcher:
    """Test FTP downloads and error mapping."""

    @pytest.mark.asyncio
    async def test_fetch_downloads_file(self):
        ftp = FakeFTP()
        fetcher = FtpFeedFetcher(ftp_schema(), ftp_factory=ftp)

        result = await fetcher.fetch({**CREDS, "port": "2121", "base_path": "/exports"})

        assert result.content == FEED
        assert ("connect", "ftp.vendor.test", 2121) in ftp.calls
        assert ("retr", "RETR /exports/inventory.csv") in ftp.calls
        assert ftp.closed

    def test_absolute_path_ignores_base_path(self):
        fetcher = FtpFeedFetcher(ftp_schema("/root/feed.csv"))

        assert fetcher.remote_path({"base_path": "/exports"}) == "/root/feed.csv"

    @pytest.mark.asyncio
    async def test_login_rejected(self):
        ftp = FakeFTP(login_error=ftplib.error_perm("530 Login incorrect."))
        fetcher = FtpFeedFetcher(ftp_schema(), ftp_factory=ftp)

        with pytest.raises(FeedAuthError):
            await fetcher.fetch(CREDS)

        assert ftp.closed

    @pytest.mark.asyncio
    async def test_missing_file(self):
        ftp = FakeFTP(retr_error=ftplib.error_perm("550 No such file."))
        fetcher = FtpFeedFetcher(ftp_schema(), ftp_factory=ftp)

        with pytest.raises(FeedNotFoundError):
            await fetcher.fetch(CREDS)

    @pytest.mark.asyncio
    async def test_network_error_is_retryable(self):
        ftp = FakeFTP(connect_error=ConnectionRefusedError("refused"))
        fetcher = FtpFeedFetcher(ftp_schema(), ftp_factory=ftp)

        with pytest.raises(FeedConnectionError) as exc_info:
            await fetcher.fetch(CREDS)

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_temporary_error_is_retryable(self):
        ftp = FakeFTP(retr_error=ftplib.error_temp("421 Too many connections"))
        fetcher = FtpFeedFetcher(ftp_schema(), ftp_factory=ftp)

        with pytest.raises(FeedConnectionError) as exc_info:
            await fetcher.fetch(CREDS)

        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_cancel_aborts_transfer(self):
        conn = StalledConn()
        ftp = FakeFTP(conn=conn)
        fetcher = FtpFeedFetcher(ftp_schema(), ftp_factory=ftp)
        task = asyncio.create_task(fetcher.fetch(CREDS))
        assert await asyncio.to_thread(conn.receiving.wait, 5)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert conn.shut_down
        assert await asyncio.to_thread(ftp.closed_event.wait, 5)

    @pytest.mark.asyncio
    async def test_missing_password(self):
        fetcher = FtpFeedFetcher(ftp_schema(), ftp_factory=FakeFTP())

        with pytest.raises(CredentialSchemaError, match="password"):
            await fetcher.fetch({"host": "ftp.vendor.test", "username": "user"})


PLUGIN = '''
from vendorsync.fetchers import FeedFetcher, FetchResult


class SftpFetcher(FeedFetcher):
    async def fetch(self, credentials):
        return FetchResult(content=b"sku\\nA-1\\n")
'''


class TestFetcherRegistry:
    """Test registration, lookup and plugin discovery."""

    def test_builtin_transports_registered(self):
        assert {"ftp", "http"} <= set(fetcher_registry.list_transports())

    def test_register_sets_transport(self):
        registry = FetcherRegistry()

        @registry.register("S3")
        class S3Fetcher(HttpFeedFetcher):
            pass

        assert registry.get("s3") is S3Fetcher
        assert S3Fetcher.transport == "s3"

    def test_unknown_transport(self):
        with pytest.raises(VendorSyncError) as exc_info:
            FetcherRegistry().get("gopher")

        assert "gopher" in exc_info.value.user_message

    def test_create_uses_source_type(self):
        fetcher = fetcher_registry.create(ftp_schema(), timeout=30)

        assert isinstance(fetcher, FtpFeedFetcher)
        assert fetcher.timeout == 30

    @pytest.mark.asyncio
    async def test_discover_plugins(self, tmp_path):
        (tmp_path / "sftp.py").write_text(PLUGIN)
        (tmp_path / "_private.py").write_text("raise RuntimeError('not loaded')\n")
        (tmp_path / "broken.py").write_text("import does_not_exist\n")
        registry = FetcherRegistry()

        assert registry.discover_plugins(tmp_path) == 1
        assert registry.list_transports() == ["sftp"]
        assert registry.discover_plugins(tmp_path) == 0

        schema = parse_vendor_schema("plug", {"vendor": {"source": {"type": "sftp"}}})
        result = await registry.create(schema).fetch({})
        assert result.content == b"sku\nA-1\n"

    def test_discover_missing_dir(self, tmp_path):
        assert FetcherRegistry().discover_plugins(tmp_path / "absent") == 0
