"""FTP feed transport.

ftplib is blocking, so each download runs in a worker thread. The socket
timeout bounds every network call. When the run is cancelled the control
and data sockets are shut down, which ends the transfer in the thread.
"""

from __future__ import annotations

import asyncio
import contextlib
import ftplib
import io
import logging
import posixpath
import socket
import threading
from typing import Callable, Mapping, Optional

from ..errors import FeedAuthError, FeedConnectionError, FeedNotFoundError
from ..vendors.config import VendorSchema
from .base import FeedFetcher, FetchResult
from .registry import fetcher_registry

logger = logging.getLogger(__name__)

DEFAULT_FTP_PORT = 21
BLOCK_SIZE = 8192


class FtpDownload:
    """One blocking RETR transfer. ``abort()`` may be called from any thread."""

    def __init__(self, ftp: ftplib.FTP, timeout: Optional[float] = None):
        self.ftp = ftp
        self.timeout = timeout
        self.conn: Optional[socket.socket] = None
        self.aborted = threading.Event()

    def run(self, host: str, port: int, username: str, password: str, path: str) -> bytes:
        buffer = io.BytesIO()
        try:
            self.ftp.connect(host, port, timeout=self.timeout)
            self.ftp.login(username, password)
            self.ftp.voidcmd("TYPE I")
            with self.ftp.transfercmd(f"RETR {path}") as conn:
                self.conn = conn
                while not self.aborted.is_set():
                    block = conn.recv(BLOCK_SIZE)
                    if not block:
                        break
                    buffer.write(block)
            if self.aborted.is_set():
                raise FeedConnectionError(f"Download from {host} aborted", retryable=False)
            self.ftp.voidresp()
        except ftplib.error_perm as e:
            code = str(e)[:3]
            if code == "530":
                raise FeedAuthError(f"FTP login rejected by {host}: {e}") from e
            if code == "550":
                raise FeedNotFoundError(f"{path} not found on {host}: {e}") from e
            raise FeedConnectionError(
                f"FTP error from {host}: {e}", retryable=False
            ) from e
        except ftplib.error_temp as e:
            raise FeedConnectionError(f"Temporary FTP error from {host}: {e}") from e
        except (OSError, EOFError, ftplib.Error) as e:
            if self.aborted.is_set():
                raise FeedConnectionError(f"Download from {host} aborted", retryable=False) from e
            raise FeedConnectionError(f"Could not download from {host}: {e}") from e
        finally:
            self.ftp.close()
        return buffer.getvalue()

    def abort(self) -> None:
        self.aborted.set()
        for sock in (self.conn, getattr(self.ftp, "sock", None)):
            if sock is not None:
                with contextlib.suppress(OSError):
                    sock.shutdown(socket.SHUT_RDWR)


@fetcher_registry.register("ftp")
class FtpFeedFetcher(FeedFetcher):
    """Download ``source.path`` over FTP.

    Credential fields: host, username, password, port (optional) and
    base_path (optional, prefixed to relative feed paths).
    """

    def __init__(
        self,
        schema: VendorSchema,
        timeout: Optional[float] = None,
        ftp_factory: Callable[[], ftplib.FTP] = ftplib.FTP,
    ):
        super().__init__(schema, timeout)
        self._ftp_factory = ftp_factory

    def remote_path(self, credentials: Mapping[str, str]) -> str:
        path = self.schema.source.path
        if not path:
            raise FeedNotFoundError(f"{self.schema.code}: no feed path configured")
        base_path = credentials.get("base_path") or ""
        if base_path and not path.startswith("/"):
            path = posixpath.join(base_path, path)
        return path

    async def fetch(self, credentials: Mapping[str, str]) -> FetchResult:
        host = self.require(credentials, "host")
        username = self.require(credentials, "username")
        password = self.require(credentials, "password")
        port = int(credentials.get("port") or DEFAULT_FTP_PORT)
        path = self.remote_path(credentials)

        download = FtpDownload(self._ftp_factory(), self.timeout)
        try:
            content = await asyncio.to_thread(download.run, host, port, username, password, path)
        except asyncio.CancelledError:
            download.abort()
            logger.warning(f"{self.schema.code}: aborted download from ftp://{host}{path}")
            raise
        logger.info(f"{self.schema.code}: fetched {len(content)} bytes from ftp://{host}{path}")
        return FetchResult(content=content, source=f"ftp://{host}:{port}{path}")
