"""
Error taxonomy for the vendor sync engine.

Every error carries two things the orchestrator relies on:
- retryable: whether the fetch step may be retried with backoff
- user_message: the single human-readable cause stored on a failed SyncRun

Raw exception text and tracebacks stay in the server logs.
"""

from __future__ import annotations

from typing import Optional


class VendorSyncError(Exception):
    """Base class for all vendorsync errors."""

    default_retryable: bool = False
    default_message: str = "Sync failed"

    def __init__(
        self,
        message: str = "",
        *,
        retryable: Optional[bool] = None,
        user_message: Optional[str] = None,
    ):
        super().__init__(message or self.default_message)
        self.retryable = self.default_retryable if retryable is None else retryable
        self._user_message = user_message

    @property
    def user_message(self) -> str:
        """Operator-facing cause, safe to show outside the server."""
        return self._user_message or self.default_message


# =========================================================================
# Fetch errors
# =========================================================================


class FeedConnectionError(VendorSyncError):
    """Vendor endpoint unreachable or timed out. Retried with backoff."""

    default_retryable = True
    default_message = "Could not connect to the vendor feed"


class FeedAuthError(VendorSyncError):
    """Vendor rejected the credentials. Needs a credential fix, never retried."""

    default_message = "Vendor rejected the configured credentials"


class FeedNotFoundError(VendorSyncError):
    """Feed path or endpoint does not exist on the vendor side."""

    default_message = "Vendor feed was not found at the configured location"


# =========================================================================
# Feed content errors
# =========================================================================


class MalformedFeedError(VendorSyncError):
    """Feed is not the expected tabular shape. Rejected before diffing."""

    default_message = "Vendor feed is malformed"

    def __init__(self, message: str = "", *, line: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.line = line

    @property
    def user_message(self) -> str:
        if self._user_message:
            return self._user_message
        if self.line is not None:
            return f"Vendor feed is malformed (line {self.line}): {self.args[0]}"
        return f"Vendor feed is malformed: {self.args[0]}"


class EmptyFeedError(VendorSyncError):
    """Feed had no data rows.

    Never interpreted as "every row was removed".
    """

    default_message = "Vendor returned an empty feed; previous catalog kept"


# =========================================================================
# Credential errors
# =========================================================================


class NotConfigured(VendorSyncError):
    """No credentials stored for this (vendor, scope)."""

    def __init__(self, vendor: str, scope: str):
        super().__init__(f"No credentials configured for {vendor} ({scope})")
        self.vendor = vendor
        self.scope = scope

    @property
    def user_message(self) -> str:
        return f"Credentials for {self.vendor} ({self.scope}) are not configured"


class FieldDecryptError(VendorSyncError):
    """A single credential field could not be decrypted.

    Attached to that field only; the rest of the bag stays usable.
    """

    def __init__(self, field: str):
        super().__init__(f"Could not decrypt credential field '{field}'")
        self.field = field

    @property
    def user_message(self) -> str:
        return f"Stored credential field '{self.field}' could not be decrypted; re-enter it"


class CredentialSchemaError(VendorSyncError, ValueError):
    """Credential field names do not match the vendor's declared schema."""

    default_message = "Credential fields do not match the vendor schema"

    @property
    def user_message(self) -> str:
        return self._user_message or str(self.args[0])


# =========================================================================
# Run control errors
# =========================================================================


class AlreadyRunning(VendorSyncError):
    """A run for this (vendor, scope) is in progress. Triggers are not queued."""

    def __init__(self, vendor: str, scope: str, run_id: Optional[str] = None):
        super().__init__(f"Sync already running for {vendor} ({scope})")
        self.vendor = vendor
        self.scope = scope
        self.run_id = run_id

    @property
    def user_message(self) -> str:
        return f"A sync for {self.vendor} ({self.scope}) is already running"


class StuckRun(AlreadyRunning):
    """The in-progress run exceeded the maximum duration and needs a reset."""

    @property
    def user_message(self) -> str:
        return (
            f"The sync for {self.vendor} ({self.scope}) appears stuck; "
            "reset it before triggering again"
        )


class SyncTimeout(VendorSyncError):
    """The run exceeded its configured timeout and was cancelled."""

    def __init__(self, timeout: float):
        super().__init__(f"Sync exceeded timeout of {timeout:.0f}s")
        self.timeout = timeout

    @property
    def user_message(self) -> str:
        return f"Sync timed out after {self.timeout:.0f} seconds"


class VendorNotFound(VendorSyncError, LookupError):
    """No schema is declared for the vendor code."""

    def __init__(self, vendor: str):
        super().__init__(f"Unknown vendor: {vendor}")
        self.vendor = vendor

    @property
    def user_message(self) -> str:
        return f"Vendor '{self.vendor}' is not configured"


__all__ = [
    "VendorSyncError",
    "FeedConnectionError",
    "FeedAuthError",
    "FeedNotFoundError",
    "MalformedFeedError",
    "EmptyFeedError",
    "NotConfigured",
    "FieldDecryptError",
    "CredentialSchemaError",
    "AlreadyRunning",
    "StuckRun",
    "SyncTimeout",
    "VendorNotFound",
]
