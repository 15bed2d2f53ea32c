"""
Credential vault.

Per-(vendor, scope) bags of named credential fields. Sensitive fields (as
declared in the vendor schema) are encrypted one by one with Fernet, so a
single corrupted value never takes the rest of the bag down with it.

Writes always merge: the store only offers ``merge_credential_fields``,
and fields missing from a write keep their stored value.

Usage:
    vault = CredentialVault(store, catalog, keys=config.encryption_key_list)
    await vault.put("bill_hicks", GLOBAL_SCOPE, {"host": "ftp.example.com"})
    bag = await vault.get("bill_hicks", GLOBAL_SCOPE)
    bag["host"]
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from .errors import (
    CredentialSchemaError,
    FieldDecryptError,
    NotConfigured,
    VendorSyncError,
)
from .models import Scope, utcnow
from .storage.base import StoredField, SyncStore
from .vendors.config import VendorCatalog, VendorSchema

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("vendorsync.audit")

# Admin forms echo sensitive values back as bullets; never store those.
MASK_CHAR = "•"
MASKED_VALUE = MASK_CHAR * 8


@dataclass(frozen=True)
class AuditEvent:
    """Credential access record. Carries field names, never values."""

    action: str  # read, write, rotate
    vendor: str
    scope: str
    fields: tuple[str, ...] = ()
    at: datetime = field(default_factory=utcnow)


AuditSink = Callable[[AuditEvent], None]


def log_audit_sink(event: AuditEvent) -> None:
    audit_logger.info(
        f"credentials {event.action}: vendor={event.vendor} scope={event.scope} "
        f"fields={','.join(event.fields) or '-'}"
    )


class CredentialBag(Mapping[str, str]):
    """Decrypted credential fields under their canonical names.

    A field that failed to decrypt stays listed; reading it raises
    FieldDecryptError while every other field remains readable.
    """

    def __init__(
        self,
        vendor: str,
        scope: Scope,
        values: Dict[str, str],
        errors: Optional[Dict[str, FieldDecryptError]] = None,
        sensitive: Sequence[str] = (),
    ):
        self.vendor = vendor
        self.scope = scope
        self._values = values
        self._errors = errors or {}
        self._sensitive = frozenset(sensitive)

    def __getitem__(self, name: str) -> str:
        if name in self._errors:
            raise self._errors[name]
        return self._values[name]

    def __iter__(self) -> Iterator[str]:
        yield from self._values
        yield from (name for name in self._errors if name not in self._values)

    def __len__(self) -> int:
        return len(set(self._values) | set(self._errors))

    @property
    def errors(self) -> Dict[str, FieldDecryptError]:
        return dict(self._errors)

    def usable(self) -> Dict[str, str]:
        """Only the fields that decrypted cleanly."""
        return dict(self._values)

    def masked(self) -> Dict[str, str]:
        """Display form: sensitive values replaced by bullets."""
        shown = {}
        for name in self:
            if name in self._errors:
                shown[name] = "<decrypt failed>"
            elif name in self._sensitive:
                shown[name] = MASKED_VALUE
            else:
                shown[name] = self._values[name]
        return shown


def _is_placeholder(value: Any) -> bool:
    if value is None:
        return True
    text = str(value)
    return not text.strip() or text.startswith(MASK_CHAR)


class CredentialVault:
    """Field-level encrypted credential storage."""

    def __init__(
        self,
        store: SyncStore,
        catalog: VendorCatalog,
        keys: Sequence[str] = (),
        audit_sink: Optional[AuditSink] = None,
    ):
        self.store = store
        self.catalog = catalog
        self._fernet = MultiFernet([Fernet(k) for k in keys]) if keys else None
        self._audit = audit_sink or log_audit_sink

    def _emit(self, action: str, vendor: str, scope: Scope, fields: Sequence[str]):
        self._audit(AuditEvent(action, vendor, scope.key, tuple(sorted(fields))))

    def _encrypt(self, value: str) -> str:
        if self._fernet is None:
            raise VendorSyncError(
                "No encryption key configured for sensitive credential fields",
                user_message="Credential encryption key is not configured",
            )
        return self._fernet.encrypt(value.encode()).decode()

    def _decrypt(self, name: str, entry: StoredField) -> str:
        value = entry.get("value", "")
        if not entry.get("encrypted"):
            return value
        if self._fernet is None:
            raise FieldDecryptError(name)
        try:
            return self._fernet.decrypt(value.encode()).decode()
        except (InvalidToken, TypeError, ValueError):
            raise FieldDecryptError(name) from None

    async def get(self, vendor: str, scope: Scope) -> CredentialBag:
        """Decrypted bag for (vendor, scope).

        Raises:
            NotConfigured: nothing is stored for this exact pair.
        """
        schema = self.catalog.get(vendor)
        stored = await self.store.get_credential_fields(vendor, scope)
        if not stored:
            raise NotConfigured(vendor, scope.key)

        values: Dict[str, str] = {}
        errors: Dict[str, FieldDecryptError] = {}
        # Canonical names first so they win over alias-stored duplicates
        ordered = sorted(
            stored.items(), key=lambda item: schema.canonical_name(item[0]) != item[0]
        )
        for name, entry in ordered:
            canonical = schema.canonical_name(name) or name
            if canonical in values or canonical in errors:
                continue
            try:
                values[canonical] = self._decrypt(canonical, entry)
            except FieldDecryptError as e:
                logger.warning(f"{vendor} ({scope}): {e}")
                errors[canonical] = e

        self._emit("read", vendor, scope, [*values, *errors])
        sensitive = [s.name for s in schema.credentials if s.sensitive]
        return CredentialBag(vendor, scope, values, errors, sensitive)

    async def put(
        self, vendor: str, scope: Scope, fields: Mapping[str, Any]
    ) -> List[str]:
        """Merge the supplied fields into the stored bag.

        Aliases are stored under their canonical name. Empty values and
        masked placeholders are ignored. Returns the canonical names written.

        Raises:
            CredentialSchemaError: a field name is not declared for the vendor.
        """
        schema = self.catalog.get(vendor)
        unknown = [name for name in fields if schema.canonical_name(name) is None]
        if unknown:
            raise CredentialSchemaError(
                f"Unknown credential fields for {vendor}: {', '.join(sorted(unknown))}"
            )

        plain: Dict[str, str] = {}
        explicit: set[str] = set()
        for name, value in fields.items():
            if _is_placeholder(value):
                continue
            canonical = schema.canonical_name(name)
            if canonical in explicit and name != canonical:
                continue
            plain[canonical] = str(value).strip()
            if name == canonical:
                explicit.add(canonical)

        if not plain:
            self._emit("write", vendor, scope, [])
            logger.debug(f"No credential changes for {vendor} ({scope})")
            return []

        to_store = self._seal(schema, plain)
        await self.store.merge_credential_fields(vendor, scope, to_store)
        self._emit("write", vendor, scope, list(to_store))
        logger.info(f"Updated {len(to_store)} credential field(s) for {vendor} ({scope})")
        return sorted(to_store)

    def _seal(self, schema: VendorSchema, plain: Dict[str, str]) -> Dict[str, StoredField]:
        sealed: Dict[str, StoredField] = {}
        for name, value in plain.items():
            if schema.is_sensitive(name):
                sealed[name] = {"value": self._encrypt(value), "encrypted": True}
            else:
                sealed[name] = {"value": value, "encrypted": False}
        return sealed

    async def missing_required(self, vendor: str, scope: Scope) -> List[str]:
        """Required fields that are unset or unreadable for the pair."""
        schema = self.catalog.get(vendor)
        try:
            bag = await self.get(vendor, scope)
        except NotConfigured:
            return schema.required_fields
        usable = bag.usable()
        return [name for name in schema.required_fields if not usable.get(name)]

    async def rotate(self, vendor: str, scope: Scope) -> int:
        """Re-encrypt sensitive fields with the primary key.

        Fields that cannot be decrypted with any configured key are left
        as they are. Returns the number of fields rotated.
        """
        if self._fernet is None:
            raise VendorSyncError("No encryption keys configured")
        stored = await self.store.get_credential_fields(vendor, scope)
        if not stored:
            raise NotConfigured(vendor, scope.key)

        rotated: Dict[str, StoredField] = {}
        for name, entry in stored.items():
            if not entry.get("encrypted"):
                continue
            try:
                token = self._fernet.rotate(entry["value"].encode())
            except InvalidToken:
                logger.warning(f"{vendor} ({scope}): cannot rotate field '{name}'")
                continue
            rotated[name] = {"value": token.decode(), "encrypted": True}

        if rotated:
            await self.store.merge_credential_fields(vendor, scope, rotated)
        self._emit("rotate", vendor, scope, list(rotated))
        return len(rotated)


__all__ = [
    "AuditEvent",
    "AuditSink",
    "CredentialBag",
    "CredentialVault",
    "MASK_CHAR",
    "log_audit_sink",
]
