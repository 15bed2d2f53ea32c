"""
Persistence interface for the sync engine.

Tables (logical):
- feed_snapshots: last accepted feed per (vendor, scope)
- catalog_records: one row per (sku, scope)
- vendor_offers: what each vendor last reported per (sku, scope)
- vendor_priorities: rank per (scope, category, vendor)
- vendor_credentials: field bag per (vendor, scope)
- sync_runs: latest run per (vendor, scope)

Catalog writes and the snapshot replacement happen only inside
``transaction()``; nothing else needs transactional atomicity.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Any, Dict, Iterable, List, Optional

from ..models import (
    CatalogRecord,
    FeedSnapshot,
    Scope,
    SyncRun,
    VendorOffer,
    VendorPriorityEntry,
)

# Stored credential field: {"value": str, "encrypted": bool}
StoredField = Dict[str, Any]


class CatalogTransaction(ABC):
    """Unit of work for one reconciliation.

    Everything written through a transaction becomes visible together on
    commit, or not at all.
    """

    @abstractmethod
    async def get_records(
        self, scope: Scope, skus: Iterable[str]
    ) -> Dict[str, CatalogRecord]:
        """Current records for the given SKUs (missing SKUs are absent)."""

    @abstractmethod
    async def get_offers(
        self, scope: Scope, skus: Iterable[str]
    ) -> Dict[str, List[VendorOffer]]:
        """All vendor offers for the given SKUs."""

    @abstractmethod
    async def upsert_record(self, record: CatalogRecord) -> None: ...

    @abstractmethod
    async def delete_record(self, scope: Scope, sku: str) -> None: ...

    @abstractmethod
    async def upsert_offer(self, offer: VendorOffer) -> None: ...

    @abstractmethod
    async def delete_offer(self, vendor: str, scope: Scope, sku: str) -> None: ...

    @abstractmethod
    async def save_snapshot(self, snapshot: FeedSnapshot) -> None: ...


class SyncStore(ABC):
    """Storage backend used by every sync component."""

    async def open(self) -> None:
        """Prepare the backend (create schema, connect)."""

    async def close(self) -> None:
        """Release backend resources."""

    # =========================================================================
    # Snapshots
    # =========================================================================

    @abstractmethod
    async def get_snapshot(self, vendor: str, scope: Scope) -> Optional[FeedSnapshot]: ...

    @abstractmethod
    async def save_snapshot(self, snapshot: FeedSnapshot) -> None: ...

    # =========================================================================
    # Catalog
    # =========================================================================

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[CatalogTransaction]:
        """Open an atomic unit for catalog writes plus snapshot replacement."""

    @abstractmethod
    async def get_record(self, scope: Scope, sku: str) -> Optional[CatalogRecord]: ...

    @abstractmethod
    async def get_offers(self, scope: Scope, sku: str) -> List[VendorOffer]: ...

    # =========================================================================
    # Vendor priority
    # =========================================================================

    @abstractmethod
    async def load_priorities(
        self, scope: Scope, category: str
    ) -> List[VendorPriorityEntry]:
        """Entries for exactly (scope, category), ordered by rank."""

    @abstractmethod
    async def replace_priorities(
        self, scope: Scope, category: str, vendors: List[str]
    ) -> None:
        """Replace the ordered vendor list for (scope, category)."""

    @abstractmethod
    async def list_priorities(self) -> List[VendorPriorityEntry]: ...

    # =========================================================================
    # Credentials
    # =========================================================================

    @abstractmethod
    async def get_credential_fields(
        self, vendor: str, scope: Scope
    ) -> Optional[Dict[str, StoredField]]:
        """Stored fields, or None if nothing was ever stored for the pair."""

    @abstractmethod
    async def merge_credential_fields(
        self, vendor: str, scope: Scope, fields: Dict[str, StoredField]
    ) -> None:
        """Merge the given fields into the stored bag.

        Fields absent from ``fields`` are left untouched. This is the only
        credential write operation the store offers.
        """

    # =========================================================================
    # Sync runs
    # =========================================================================

    @abstractmethod
    async def begin_run(self, run: SyncRun) -> Optional[SyncRun]:
        """Atomically record ``run`` as the active run for its pair.

        Returns None when the run was recorded, or the blocking in-progress
        run when one already exists (nothing is written in that case).
        """

    @abstractmethod
    async def update_run(self, run: SyncRun) -> bool:
        """Persist state of an in-progress run.

        Returns False, writing nothing, when the stored run for the pair is a
        different run or has already finished (for example after a reset).
        """

    @abstractmethod
    async def get_run(self, vendor: str, scope: Scope) -> Optional[SyncRun]:
        """Latest run for the pair."""

    @abstractmethod
    async def list_runs(self) -> List[SyncRun]: ...
