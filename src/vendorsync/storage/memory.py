"""In-process store for tests and single-process deployments."""

from __future__ import annotations

import copy
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Optional, Tuple

from ..models import (
    CatalogRecord,
    FeedSnapshot,
    Scope,
    SyncRun,
    VendorOffer,
    VendorPriorityEntry,
)
from .base import CatalogTransaction, StoredField, SyncStore

logger = logging.getLogger(__name__)

RecordKey = Tuple[str, str]  # (scope key, sku)
OfferKey = Tuple[str, str, str]  # (scope key, sku, vendor)
PairKey = Tuple[str, str]  # (vendor, scope key)

_DELETED = object()


class MemoryTransaction(CatalogTransaction):
    """Stages writes in overlays; the store applies them on commit."""

    def __init__(self, store: "MemoryStore"):
        self._store = store
        self.records: Dict[RecordKey, object] = {}
        self.offers: Dict[OfferKey, object] = {}
        self.snapshots: Dict[PairKey, FeedSnapshot] = {}

    async def get_records(
        self, scope: Scope, skus: Iterable[str]
    ) -> Dict[str, CatalogRecord]:
        found = {}
        for sku in skus:
            key = (scope.key, sku)
            record = self.records.get(key, self._store._records.get(key))
            if record is not None and record is not _DELETED:
                found[sku] = copy.deepcopy(record)
        return found

    async def get_offers(
        self, scope: Scope, skus: Iterable[str]
    ) -> Dict[str, List[VendorOffer]]:
        wanted = set(skus)
        merged: Dict[OfferKey, object] = {
            k: v
            for k, v in self._store._offers.items()
            if k[0] == scope.key and k[1] in wanted
        }
        merged.update(
            {k: v for k, v in self.offers.items() if k[0] == scope.key and k[1] in wanted}
        )
        found: Dict[str, List[VendorOffer]] = {}
        for (_, sku, _), offer in merged.items():
            if offer is not _DELETED:
                found.setdefault(sku, []).append(copy.deepcopy(offer))
        return found

    async def upsert_record(self, record: CatalogRecord) -> None:
        self.records[(record.scope.key, record.sku)] = copy.deepcopy(record)

    async def delete_record(self, scope: Scope, sku: str) -> None:
        self.records[(scope.key, sku)] = _DELETED

    async def upsert_offer(self, offer: VendorOffer) -> None:
        self.offers[(offer.scope.key, offer.sku, offer.vendor)] = copy.deepcopy(offer)

    async def delete_offer(self, vendor: str, scope: Scope, sku: str) -> None:
        self.offers[(scope.key, sku, vendor)] = _DELETED

    async def save_snapshot(self, snapshot: FeedSnapshot) -> None:
        self.snapshots[(snapshot.vendor, snapshot.scope.key)] = snapshot


class MemoryStore(SyncStore):
    """Dict-backed SyncStore.

    Transactions are copy-on-commit: nothing staged is visible to other
    readers until the ``transaction()`` block exits without an exception.
    """

    def __init__(self):
        self._snapshots: Dict[PairKey, FeedSnapshot] = {}
        self._records: Dict[RecordKey, CatalogRecord] = {}
        self._offers: Dict[OfferKey, VendorOffer] = {}
        self._priorities: Dict[Tuple[str, str], List[VendorPriorityEntry]] = {}
        self._credentials: Dict[PairKey, Dict[str, StoredField]] = {}
        self._runs: Dict[PairKey, SyncRun] = {}

    # Snapshots

    async def get_snapshot(self, vendor: str, scope: Scope) -> Optional[FeedSnapshot]:
        return self._snapshots.get((vendor, scope.key))

    async def save_snapshot(self, snapshot: FeedSnapshot) -> None:
        self._snapshots[(snapshot.vendor, snapshot.scope.key)] = snapshot

    # Catalog

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        tx = MemoryTransaction(self)
        yield tx
        self._apply(tx)

    def _apply(self, tx: MemoryTransaction) -> None:
        for key, record in tx.records.items():
            if record is _DELETED:
                self._records.pop(key, None)
            else:
                self._records[key] = record
        for key, offer in tx.offers.items():
            if offer is _DELETED:
                self._offers.pop(key, None)
            else:
                self._offers[key] = offer
        self._snapshots.update(tx.snapshots)
        logger.debug(
            f"Committed {len(tx.records)} record and {len(tx.offers)} offer writes"
        )

    async def get_record(self, scope: Scope, sku: str) -> Optional[CatalogRecord]:
        record = self._records.get((scope.key, sku))
        return copy.deepcopy(record) if record else None

    async def get_offers(self, scope: Scope, sku: str) -> List[VendorOffer]:
        return [
            copy.deepcopy(offer)
            for (scope_key, offer_sku, _), offer in self._offers.items()
            if scope_key == scope.key and offer_sku == sku
        ]

    def record_count(self, scope: Optional[Scope] = None) -> int:
        if scope is None:
            return len(self._records)
        return sum(1 for scope_key, _ in self._records if scope_key == scope.key)

    # Vendor priority

    async def load_priorities(
        self, scope: Scope, category: str
    ) -> List[VendorPriorityEntry]:
        entries = self._priorities.get((scope.key, category), [])
        return sorted(entries, key=lambda e: e.rank)

    async def replace_priorities(
        self, scope: Scope, category: str, vendors: List[str]
    ) -> None:
        self._priorities[(scope.key, category)] = [
            VendorPriorityEntry(scope=scope, category=category, vendor=v, rank=i)
            for i, v in enumerate(vendors, start=1)
        ]

    async def list_priorities(self) -> List[VendorPriorityEntry]:
        return [e for entries in self._priorities.values() for e in entries]

    # Credentials

    async def get_credential_fields(
        self, vendor: str, scope: Scope
    ) -> Optional[Dict[str, StoredField]]:
        fields = self._credentials.get((vendor, scope.key))
        return copy.deepcopy(fields) if fields is not None else None

    async def merge_credential_fields(
        self, vendor: str, scope: Scope, fields: Dict[str, StoredField]
    ) -> None:
        stored = self._credentials.setdefault((vendor, scope.key), {})
        stored.update(copy.deepcopy(fields))

    # Sync runs

    async def begin_run(self, run: SyncRun) -> Optional[SyncRun]:
        key = (run.vendor, run.scope.key)
        current = self._runs.get(key)
        if current is not None and current.in_progress:
            return copy.deepcopy(current)
        self._runs[key] = copy.deepcopy(run)
        return None

    async def update_run(self, run: SyncRun) -> bool:
        key = (run.vendor, run.scope.key)
        current = self._runs.get(key)
        if current is None or current.run_id != run.run_id or not current.in_progress:
            return False
        self._runs[key] = copy.deepcopy(run)
        return True

    async def get_run(self, vendor: str, scope: Scope) -> Optional[SyncRun]:
        run = self._runs.get((vendor, scope.key))
        return copy.deepcopy(run) if run else None

    async def list_runs(self) -> List[SyncRun]:
        return [copy.deepcopy(run) for run in self._runs.values()]
