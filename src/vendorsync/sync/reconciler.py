"""
Catalog reconciliation.

Applies a Delta to the catalog for one (vendor, scope). Only delta rows are
parsed and only the SKUs they name are read or written. Catalog writes,
offer bookkeeping and the snapshot replacement share one store transaction.
"""

from __future__ import annotations

import csv
import logging
from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..models import (
    CatalogRecord,
    CatalogValues,
    Delta,
    FeedSnapshot,
    PriorityConflict,
    Scope,
    SyncStats,
    VendorOffer,
    utcnow,
)
from ..storage.base import CatalogTransaction, SyncStore
from ..vendors.config import FeedSpec, VendorCatalog
from .detector import header_columns, split_row
from .priority import DEFAULT_PRIORITY, VendorPriorityCache

logger = logging.getLogger(__name__)

BeforeCommit = Callable[[], Awaitable[None]]


class RowMappingError(ValueError):
    """A delta row cannot be mapped onto catalog fields."""


@dataclass
class MappedRow:
    sku: str
    values: CatalogValues


@dataclass
class MappedDelta:
    """Delta rows mapped onto catalog values.

    held maps each failed new row to the (snapshot key, old row) that
    stays in the snapshot in its place, or None when there is none.
    """

    incoming: Dict[str, CatalogValues] = field(default_factory=dict)
    retired: List[str] = field(default_factory=list)
    held: Dict[str, Optional[Tuple[str, str]]] = field(default_factory=dict)


class RowMapper:
    """Maps raw feed rows onto catalog fields using the vendor's column map."""

    def __init__(self, feed: FeedSpec, header: Optional[str]):
        self.feed = feed
        self.header = header
        self._columns: Optional[List[str]] = None

    def _index(self, width: int) -> Dict[str, int]:
        if self._columns is None:
            self._columns = header_columns(self.header, self.feed, width)
        return {name: i for i, name in enumerate(self._columns)}

    def value(self, row: str, name: Optional[str]) -> Optional[str]:
        """Best-effort read of one column from a row that may not map."""
        try:
            fields = split_row(row, self.feed.delimiter)
        except csv.Error:
            return None
        columns = self._columns or header_columns(self.header, self.feed, len(fields))
        index = {column: i for i, column in enumerate(columns)}
        if not name or name not in index or index[name] >= len(fields):
            return None
        return fields[index[name]].strip() or None

    def map(self, row: str) -> MappedRow:
        try:
            fields = split_row(row, self.feed.delimiter)
        except csv.Error as e:
            raise RowMappingError(str(e)) from None
        index = self._index(len(fields))
        if len(fields) != len(index):
            raise RowMappingError(f"expected {len(index)} columns, found {len(fields)}")

        def column(name: Optional[str]) -> Optional[str]:
            if not name or name not in index:
                return None
            value = fields[index[name]].strip()
            return value or None

        sku = column(self.feed.sku_column)
        if not sku:
            raise RowMappingError("blank SKU")
        return MappedRow(
            sku=sku,
            values=CatalogValues(
                price=_parse_price(column(self.feed.price_column)),
                quantity=_parse_quantity(column(self.feed.quantity_column)),
                description=column(self.feed.description_column),
                category=column(self.feed.category_column),
            ),
        )


def _hold_rows(
    snapshot: FeedSnapshot, held: Dict[str, Optional[Tuple[str, str]]]
) -> FeedSnapshot:
    """Snapshot with failed rows swapped back to their previous text."""
    rows = {key: row for key, row in snapshot.rows.items() if row not in held}
    for kept in held.values():
        if kept is not None:
            key, row = kept
            rows[key] = row
    return replace(snapshot, rows=rows)


def _parse_price(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        price = Decimal(value.replace("$", "").replace(",", ""))
    except InvalidOperation:
        raise RowMappingError(f"invalid price {value!r}") from None
    if not price.is_finite():
        raise RowMappingError(f"invalid price {value!r}")
    return price


def _parse_quantity(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        quantity = Decimal(value.replace(",", ""))
    except InvalidOperation:
        raise RowMappingError(f"invalid quantity {value!r}") from None
    if not quantity.is_finite() or quantity != quantity.to_integral_value():
        raise RowMappingError(f"invalid quantity {value!r}")
    return int(quantity)


class CatalogReconciler:
    """Applies deltas to the catalog with vendor priority resolution."""

    def __init__(
        self,
        store: SyncStore,
        catalog: VendorCatalog,
        priorities: VendorPriorityCache,
    ):
        self.store = store
        self.catalog = catalog
        self.priorities = priorities

    async def reconcile(
        self,
        vendor: str,
        scope: Scope,
        delta: Delta,
        *,
        snapshot: Optional[FeedSnapshot] = None,
        before_commit: Optional[BeforeCommit] = None,
    ) -> SyncStats:
        """Apply ``delta`` and, in the same unit, replace the snapshot.

        Any exception rolls back every write, including the snapshot.
        Rows that fail to map are left out of the stored snapshot (their
        previous text is kept where there was one), so the next changed
        feed reads them again.
        """
        schema = self.catalog.get(vendor)
        stats = SyncStats(total_rows=snapshot.row_count if snapshot else delta.size)

        mapped = self._map_delta(vendor, delta, schema.feed, stats)
        incoming, retired = mapped.incoming, mapped.retired
        stats.processed = len(incoming) + len(retired)
        if snapshot is not None and mapped.held:
            snapshot = _hold_rows(snapshot, mapped.held)
        ranks = await self.priorities.ranks(scope, schema.category)
        conflicts: List[PriorityConflict] = []

        async with self.store.transaction() as tx:
            skus = [*incoming, *retired]
            records = await tx.get_records(scope, skus)
            offers = await tx.get_offers(scope, skus)

            for sku, values in incoming.items():
                conflict = await self._apply_incoming(
                    tx, vendor, scope, sku, values, records.get(sku), ranks, stats
                )
                if conflict:
                    conflicts.append(conflict)

            for sku in retired:
                await self._apply_removal(
                    tx, vendor, scope, sku, records.get(sku), offers.get(sku, []), ranks, stats
                )

            if snapshot is not None:
                await tx.save_snapshot(snapshot)
            if before_commit is not None:
                await before_commit()

        if conflicts:
            logger.info(
                f"{vendor} ({scope}): {len(conflicts)} SKU(s) held by higher-priority "
                f"vendors, e.g. {conflicts[0].sku} held by {conflicts[0].holder_vendor}"
            )
        logger.info(
            f"{vendor} ({scope}): reconciled {stats.processed} SKU(s) "
            f"(+{stats.added} ~{stats.updated} -{stats.removed} "
            f"skipped={stats.skipped} failed={stats.failed})"
        )
        return stats

    def _map_delta(
        self, vendor: str, delta: Delta, feed: FeedSpec, stats: SyncStats
    ) -> MappedDelta:
        """Parse delta rows into incoming values and retired SKUs.

        A SKU that is both removed and added (an edited line in an unkeyed
        feed) is treated as a single modification. A SKU whose new row
        fails to map is never retired: its record is kept as it was.
        """
        new_mapper = RowMapper(feed, delta.header)
        old_mapper = RowMapper(feed, delta.previous_header or delta.header)
        # Old rows written under another header cannot be stored beside the new one
        keep_old = delta.previous_header == delta.header
        result = MappedDelta()

        pairs = {m.new: m for m in delta.modified}
        failed_skus: Dict[str, str] = {}
        for row in [*delta.added, *pairs]:
            try:
                mapped = new_mapper.map(row)
            except RowMappingError as e:
                stats.failed += 1
                logger.debug(f"{vendor}: skipping row ({e}): {row[:80]}")
                modified = pairs.get(row)
                result.held[row] = (modified.key, modified.old) if modified and keep_old else None
                sku = new_mapper.value(row, feed.sku_column)
                if sku:
                    failed_skus[sku] = row
                continue
            result.incoming[mapped.sku] = mapped.values

        held_old = {m.old for m in pairs.values() if m.new in result.held}
        retired: Set[str] = set()
        for row in [*delta.removed, *(m.old for m in delta.modified)]:
            try:
                sku = old_mapper.map(row).sku
            except RowMappingError as e:
                logger.debug(f"{vendor}: cannot map removed row ({e}): {row[:80]}")
                continue
            if row in held_old:
                continue
            if sku in failed_skus:
                # Removed line whose SKU came back on a bad line (unkeyed edit)
                failed = failed_skus[sku]
                if keep_old and result.held.get(failed) is None:
                    key = old_mapper.value(row, feed.key_column) if feed.key_column else row
                    if key:
                        result.held[failed] = (key, row)
                continue
            retired.add(sku)

        result.retired = sorted(retired - set(result.incoming))
        return result

    async def _apply_incoming(
        self,
        tx: CatalogTransaction,
        vendor: str,
        scope: Scope,
        sku: str,
        values: CatalogValues,
        record: Optional[CatalogRecord],
        ranks: Dict[str, int],
        stats: SyncStats,
    ) -> Optional[PriorityConflict]:
        now = utcnow()
        await tx.upsert_offer(VendorOffer(vendor, sku, scope, values, now))

        if record is None:
            await tx.upsert_record(CatalogRecord(sku, scope, values, vendor, True, now))
            stats.added += 1
            return None

        if record.source_vendor == vendor:
            if record.active and record.values == values:
                stats.skipped += 1
                return None
        elif record.active:
            incoming_rank = ranks.get(vendor, DEFAULT_PRIORITY)
            holder_rank = ranks.get(record.source_vendor, DEFAULT_PRIORITY)
            # Equal ranks: the most recently synced vendor wins
            if incoming_rank > holder_rank:
                stats.conflicts += 1
                stats.skipped += 1
                return PriorityConflict(
                    sku, vendor, incoming_rank, record.source_vendor, holder_rank
                )

        await tx.upsert_record(CatalogRecord(sku, scope, values, vendor, True, now))
        stats.updated += 1
        return None

    async def _apply_removal(
        self,
        tx: CatalogTransaction,
        vendor: str,
        scope: Scope,
        sku: str,
        record: Optional[CatalogRecord],
        offers: List[VendorOffer],
        ranks: Dict[str, int],
        stats: SyncStats,
    ) -> None:
        await tx.delete_offer(vendor, scope, sku)

        if record is None or record.source_vendor != vendor:
            stats.skipped += 1
            return

        remaining = [o for o in offers if o.vendor != vendor]
        if remaining:
            best = min(
                remaining,
                key=lambda o: (
                    ranks.get(o.vendor, DEFAULT_PRIORITY),
                    -o.updated_at.timestamp(),
                ),
            )
            await tx.upsert_record(
                CatalogRecord(sku, scope, best.values, best.vendor, True, utcnow())
            )
            stats.updated += 1
            return

        if not scope.is_global:
            await tx.delete_record(scope, sku)
            stats.removed += 1
        elif record.active:
            record.active = False
            record.updated_at = utcnow()
            await tx.upsert_record(record)
            stats.removed += 1
        else:
            stats.skipped += 1


__all__ = ["CatalogReconciler", "MappedDelta", "MappedRow", "RowMapper", "RowMappingError"]
