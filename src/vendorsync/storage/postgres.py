"""
PostgreSQL store.

Opens one psycopg async connection per operation, the same way the
harvester queries its product tables. The reconcile/commit unit runs in a
single ``conn.transaction()``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

from ..models import (
    IN_PROGRESS_STATES,
    CatalogRecord,
    CatalogValues,
    FeedSnapshot,
    Scope,
    SyncRun,
    SyncState,
    SyncStats,
    TriggerSource,
    VendorOffer,
    VendorPriorityEntry,
)
from .base import CatalogTransaction, StoredField, SyncStore

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS feed_snapshots (
    vendor TEXT NOT NULL,
    scope TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    header TEXT,
    keyed BOOLEAN NOT NULL DEFAULT FALSE,
    row_map JSONB NOT NULL,
    captured_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (vendor, scope)
);

CREATE TABLE IF NOT EXISTS catalog_records (
    scope TEXT NOT NULL,
    sku TEXT NOT NULL,
    price NUMERIC,
    quantity INTEGER,
    description TEXT,
    category TEXT,
    source_vendor TEXT NOT NULL,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    updated_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (scope, sku)
);

CREATE TABLE IF NOT EXISTS vendor_offers (
    scope TEXT NOT NULL,
    sku TEXT NOT NULL,
    vendor TEXT NOT NULL,
    offer_values JSONB NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    PRIMARY KEY (scope, sku, vendor)
);

CREATE TABLE IF NOT EXISTS vendor_priorities (
    scope TEXT NOT NULL,
    category TEXT NOT NULL,
    vendor TEXT NOT NULL,
    rank INTEGER NOT NULL CHECK (rank >= 1),
    PRIMARY KEY (scope, category, vendor)
);

CREATE TABLE IF NOT EXISTS vendor_credentials (
    vendor TEXT NOT NULL,
    scope TEXT NOT NULL,
    fields JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    PRIMARY KEY (vendor, scope)
);

CREATE TABLE IF NOT EXISTS sync_runs (
    vendor TEXT NOT NULL,
    scope TEXT NOT NULL,
    run_id TEXT NOT NULL,
    trigger TEXT NOT NULL,
    state TEXT NOT NULL,
    started_at TIMESTAMPTZ NOT NULL,
    finished_at TIMESTAMPTZ,
    stats JSONB NOT NULL DEFAULT '{}'::jsonb,
    error TEXT,
    PRIMARY KEY (vendor, scope)
);
"""

_ACTIVE_STATES = [s.value for s in IN_PROGRESS_STATES]


def _record_from_row(row: Dict[str, Any]) -> CatalogRecord:
    price = row["price"]
    return CatalogRecord(
        sku=row["sku"],
        scope=Scope.parse(row["scope"]),
        values=CatalogValues(
            price=Decimal(price) if price is not None else None,
            quantity=row["quantity"],
            description=row["description"],
            category=row["category"],
        ),
        source_vendor=row["source_vendor"],
        active=row["active"],
        updated_at=row["updated_at"],
    )


def _offer_from_row(row: Dict[str, Any]) -> VendorOffer:
    return VendorOffer(
        vendor=row["vendor"],
        sku=row["sku"],
        scope=Scope.parse(row["scope"]),
        values=CatalogValues.from_dict(row["offer_values"]),
        updated_at=row["updated_at"],
    )


def _run_from_row(row: Dict[str, Any]) -> SyncRun:
    return SyncRun(
        vendor=row["vendor"],
        scope=Scope.parse(row["scope"]),
        trigger=TriggerSource(row["trigger"]),
        state=SyncState(row["state"]),
        run_id=row["run_id"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        stats=SyncStats.from_dict(row["stats"]),
        error=row["error"],
    )


def _run_params(run: SyncRun) -> Dict[str, Any]:
    return {
        "vendor": run.vendor,
        "scope": run.scope.key,
        "run_id": run.run_id,
        "trigger": run.trigger.value,
        "state": run.state.value,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
        "stats": Jsonb(run.stats.to_dict()),
        "error": run.error,
    }


async def _write_snapshot(conn: psycopg.AsyncConnection, snapshot: FeedSnapshot) -> None:
    await conn.execute(
        """
        INSERT INTO feed_snapshots
            (vendor, scope, fingerprint, header, keyed, row_map, captured_at)
        VALUES (%s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (vendor, scope) DO UPDATE SET
            fingerprint = EXCLUDED.fingerprint,
            header = EXCLUDED.header,
            keyed = EXCLUDED.keyed,
            row_map = EXCLUDED.row_map,
            captured_at = EXCLUDED.captured_at
        """,
        (
            snapshot.vendor,
            snapshot.scope.key,
            snapshot.fingerprint,
            snapshot.header,
            snapshot.keyed,
            Jsonb(snapshot.rows),
            snapshot.captured_at,
        ),
    )


class PostgresTransaction(CatalogTransaction):
    """Catalog unit of work bound to one open transaction."""

    def __init__(self, conn: psycopg.AsyncConnection):
        self._conn = conn

    async def get_records(
        self, scope: Scope, skus: Iterable[str]
    ) -> Dict[str, CatalogRecord]:
        async with self._conn.cursor() as cur:
            await cur.execute(
                """
                SELECT * FROM catalog_records
                WHERE scope = %s AND sku = ANY(%s)
                FOR UPDATE
                """,
                (scope.key, list(skus)),
            )
            rows = await cur.fetchall()
        return {row["sku"]: _record_from_row(row) for row in rows}

    async def get_offers(
        self, scope: Scope, skus: Iterable[str]
    ) -> Dict[str, List[VendorOffer]]:
        async with self._conn.cursor() as cur:
            await cur.execute(
                "SELECT * FROM vendor_offers WHERE scope = %s AND sku = ANY(%s)",
                (scope.key, list(skus)),
            )
            rows = await cur.fetchall()
        offers: Dict[str, List[VendorOffer]] = {}
        for row in rows:
            offers.setdefault(row["sku"], []).append(_offer_from_row(row))
        return offers

    async def upsert_record(self, record: CatalogRecord) -> None:
        values = record.values
        await self._conn.execute(
            """
            INSERT INTO catalog_records
                (scope, sku, price, quantity, description, category,
                 source_vendor, active, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (scope, sku) DO UPDATE SET
                price = EXCLUDED.price,
                quantity = EXCLUDED.quantity,
                description = EXCLUDED.description,
                category = EXCLUDED.category,
                source_vendor = EXCLUDED.source_vendor,
                active = EXCLUDED.active,
                updated_at = EXCLUDED.updated_at
            """,
            (
                record.scope.key,
                record.sku,
                values.price,
                values.quantity,
                values.description,
                values.category,
                record.source_vendor,
                record.active,
                record.updated_at,
            ),
        )

    async def delete_record(self, scope: Scope, sku: str) -> None:
        await self._conn.execute(
            "DELETE FROM catalog_records WHERE scope = %s AND sku = %s",
            (scope.key, sku),
        )

    async def upsert_offer(self, offer: VendorOffer) -> None:
        await self._conn.execute(
            """
            INSERT INTO vendor_offers (scope, sku, vendor, offer_values, updated_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (scope, sku, vendor) DO UPDATE SET
                offer_values = EXCLUDED.offer_values,
                updated_at = EXCLUDED.updated_at
            """,
            (
                offer.scope.key,
                offer.sku,
                offer.vendor,
                Jsonb(offer.values.to_dict()),
                offer.updated_at,
            ),
        )

    async def delete_offer(self, vendor: str, scope: Scope, sku: str) -> None:
        await self._conn.execute(
            "DELETE FROM vendor_offers WHERE scope = %s AND sku = %s AND vendor = %s",
            (scope.key, sku, vendor),
        )

    async def save_snapshot(self, snapshot: FeedSnapshot) -> None:
        await _write_snapshot(self._conn, snapshot)


class PostgresStore(SyncStore):
    """SyncStore backed by PostgreSQL via psycopg."""

    def __init__(self, database_url: str, connect_timeout: int = 10):
        if not database_url:
            raise ValueError("database_url is required for PostgresStore")
        self.database_url = database_url
        self.connect_timeout = connect_timeout

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[psycopg.AsyncConnection]:
        async with await psycopg.AsyncConnection.connect(
            self.database_url,
            row_factory=dict_row,
            connect_timeout=self.connect_timeout,
        ) as conn:
            yield conn

    async def open(self) -> None:
        async with self._connect() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("PostgreSQL schema ready")

    # Snapshots

    async def get_snapshot(self, vendor: str, scope: Scope) -> Optional[FeedSnapshot]:
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT * FROM feed_snapshots WHERE vendor = %s AND scope = %s",
                    (vendor, scope.key),
                )
                row = await cur.fetchone()
        if row is None:
            return None
        return FeedSnapshot(
            vendor=row["vendor"],
            scope=Scope.parse(row["scope"]),
            fingerprint=row["fingerprint"],
            header=row["header"],
            rows=row["row_map"],
            keyed=row["keyed"],
            captured_at=row["captured_at"],
        )

    async def save_snapshot(self, snapshot: FeedSnapshot) -> None:
        async with self._connect() as conn:
            await _write_snapshot(conn, snapshot)

    # Catalog

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        async with self._connect() as conn:
            async with conn.transaction():
                yield PostgresTransaction(conn)

    async def get_record(self, scope: Scope, sku: str) -> Optional[CatalogRecord]:
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT * FROM catalog_records WHERE scope = %s AND sku = %s",
                    (scope.key, sku),
                )
                row = await cur.fetchone()
        return _record_from_row(row) if row else None

    async def get_offers(self, scope: Scope, sku: str) -> List[VendorOffer]:
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT * FROM vendor_offers WHERE scope = %s AND sku = %s",
                    (scope.key, sku),
                )
                rows = await cur.fetchall()
        return [_offer_from_row(row) for row in rows]

    # Vendor priority

    async def load_priorities(
        self, scope: Scope, category: str
    ) -> List[VendorPriorityEntry]:
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    SELECT vendor, rank FROM vendor_priorities
                    WHERE scope = %s AND category = %s
                    ORDER BY rank, vendor
                    """,
                    (scope.key, category),
                )
                rows = await cur.fetchall()
        return [
            VendorPriorityEntry(
                scope=scope, category=category, vendor=row["vendor"], rank=row["rank"]
            )
            for row in rows
        ]

    async def replace_priorities(
        self, scope: Scope, category: str, vendors: List[str]
    ) -> None:
        async with self._connect() as conn:
            async with conn.transaction():
                await conn.execute(
                    "DELETE FROM vendor_priorities WHERE scope = %s AND category = %s",
                    (scope.key, category),
                )
                async with conn.cursor() as cur:
                    await cur.executemany(
                        """
                        INSERT INTO vendor_priorities (scope, category, vendor, rank)
                        VALUES (%s, %s, %s, %s)
                        """,
                        [
                            (scope.key, category, vendor, rank)
                            for rank, vendor in enumerate(vendors, start=1)
                        ],
                    )

    async def list_priorities(self) -> List[VendorPriorityEntry]:
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT * FROM vendor_priorities ORDER BY scope, category, rank"
                )
                rows = await cur.fetchall()
        return [
            VendorPriorityEntry(
                scope=Scope.parse(row["scope"]),
                category=row["category"],
                vendor=row["vendor"],
                rank=row["rank"],
            )
            for row in rows
        ]

    # Credentials

    async def get_credential_fields(
        self, vendor: str, scope: Scope
    ) -> Optional[Dict[str, StoredField]]:
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT fields FROM vendor_credentials WHERE vendor = %s AND scope = %s",
                    (vendor, scope.key),
                )
                row = await cur.fetchone()
        return row["fields"] if row else None

    async def merge_credential_fields(
        self, vendor: str, scope: Scope, fields: Dict[str, StoredField]
    ) -> None:
        # jsonb || merges top-level keys; absent keys keep their stored value
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO vendor_credentials (vendor, scope, fields, updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (vendor, scope) DO UPDATE SET
                    fields = vendor_credentials.fields || EXCLUDED.fields,
                    updated_at = now()
                """,
                (vendor, scope.key, Jsonb(fields)),
            )

    # Sync runs

    async def begin_run(self, run: SyncRun) -> Optional[SyncRun]:
        params = _run_params(run)
        params["active_states"] = _ACTIVE_STATES
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO sync_runs
                        (vendor, scope, run_id, trigger, state, started_at,
                         finished_at, stats, error)
                    VALUES (%(vendor)s, %(scope)s, %(run_id)s, %(trigger)s, %(state)s,
                            %(started_at)s, %(finished_at)s, %(stats)s, %(error)s)
                    ON CONFLICT (vendor, scope) DO UPDATE SET
                        run_id = EXCLUDED.run_id,
                        trigger = EXCLUDED.trigger,
                        state = EXCLUDED.state,
                        started_at = EXCLUDED.started_at,
                        finished_at = EXCLUDED.finished_at,
                        stats = EXCLUDED.stats,
                        error = EXCLUDED.error
                    WHERE sync_runs.state <> ALL(%(active_states)s)
                    RETURNING run_id
                    """,
                    params,
                )
                started = await cur.fetchone()
                if started is not None:
                    return None

                await cur.execute(
                    "SELECT * FROM sync_runs WHERE vendor = %s AND scope = %s",
                    (run.vendor, run.scope.key),
                )
                row = await cur.fetchone()
        return _run_from_row(row) if row else None

    async def update_run(self, run: SyncRun) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE sync_runs SET
                    state = %(state)s,
                    finished_at = %(finished_at)s,
                    stats = %(stats)s,
                    error = %(error)s
                WHERE vendor = %(vendor)s AND scope = %(scope)s AND run_id = %(run_id)s
                    AND state = ANY(%(active_states)s)
                """,
                {**_run_params(run), "active_states": _ACTIVE_STATES},
            )
            return cur.rowcount == 1

    async def get_run(self, vendor: str, scope: Scope) -> Optional[SyncRun]:
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    "SELECT * FROM sync_runs WHERE vendor = %s AND scope = %s",
                    (vendor, scope.key),
                )
                row = await cur.fetchone()
        return _run_from_row(row) if row else None

    async def list_runs(self) -> List[SyncRun]:
        async with self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT * FROM sync_runs ORDER BY vendor, scope")
                rows = await cur.fetchall()
        return [_run_from_row(row) for row in rows]
