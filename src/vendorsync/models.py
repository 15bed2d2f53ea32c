"""Data types shared by the sync engine."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ScopeKind(str, Enum):
    """Reconciliation boundary."""

    GLOBAL = "global"  # Shared admin catalog
    TENANT = "tenant"  # Single tenant's price list


@dataclass(frozen=True)
class Scope:
    """Scope of a sync: the global catalog or one tenant's price list."""

    kind: ScopeKind
    tenant_id: Optional[str] = None

    def __post_init__(self):
        if self.kind == ScopeKind.TENANT and not self.tenant_id:
            raise ValueError("Tenant scope requires a tenant_id")
        if self.kind == ScopeKind.GLOBAL and self.tenant_id:
            raise ValueError("Global scope cannot carry a tenant_id")

    @classmethod
    def global_(cls) -> "Scope":
        return cls(ScopeKind.GLOBAL)

    @classmethod
    def tenant(cls, tenant_id: str) -> "Scope":
        return cls(ScopeKind.TENANT, str(tenant_id))

    @classmethod
    def parse(cls, value: "str | Scope") -> "Scope":
        """Parse "global" or "tenant:<id>"."""
        if isinstance(value, Scope):
            return value
        value = value.strip()
        if value == ScopeKind.GLOBAL.value:
            return cls.global_()
        kind, sep, tenant_id = value.partition(":")
        if sep and kind == ScopeKind.TENANT.value and tenant_id:
            return cls.tenant(tenant_id)
        raise ValueError(f"Invalid scope: {value!r} (expected 'global' or 'tenant:<id>')")

    @property
    def is_global(self) -> bool:
        return self.kind == ScopeKind.GLOBAL

    @property
    def key(self) -> str:
        if self.is_global:
            return ScopeKind.GLOBAL.value
        return f"{ScopeKind.TENANT.value}:{self.tenant_id}"

    def __str__(self) -> str:
        return self.key


GLOBAL_SCOPE = Scope.global_()


class SyncState(str, Enum):
    """Orchestrator states."""

    IDLE = "idle"
    FETCHING = "fetching"
    DIFFING = "diffing"
    RECONCILING = "reconciling"
    COMMITTING = "committing"
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def in_progress(self) -> bool:
        return self in IN_PROGRESS_STATES

    @property
    def terminal(self) -> bool:
        return self in (SyncState.SUCCESS, SyncState.SKIPPED, SyncState.FAILED)


IN_PROGRESS_STATES = frozenset(
    {SyncState.FETCHING, SyncState.DIFFING, SyncState.RECONCILING, SyncState.COMMITTING}
)

# Allowed transitions within one run
TRANSITIONS: Dict[SyncState, frozenset] = {
    SyncState.IDLE: frozenset({SyncState.FETCHING}),
    SyncState.FETCHING: frozenset({SyncState.DIFFING, SyncState.FAILED}),
    SyncState.DIFFING: frozenset(
        {SyncState.RECONCILING, SyncState.SKIPPED, SyncState.FAILED}
    ),
    SyncState.RECONCILING: frozenset({SyncState.COMMITTING, SyncState.FAILED}),
    SyncState.COMMITTING: frozenset({SyncState.SUCCESS, SyncState.FAILED}),
    SyncState.SUCCESS: frozenset(),
    SyncState.SKIPPED: frozenset(),
    SyncState.FAILED: frozenset(),
}


class TriggerSource(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


# =========================================================================
# Feed snapshot and delta
# =========================================================================


@dataclass
class FeedSnapshot:
    """Last accepted feed for a (vendor, scope).

    rows maps row key -> raw row text. For unkeyed feeds the raw row
    is its own key.
    """

    vendor: str
    scope: Scope
    fingerprint: str
    header: Optional[str]
    rows: Dict[str, str]
    keyed: bool = False
    captured_at: datetime = field(default_factory=utcnow)

    @property
    def row_count(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class ModifiedRow:
    key: str
    old: str
    new: str


@dataclass
class Delta:
    """Minimal row-level change between two feeds. Never persisted."""

    header: Optional[str] = None
    previous_header: Optional[str] = None  # columns of removed/old rows
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    modified: List[ModifiedRow] = field(default_factory=list)

    @property
    def added_count(self) -> int:
        return len(self.added)

    @property
    def removed_count(self) -> int:
        return len(self.removed)

    @property
    def modified_count(self) -> int:
        return len(self.modified)

    @property
    def size(self) -> int:
        return self.added_count + self.removed_count + self.modified_count

    @property
    def is_empty(self) -> bool:
        return self.size == 0

    def counts(self) -> Dict[str, int]:
        return {
            "added": self.added_count,
            "removed": self.removed_count,
            "modified": self.modified_count,
        }


# =========================================================================
# Catalog
# =========================================================================


@dataclass
class CatalogValues:
    """Value fields a vendor row contributes to the catalog."""

    price: Optional[Decimal] = None
    quantity: Optional[int] = None
    description: Optional[str] = None
    category: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "price": str(self.price) if self.price is not None else None,
            "quantity": self.quantity,
            "description": self.description,
            "category": self.category,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CatalogValues":
        price = data.get("price")
        return cls(
            price=Decimal(price) if price is not None else None,
            quantity=data.get("quantity"),
            description=data.get("description"),
            category=data.get("category"),
        )


@dataclass
class CatalogRecord:
    """One product/price entry per (sku, scope)."""

    sku: str
    scope: Scope
    values: CatalogValues
    source_vendor: str
    active: bool = True
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class VendorOffer:
    """What one vendor last reported for a SKU within a scope."""

    vendor: str
    sku: str
    scope: Scope
    values: CatalogValues
    updated_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class VendorPriorityEntry:
    """Rank of a vendor within (scope, category). Rank 1 wins."""

    scope: Scope
    category: str
    vendor: str
    rank: int


@dataclass(frozen=True)
class PriorityConflict:
    """A SKU reported by a vendor that lost to the current holder."""

    sku: str
    incoming_vendor: str
    incoming_rank: int
    holder_vendor: str
    holder_rank: int


# =========================================================================
# Sync runs
# =========================================================================


@dataclass
class SyncStats:
    total_rows: int = 0
    processed: int = 0
    added: int = 0
    updated: int = 0
    removed: int = 0
    skipped: int = 0
    failed: int = 0
    conflicts: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_rows": self.total_rows,
            "processed": self.processed,
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "skipped": self.skipped,
            "failed": self.failed,
            "conflicts": self.conflicts,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SyncStats":
        data = data or {}
        return cls(**{k: int(data.get(k, 0) or 0) for k in cls().to_dict()})


@dataclass
class SyncRun:
    """One orchestration attempt for a (vendor, scope)."""

    vendor: str
    scope: Scope
    trigger: TriggerSource = TriggerSource.MANUAL
    state: SyncState = SyncState.IDLE
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    stats: SyncStats = field(default_factory=SyncStats)
    error: Optional[str] = None

    @property
    def in_progress(self) -> bool:
        return self.state.in_progress

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or utcnow()) - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "vendor": self.vendor,
            "scope": self.scope.key,
            "trigger": self.trigger.value,
            "state": self.state.value,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "stats": self.stats.to_dict(),
            "error": self.error,
        }


@dataclass
class SyncStatus:
    """Status query result for a (vendor, scope)."""

    vendor: str
    scope: Scope
    state: SyncState
    last_run_at: Optional[datetime] = None
    last_outcome: Optional[SyncState] = None
    stats: SyncStats = field(default_factory=SyncStats)
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor": self.vendor,
            "scope": self.scope.key,
            "state": self.state.value,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "stats": self.stats.to_dict(),
            "last_error": self.last_error,
        }
