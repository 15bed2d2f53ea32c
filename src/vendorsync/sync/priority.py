"""
Vendor priority cache.

Maps (scope, category) to the ordered list of vendors; rank 1 wins. Reads
go through the cache and load from the store on a miss. Entries are
dropped only by an explicit ``invalidate()`` (or ``update()``, which writes
through and invalidates), never on a timer.

A tenant scope with no list of its own uses the global list for the same
category.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import groupby
from typing import Dict, Iterable, List, Optional, Tuple

from ..models import GLOBAL_SCOPE, Scope, VendorPriorityEntry
from ..storage.base import SyncStore

logger = logging.getLogger(__name__)

# Rank for vendors not listed for a (scope, category)
DEFAULT_PRIORITY = 999

CacheKey = Tuple[str, str]  # (scope key, category)


class VendorPriorityCache:
    """Read-through cache of vendor rankings."""

    def __init__(self, store: SyncStore):
        self.store = store
        self._entries: Dict[CacheKey, List[str]] = {}
        self._hits = 0
        self._misses = 0

    async def get(self, scope: Scope, category: str) -> List[str]:
        """Vendors for (scope, category), highest precedence first."""
        key = (scope.key, category)
        cached = self._entries.get(key)
        if cached is not None:
            self._hits += 1
            return list(cached)

        self._misses += 1
        entries = await self.store.load_priorities(scope, category)
        if not entries and not scope.is_global:
            entries = await self.store.load_priorities(GLOBAL_SCOPE, category)
        vendors = [e.vendor for e in sorted(entries, key=lambda e: e.rank)]
        self._entries[key] = vendors
        logger.debug(f"Loaded priority for {scope}/{category}: {vendors}")
        return list(vendors)

    async def ranks(self, scope: Scope, category: str) -> Dict[str, int]:
        vendors = await self.get(scope, category)
        return {vendor: rank for rank, vendor in enumerate(vendors, start=1)}

    async def rank(self, scope: Scope, category: str, vendor: str) -> int:
        """1-based rank of the vendor, or DEFAULT_PRIORITY if unlisted."""
        return (await self.ranks(scope, category)).get(vendor, DEFAULT_PRIORITY)

    def invalidate(
        self, scope: Optional[Scope] = None, category: Optional[str] = None
    ) -> int:
        """Drop cached entries matching the filters. Returns entries dropped.

        Invalidating a global entry also drops tenant entries for the same
        category, since those may have been filled from the global list.
        """
        if scope is None and category is None:
            dropped = len(self._entries)
            self._entries.clear()
            return dropped

        def matches(key: CacheKey) -> bool:
            scope_key, cat = key
            if category is not None and cat != category:
                return False
            if scope is None or scope.is_global:
                return True
            return scope_key == scope.key

        stale = [key for key in self._entries if matches(key)]
        for key in stale:
            del self._entries[key]
        return len(stale)

    async def update(self, scope: Scope, category: str, vendors: List[str]) -> None:
        """Replace the ranking for (scope, category) and invalidate it."""
        if len(set(vendors)) != len(vendors):
            raise ValueError("Vendor priority list contains duplicates")
        await self.store.replace_priorities(scope, category, list(vendors))
        self.invalidate(scope, category)
        logger.info(f"Vendor priority for {scope}/{category} set to {vendors}")

    async def preload(self, keys: Iterable[Tuple[Scope, str]]) -> int:
        """Warm the cache for the given (scope, category) pairs."""
        loaded = 0
        for scope, category in keys:
            if (scope.key, category) not in self._entries:
                await self.get(scope, category)
                loaded += 1
        return loaded

    def stats(self) -> Dict[str, float]:
        lookups = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "size": len(self._entries),
            "hit_rate": self._hits / lookups if lookups else 0.0,
        }


# =========================================================================
# Consistency checks
# =========================================================================


@dataclass
class PriorityValidation:
    valid: bool
    issues: List[str] = field(default_factory=list)


def _group_key(entry: VendorPriorityEntry) -> CacheKey:
    return (entry.scope.key, entry.category)


def validate_priority_entries(entries: Iterable[VendorPriorityEntry]) -> PriorityValidation:
    """Check each (scope, category) ranking for bad, duplicate or missing ranks."""
    issues: List[str] = []
    for (scope_key, category), group in groupby(
        sorted(entries, key=_group_key), key=_group_key
    ):
        group = list(group)
        label = f"{scope_key}/{category}"
        ranks = [e.rank for e in group]

        invalid = [e for e in group if e.rank < 1]
        for entry in invalid:
            issues.append(f"{label}: {entry.vendor} has invalid rank {entry.rank}")

        seen: Dict[int, str] = {}
        for entry in group:
            if entry.rank in seen:
                issues.append(
                    f"{label}: rank {entry.rank} shared by {seen[entry.rank]} "
                    f"and {entry.vendor}"
                )
            else:
                seen[entry.rank] = entry.vendor

        vendors = [e.vendor for e in group]
        for vendor in sorted({v for v in vendors if vendors.count(v) > 1}):
            issues.append(f"{label}: {vendor} listed more than once")

        valid_ranks = sorted({r for r in ranks if r >= 1})
        expected = list(range(1, len(valid_ranks) + 1))
        if valid_ranks != expected:
            gaps = sorted(set(range(1, max(valid_ranks, default=0) + 1)) - set(valid_ranks))
            if gaps:
                issues.append(f"{label}: missing rank(s) {', '.join(map(str, gaps))}")

    return PriorityValidation(valid=not issues, issues=issues)


def resequence(entries: Iterable[VendorPriorityEntry]) -> List[VendorPriorityEntry]:
    """Compact every (scope, category) ranking to 1..N, keeping relative order.

    Ties keep vendor-name order; repeated vendors keep their best rank.
    """
    fixed: List[VendorPriorityEntry] = []
    for _, group in groupby(sorted(entries, key=_group_key), key=_group_key):
        ordered = sorted(group, key=lambda e: (e.rank, e.vendor))
        seen: set[str] = set()
        rank = 0
        for entry in ordered:
            if entry.vendor in seen:
                continue
            seen.add(entry.vendor)
            rank += 1
            fixed.append(
                VendorPriorityEntry(
                    scope=entry.scope,
                    category=entry.category,
                    vendor=entry.vendor,
                    rank=rank,
                )
            )
    return fixed


__all__ = [
    "DEFAULT_PRIORITY",
    "PriorityValidation",
    "VendorPriorityCache",
    "resequence",
    "validate_priority_entries",
]
