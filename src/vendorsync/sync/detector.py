"""
Change detection for vendor feeds.

Two stages:
1. Fingerprint short-circuit: SHA-256 of the raw bytes against the stored
   snapshot. Equal fingerprints mean "unchanged" without parsing anything.
2. Row-level delta: the header is kept apart, then rows are compared by
   key (keyed feeds) or as a set of raw lines (unkeyed feeds).

The detector never persists on its own. The orchestrator stores the
candidate snapshot inside the reconciliation transaction; standalone
callers use ``accept()``.
"""

from __future__ import annotations

import csv
import hashlib
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from ..errors import EmptyFeedError, MalformedFeedError
from ..models import Delta, FeedSnapshot, ModifiedRow, Scope
from ..storage.base import SyncStore
from ..vendors.config import FeedSpec, VendorCatalog

logger = logging.getLogger(__name__)


@dataclass
class DetectionResult:
    """Outcome of comparing a fetched feed with the stored snapshot."""

    vendor: str
    scope: Scope
    changed: bool
    fingerprint: str
    delta: Optional[Delta] = None
    snapshot: Optional[FeedSnapshot] = None  # candidate, not yet stored
    previous_rows: int = 0
    stats: Dict[str, int] = field(default_factory=dict)


def fingerprint(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def split_row(line: str, delimiter: str = ",") -> List[str]:
    """Split one physical line into fields."""
    return next(csv.reader([line], delimiter=delimiter, strict=True), [])


def header_columns(header: Optional[str], feed: FeedSpec, width: int) -> List[str]:
    """Column names for a feed; headerless feeds use positions."""
    if header is None:
        return [str(i) for i in range(width)]
    return [c.strip() for c in split_row(header, feed.delimiter)]


def _decode(content: bytes, feed: FeedSpec) -> str:
    encoding = feed.encoding
    if encoding.replace("-", "").lower() == "utf8":
        encoding = "utf-8-sig"
    try:
        return content.decode(encoding)
    except (UnicodeDecodeError, LookupError) as e:
        raise MalformedFeedError(f"cannot decode feed as {feed.encoding}: {e}") from None


def parse_feed(
    vendor: str,
    scope: Scope,
    content: bytes,
    feed: FeedSpec,
    digest: Optional[str] = None,
) -> Tuple[FeedSnapshot, Dict[str, int]]:
    """Parse raw feed bytes into a snapshot.

    Raises:
        EmptyFeedError: no data rows (blank, header-only, or every key blank).
        MalformedFeedError: undecodable, missing key columns, or ragged rows.
    """
    text = _decode(content, feed)
    lines = [(n, line) for n, line in enumerate(text.splitlines(), start=1) if line.strip()]
    if not lines:
        raise EmptyFeedError()

    header: Optional[str] = None
    if feed.has_header:
        header = lines[0][1]
        lines = lines[1:]
        if not lines:
            raise EmptyFeedError()

    try:
        width = (
            len(split_row(header, feed.delimiter))
            if header is not None
            else len(split_row(lines[0][1], feed.delimiter))
        )
    except csv.Error as e:
        raise MalformedFeedError(str(e), line=1) from None
    columns = header_columns(header, feed, width)

    missing = [c for c in feed.required_columns if c not in columns]
    if missing:
        raise MalformedFeedError(
            f"missing column(s) {', '.join(missing)}", line=1 if header else None
        )
    key_index = columns.index(feed.key_column) if feed.key_column else None

    rows: Dict[str, str] = {}
    stats = {"rows": 0, "blank_keys": 0, "duplicate_keys": 0}
    for line_no, line in lines:
        try:
            values = split_row(line, feed.delimiter)
        except csv.Error as e:
            raise MalformedFeedError(str(e), line=line_no) from None
        if len(values) != width:
            raise MalformedFeedError(
                f"expected {width} columns, found {len(values)}", line=line_no
            )

        if key_index is None:
            key = line
        else:
            key = values[key_index].strip()
            if not key:
                stats["blank_keys"] += 1
                continue
        if key in rows:
            stats["duplicate_keys"] += 1
        rows[key] = line

    if not rows:
        raise EmptyFeedError()
    if stats["duplicate_keys"]:
        logger.warning(
            f"{vendor} ({scope}): {stats['duplicate_keys']} duplicate row key(s), "
            "last occurrence kept"
        )
    stats["rows"] = len(rows)

    snapshot = FeedSnapshot(
        vendor=vendor,
        scope=scope,
        fingerprint=digest or fingerprint(content),
        header=header,
        rows=rows,
        keyed=key_index is not None,
    )
    return snapshot, stats


def compute_delta(previous: Optional[FeedSnapshot], current: FeedSnapshot) -> Delta:
    """Minimal row-level change from ``previous`` to ``current``."""
    delta = Delta(header=current.header)
    new_rows = current.rows

    if previous is None:
        delta.added = list(new_rows.values())
        return delta

    delta.previous_header = previous.header
    old_rows = previous.rows
    # A changed header can move columns, so every surviving row is re-read
    header_changed = previous.header != current.header

    if current.keyed and previous.keyed:
        for key, row in new_rows.items():
            old = old_rows.get(key)
            if old is None:
                delta.added.append(row)
            elif header_changed or old != row:
                delta.modified.append(ModifiedRow(key, old, row))
        delta.removed = [row for key, row in old_rows.items() if key not in new_rows]
        return delta

    old_lines = set(old_rows.values())
    new_lines = set(new_rows.values())
    delta.added = [
        row for row in new_rows.values() if header_changed or row not in old_lines
    ]
    delta.removed = [row for row in old_rows.values() if row not in new_lines]
    return delta


class ChangeDetector:
    """Compares fetched feeds with the last accepted snapshot."""

    def __init__(self, store: SyncStore, catalog: VendorCatalog):
        self.store = store
        self.catalog = catalog

    async def detect(self, vendor: str, scope: Scope, content: bytes) -> DetectionResult:
        if not content.strip():
            raise EmptyFeedError()

        feed = self.catalog.get(vendor).feed
        digest = fingerprint(content)
        previous = await self.store.get_snapshot(vendor, scope)
        previous_rows = previous.row_count if previous else 0

        if previous is not None and previous.fingerprint == digest:
            logger.info(f"{vendor} ({scope}): feed unchanged, fingerprint {digest[:12]}")
            return DetectionResult(
                vendor=vendor,
                scope=scope,
                changed=False,
                fingerprint=digest,
                previous_rows=previous_rows,
                stats={"rows": previous_rows},
            )

        snapshot, stats = parse_feed(vendor, scope, content, feed, digest)
        delta = compute_delta(previous, snapshot)
        stats.update(delta.counts())

        logger.info(
            f"{vendor} ({scope}): {stats['rows']} rows, "
            f"+{delta.added_count} -{delta.removed_count} ~{delta.modified_count}"
            + (" (first sync)" if previous is None else "")
        )
        return DetectionResult(
            vendor=vendor,
            scope=scope,
            changed=True,
            fingerprint=digest,
            delta=delta,
            snapshot=snapshot,
            previous_rows=previous_rows,
            stats=stats,
        )

    async def accept(self, result: DetectionResult) -> None:
        """Store the candidate snapshot of a detection."""
        if result.changed and result.snapshot is not None:
            await self.store.save_snapshot(result.snapshot)


__all__ = [
    "ChangeDetector",
    "DetectionResult",
    "compute_delta",
    "fingerprint",
    "header_columns",
    "parse_feed",
    "split_row",
]
