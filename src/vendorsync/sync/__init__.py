"""
Differential sync engine.

ChangeDetector -> CatalogReconciler, driven by SyncOrchestrator, with
vendor precedence from VendorPriorityCache.
"""

from .detector import ChangeDetector, DetectionResult, compute_delta, parse_feed
from .orchestrator import SyncOrchestrator
from .priority import (
    DEFAULT_PRIORITY,
    VendorPriorityCache,
    resequence,
    validate_priority_entries,
)
from .reconciler import CatalogReconciler

__all__ = [
    "CatalogReconciler",
    "ChangeDetector",
    "DEFAULT_PRIORITY",
    "DetectionResult",
    "SyncOrchestrator",
    "VendorPriorityCache",
    "compute_delta",
    "parse_feed",
    "resequence",
    "validate_priority_entries",
]
