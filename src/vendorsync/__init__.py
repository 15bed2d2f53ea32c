"""
vendorsync - differential vendor feed sync.

Ingests vendor product/price/inventory feeds (FTP CSV drops, HTTP APIs) and
reconciles them into a shared catalog with cost proportional to what
changed, not to the size of the feed.

Usage:
    from vendorsync import SyncOrchestrator, Scope

    orchestrator = SyncOrchestrator.from_config()
    await orchestrator.store.open()
    run = await orchestrator.trigger("bill_hicks", Scope.global_())
"""

__version__ = "0.1.0"

from .config import SyncConfig, get_config
from .models import GLOBAL_SCOPE, Scope, SyncRun, SyncState, SyncStats, SyncStatus
from .sync import ChangeDetector, CatalogReconciler, SyncOrchestrator, VendorPriorityCache
from .vault import CredentialVault

__all__ = [
    "__version__",
    # Config
    "SyncConfig",
    "get_config",
    # Models
    "GLOBAL_SCOPE",
    "Scope",
    "SyncRun",
    "SyncState",
    "SyncStats",
    "SyncStatus",
    # Engine
    "CatalogReconciler",
    "ChangeDetector",
    "CredentialVault",
    "SyncOrchestrator",
    "VendorPriorityCache",
]
