"""
Vendor schemas.

Declared per-vendor field lists, aliases, sensitivity flags and feed layout.
"""

from .config import (
    CredentialFieldSpec,
    FeedSpec,
    ScheduleSpec,
    SourceConfig,
    VendorCatalog,
    VendorSchema,
    get_vendors_dir,
    load_all_vendors,
    load_vendor_schema,
    parse_vendor_schema,
)

__all__ = [
    "CredentialFieldSpec",
    "FeedSpec",
    "ScheduleSpec",
    "SourceConfig",
    "VendorCatalog",
    "VendorSchema",
    "get_vendors_dir",
    "load_all_vendors",
    "load_vendor_schema",
    "parse_vendor_schema",
]
