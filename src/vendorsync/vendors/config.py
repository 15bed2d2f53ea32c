"""
Vendor schema loader.

Each vendor is declared once in VENDORS_DIR/<code>.toml: its credential
fields (with sensitivity flags and historical aliases), the feed layout,
where the feed is fetched from, and its sync schedules. The vault,
detector, reconciler and fetchers all consume this one object instead of
matching on vendor names.
"""

import os
import tomllib
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..errors import VendorNotFound


class CredentialFieldSpec(BaseModel):
    """One named credential field."""

    name: str
    sensitive: bool = False
    required: bool = False
    aliases: list[str] = Field(default_factory=list)
    description: str = ""


class FeedSpec(BaseModel):
    """Tabular layout of a vendor feed."""

    has_header: bool = True
    delimiter: str = ","
    encoding: str = "utf-8"

    # Stable row key used for diffing. None means line-level comparison.
    key_column: Optional[str] = None

    # Column map into CatalogRecord fields. Headerless feeds address
    # columns by zero-based position ("0", "1", ...).
    sku_column: str = "sku"
    price_column: Optional[str] = None
    quantity_column: Optional[str] = None
    description_column: Optional[str] = None
    category_column: Optional[str] = None

    @field_validator("delimiter")
    @classmethod
    def _single_char(cls, value: str) -> str:
        if len(value) != 1:
            raise ValueError("delimiter must be a single character")
        return value

    @property
    def required_columns(self) -> list[str]:
        columns = [self.sku_column]
        if self.key_column and self.key_column != self.sku_column:
            columns.append(self.key_column)
        return columns


class SourceConfig(BaseModel):
    """Where and how the feed is fetched."""

    type: str = "http"  # http, ftp, or a registered plugin transport
    url: str = ""
    path: str = ""
    auth: str = "none"  # none, bearer, basic, query
    query_fields: dict[str, str] = Field(default_factory=dict)
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: Optional[float] = None


class ScheduleSpec(BaseModel):
    scope: str = "global"
    cron: str = "0 2 * * *"
    enabled: bool = True

    @field_validator("cron")
    @classmethod
    def _five_fields(cls, value: str) -> str:
        if len(value.split()) != 5:
            raise ValueError(f"Invalid cron expression: {value}")
        return value


class VendorSchema(BaseModel):
    """Declared schema for one vendor integration."""

    code: str
    name: str = ""
    category: str = "default"
    credentials: list[CredentialFieldSpec] = Field(default_factory=list)
    feed: FeedSpec = Field(default_factory=FeedSpec)
    source: SourceConfig = Field(default_factory=SourceConfig)
    schedules: list[ScheduleSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_field_names(self) -> "VendorSchema":
        seen: dict[str, str] = {}
        for spec in self.credentials:
            for name in [spec.name, *spec.aliases]:
                if name in seen:
                    raise ValueError(
                        f"Credential name '{name}' declared twice "
                        f"({seen[name]} and {spec.name})"
                    )
                seen[name] = spec.name
        if not self.name:
            self.name = self.code
        return self

    def field(self, name: str) -> Optional[CredentialFieldSpec]:
        """Find a credential field by canonical name or alias."""
        canonical = self.canonical_name(name)
        if canonical is None:
            return None
        for spec in self.credentials:
            if spec.name == canonical:
                return spec
        return None

    def canonical_name(self, name: str) -> Optional[str]:
        for spec in self.credentials:
            if name == spec.name or name in spec.aliases:
                return spec.name
        return None

    def is_sensitive(self, name: str) -> bool:
        spec = self.field(name)
        return bool(spec and spec.sensitive)

    @property
    def required_fields(self) -> list[str]:
        return [spec.name for spec in self.credentials if spec.required]


def get_vendors_dir() -> Path:
    """Vendor schema directory from VENDORSYNC_VENDORS_DIR, or ./vendors."""
    if env_dir := os.getenv("VENDORSYNC_VENDORS_DIR"):
        return Path(env_dir)
    return Path.cwd() / "vendors"


def parse_vendor_schema(code: str, data: dict[str, Any]) -> VendorSchema:
    """Build a VendorSchema from parsed TOML data."""
    vendor_data = dict(data.get("vendor", {}))
    vendor_data.setdefault("code", code)
    return VendorSchema.model_validate(vendor_data)


def load_vendor_schema(code: str, vendors_dir: Path | None = None) -> VendorSchema:
    """Load the schema for one vendor."""
    if vendors_dir is None:
        vendors_dir = get_vendors_dir()

    vendor_file = Path(vendors_dir) / f"{code}.toml"
    if not vendor_file.exists():
        raise VendorNotFound(code)

    with open(vendor_file, "rb") as f:
        data = tomllib.load(f)

    return parse_vendor_schema(code, data)


def load_all_vendors(vendors_dir: Path | None = None) -> dict[str, VendorSchema]:
    """Load every vendor schema in the directory, keyed by vendor code."""
    if vendors_dir is None:
        vendors_dir = get_vendors_dir()

    vendors_dir = Path(vendors_dir)
    if not vendors_dir.exists():
        return {}

    vendors = {}
    for toml_file in sorted(vendors_dir.glob("*.toml")):
        schema = load_vendor_schema(toml_file.stem, vendors_dir)
        vendors[schema.code] = schema

    return vendors


class VendorCatalog:
    """In-memory lookup of vendor schemas."""

    def __init__(self, schemas: Optional[dict[str, VendorSchema]] = None):
        self._schemas: dict[str, VendorSchema] = dict(schemas or {})

    @classmethod
    def from_dir(cls, vendors_dir: Path | None = None) -> "VendorCatalog":
        return cls(load_all_vendors(vendors_dir))

    def add(self, schema: VendorSchema) -> None:
        self._schemas[schema.code] = schema

    def get(self, code: str) -> VendorSchema:
        try:
            return self._schemas[code]
        except KeyError:
            raise VendorNotFound(code) from None

    def __contains__(self, code: str) -> bool:
        return code in self._schemas

    def __iter__(self):
        return iter(self._schemas.values())

    def __len__(self) -> int:
        return len(self._schemas)

    def codes(self) -> list[str]:
        return sorted(self._schemas)
