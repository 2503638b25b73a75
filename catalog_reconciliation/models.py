"""
Data models for the reconciliation service.

Uses Pydantic for validation and serialization.
"""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

FieldValue = Optional[Union[int, float, str]]


class Record(BaseModel):
    """A product/variant unit from either the supplier feed or the store.

    Identity fields (remote_id, variant_id, inventory_item_id) and
    location_ids are only populated for records that came from Shopify.
    """

    model_config = ConfigDict(frozen=True)

    remote_id: Optional[str] = None  # Shopify Product GID
    variant_id: Optional[str] = None  # Shopify ProductVariant GID
    inventory_item_id: Optional[str] = None  # Shopify InventoryItem GID
    handle: str
    sku: str
    name: str
    price: float
    inventory: Optional[int] = None  # None means "do not compare"
    description_html: Optional[str] = None
    vendor: Optional[str] = None
    product_type: Optional[str] = None
    tags: Optional[str] = None  # Comma-joined
    compare_at_price: Optional[float] = None
    cost: Optional[float] = None
    barcode: Optional[str] = None
    weight_grams: Optional[float] = None
    media_url: Optional[str] = None
    image_id: Optional[str] = None
    category: Optional[str] = None
    option1_name: Optional[str] = None
    option1_value: Optional[str] = None
    option2_name: Optional[str] = None
    option2_value: Optional[str] = None
    option3_name: Optional[str] = None
    option3_value: Optional[str] = None
    template_suffix: Optional[str] = None
    location_ids: Tuple[str, ...] = ()

    @property
    def is_remote(self) -> bool:
        return self.remote_id is not None

    @property
    def sku_key(self) -> str:
        """Normalized sku used for case-insensitive lookups."""
        return normalize_sku(self.sku)

    def tag_set(self) -> set:
        """Lower-cased, trimmed tags."""
        if not self.tags:
            return set()
        return {t.strip().lower() for t in self.tags.split(",") if t.strip()}


def normalize_sku(sku: str) -> str:
    """Trim and lower-case a sku for matching."""
    return (sku or "").strip().lower()


class MismatchKind(str, Enum):
    """Closed set of mismatch tags carried on audit results."""

    # Never produced by compare(); callers that detect title drift themselves
    # can still tag results with it and have the remediator rename the product
    NAME = "name"
    PRICE = "price"
    INVENTORY = "inventory"
    H1_TAG = "h1_tag"
    MISSING_IN_REMOTE = "missing_in_remote"
    DUPLICATE_IN_REMOTE = "duplicate_in_remote"
    HEAVY_PRODUCT_FLAG = "heavy_product_flag"
    CLEARANCE_PRICE_MISMATCH = "clearance_price_mismatch"
    MISSING_CLEARANCE_TAG = "missing_clearance_tag"
    INCORRECT_TEMPLATE_SUFFIX = "incorrect_template_suffix"
    MISSING_CATEGORY_TAG = "missing_category_tag"


class MissingType(str, Enum):
    PRODUCT = "product"
    VARIANT = "variant"


class AuditStatus(str, Enum):
    MATCHED = "matched"
    MISMATCHED = "mismatched"
    MISSING_IN_REMOTE = "missing_in_remote"
    NOT_IN_SUPPLIER_FEED = "not_in_supplier_feed"
    DUPLICATE_IN_REMOTE = "duplicate_in_remote"


class Mismatch(BaseModel):
    """One field-level discrepancy between supplier and store."""

    model_config = ConfigDict(frozen=True)

    field: MismatchKind
    supplier_value: FieldValue = None
    remote_value: FieldValue = None
    missing_type: Optional[MissingType] = None


class AuditResult(BaseModel):
    """One classified row of the audit report."""

    model_config = ConfigDict(frozen=True)

    sku: str
    supplier_records: Tuple[Record, ...] = ()
    remote_records: Tuple[Record, ...] = ()
    status: AuditStatus
    mismatches: Tuple[Mismatch, ...] = ()

    @property
    def handle(self) -> str:
        """Handle used for ordering: store handle first, then supplier handle."""
        if self.remote_records:
            return self.remote_records[0].handle
        if self.supplier_records:
            return self.supplier_records[0].handle
        return ""

    @property
    def supplier_record(self) -> Optional[Record]:
        return self.supplier_records[0] if self.supplier_records else None

    @property
    def remote_record(self) -> Optional[Record]:
        return self.remote_records[0] if self.remote_records else None


class Summary(BaseModel):
    """Counts per audit status."""

    matched: int = 0
    mismatched: int = 0
    not_in_supplier_feed: int = 0
    missing_in_remote: int = 0
    duplicate_in_remote: int = 0


class DuplicateSku(BaseModel):
    sku: str
    count: int


class AuditReport(BaseModel):
    """Full output of an audit run."""

    source_label: str
    results: List[AuditResult] = Field(default_factory=list)
    summary: Summary = Field(default_factory=Summary)
    duplicates: List[DuplicateSku] = Field(default_factory=list)


class BulkStatus(str, Enum):
    """Bulk operation states as reported by Shopify."""

    NONE = "NONE"
    CREATED = "CREATED"
    RUNNING = "RUNNING"
    CANCELING = "CANCELING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            BulkStatus.COMPLETED,
            BulkStatus.FAILED,
            BulkStatus.CANCELED,
            BulkStatus.EXPIRED,
        )

    @property
    def is_active(self) -> bool:
        return self in (BulkStatus.CREATED, BulkStatus.RUNNING, BulkStatus.CANCELING)


class BulkOperation(BaseModel):
    """Snapshot of a bulk export job."""

    id: str
    status: BulkStatus
    url: Optional[str] = None
    error_code: Optional[str] = None
    object_count: Optional[int] = None


class CacheStatus(BaseModel):
    """Whether an export cache exists and how old it is."""

    exists: bool
    last_modified: Optional[datetime] = None
    age_seconds: Optional[float] = None


class FixOutcome(BaseModel):
    """Result of one remediation call."""

    sku: str
    field: Optional[MismatchKind] = None  # None for stale deletions
    remote_id: Optional[str] = None
    variant_id: Optional[str] = None
    success: bool
    message: str


class RemediationReport(BaseModel):
    """Aggregated remediation outcomes."""

    outcomes: List[FixOutcome] = Field(default_factory=list)
    success_count: int = 0
    failure_count: int = 0
    message: str = ""
