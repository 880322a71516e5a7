"""
Pydantic models for parsed order emails, cumulative drafts and sales orders.
"""
from __future__ import annotations

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


def _new_id() -> str:
    return uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MatchKind(str, Enum):
    EXACT = "exact"
    PARTIAL = "partial"
    NONE = "none"


class DraftStatus(str, Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"


class CatalogProduct(BaseModel):
    """Catalog entry as quoted to the client."""
    id: str
    name: str
    sale_unit: str = Field(default="pieza", description="Unit the product is sold and priced in")
    priced_by_weight: bool = Field(
        default=False,
        description="True when price and aggregation are expressed directly in kg",
    )
    weight_per_unit: Optional[float] = Field(
        default=None,
        description="kg per discrete sale unit; only meaningful when priced_by_weight is False",
    )
    applies_tax_a: bool = False
    applies_tax_b: bool = False
    quoted_price: Optional[float] = Field(
        default=None,
        description="Tax-inclusive price quoted to this client, per sale unit (or per kg)",
    )
    code: Optional[str] = None


class RegisteredBranch(BaseModel):
    id: str
    name: str


class OrderRequest(BaseModel):
    """Input to the pipeline: one email plus the client context it is parsed against."""
    email_id: str
    email_body: str
    email_subject: str = ""
    email_from: str = ""
    client_id: str
    catalog_context: list[CatalogProduct] = Field(default_factory=list)
    registered_branches: list[RegisteredBranch] = Field(default_factory=list)


class ParsedLine(BaseModel):
    raw_product_text: str
    raw_quantity: float
    raw_unit_hint: Optional[str] = None
    matched_product_id: Optional[str] = None
    matched_product_name: Optional[str] = None
    match_kind: MatchKind = MatchKind.NONE
    normalized_quantity: float = 0.0
    normalized_unit: Optional[str] = None
    requires_verification: bool = False
    unit_price: Optional[float] = None
    line_subtotal: Optional[float] = None
    annotation: Optional[str] = Field(
        default=None,
        description="Traceability note, e.g. the original weight when converted to discrete units",
    )
    notes: Optional[str] = None


class ParsedBranch(BaseModel):
    branch_name_as_written: str
    matched_branch_id: Optional[str] = None
    delivery_date: Optional[date] = None
    lines: list[ParsedLine] = Field(default_factory=list)


class ParsedOrder(BaseModel):
    """Ephemeral result of parsing one email."""
    source_email_id: str
    branches: list[ParsedBranch] = Field(default_factory=list)
    confidence: float = Field(ge=0.0, le=1.0, description="Extraction reliability, UI emphasis only")
    general_notes: Optional[str] = None
    parser: str = Field(default="rule_based", description="Name of the strategy that produced it")


class VerifiedOverride(BaseModel):
    confirmed_quantity: float
    confirmed_unit_count: Optional[int] = None
    verified_at: datetime = Field(default_factory=_utcnow)


class DraftLine(BaseModel):
    product_id: str
    product_name: str
    quantity: float
    unit: Optional[str] = None
    unit_price: float = 0.0
    subtotal: float = Field(default=0.0, description="Tax-inclusive line amount")
    applies_tax_a: bool = False
    applies_tax_b: bool = False
    requires_verification: bool = False
    verified: bool = False
    verified_override: Optional[VerifiedOverride] = None
    annotations: list[str] = Field(default_factory=list)


class DraftTotals(BaseModel):
    net_subtotal: float = 0.0
    tax_total: float = 0.0
    grand_total: float = 0.0


class CumulativeDraftOrder(BaseModel):
    """Running sales order for one (client, branch, delivery date), fed by many emails."""
    id: str = Field(default_factory=_new_id)
    client_id: str
    branch_id: str
    delivery_date: date
    status: DraftStatus = DraftStatus.DRAFT
    processed_email_ids: set[str] = Field(default_factory=set)
    lines: dict[str, DraftLine] = Field(default_factory=dict)
    totals: DraftTotals = Field(default_factory=DraftTotals)
    version: int = Field(default=0, description="Optimistic concurrency token, bumped on every save")
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> tuple[str, str, date]:
        return (self.client_id, self.branch_id, self.delivery_date)


class SalesOrderLine(BaseModel):
    product_id: str
    quantity: float
    unit_price: float
    subtotal: float


class SalesOrder(BaseModel):
    """Downstream order record created when a draft is finalized."""
    id: str = Field(default_factory=_new_id)
    folio: str
    client_id: str
    branch_id: str
    delivery_date: date
    lines: list[SalesOrderLine] = Field(default_factory=list)
    totals: DraftTotals
    source_draft_id: str
    status: str = "pending"
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
