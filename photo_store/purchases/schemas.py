"""
schemas.py — purchase Pydantic v2 data contracts.

Defines:
  - PurchasedItem, PurchaseRecord   (the durable record, one per checkout session)
  - EntitlementState, DenialReason  (download state machine vocabulary)
  - EntitlementEvaluation, ConsumeResult  (EntitlementEngine outputs)
  - DownloadGrant, AuthorizationResult, EntitlementView, PurchaseEntitlements
    (download-facing outputs)
  - ErrorDetail, ErrorBody, ErrorResponse  (cross-cutting error envelope)

Record invariants:
  - quantity_purchased >= 1 for every item
  - product_id unique within one record
  - downloaded only ever moves False -> True
"""
from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class EntitlementState(str, Enum):
    not_purchased = "not_purchased"
    available = "available"
    consumed = "consumed"


class DenialReason(str, Enum):
    not_purchased = "not_purchased"
    already_downloaded = "already_downloaded"
    session_not_found = "session_not_found"


# ---------------------------------------------------------------------------
# PurchasedItem / PurchaseRecord — canonical stored shape
# ---------------------------------------------------------------------------

class PurchasedItem(BaseModel):
    """
    One distinct product inside a purchase. Owned by its PurchaseRecord.

    asset_ref locates the high-quality deliverable (site-relative path or CDN URL);
    image_src is the low-resolution display image. quantity_purchased is only
    packaging metadata — the whole line item is released on the first download.
    """
    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(..., min_length=1)
    title: str = ""
    file_name: str = ""
    asset_ref: str = ""
    image_src: str = ""
    quantity_purchased: int = Field(..., ge=1)
    downloaded: bool = False
    downloaded_at: Optional[str] = None


class PurchaseRecord(BaseModel):
    """
    Durable purchase record keyed by the provider's checkout session id.

    Written once by webhook ingestion (is_final=True from the start) and afterwards
    mutated only by flipping a single item's downloaded flag.
    """
    model_config = ConfigDict(extra="forbid")

    session_id: str = Field(..., min_length=1)
    customer_email: str
    items: List[PurchasedItem] = Field(default_factory=list)
    payment_status: str = ""
    is_final: bool = True
    created_at: str
    finalized_at: Optional[str] = None

    @model_validator(mode="after")
    def product_ids_unique(self) -> "PurchaseRecord":
        seen: set[str] = set()
        for item in self.items:
            if item.product_id in seen:
                raise ValueError(f"Duplicate product_id '{item.product_id}' in purchase record")
            seen.add(item.product_id)
        return self

    def find_item(self, product_id: str) -> Optional[PurchasedItem]:
        """Return the item for product_id, or None if it was not purchased."""
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity_purchased for item in self.items)


# ---------------------------------------------------------------------------
# EntitlementEngine outputs
# ---------------------------------------------------------------------------

class EntitlementEvaluation(BaseModel):
    state: EntitlementState
    quantity_purchased: int = 0


class ConsumeResult(BaseModel):
    """
    Outcome of EntitlementEngine.try_consume.

    updated_record is a NEW record (the input is never mutated); the caller persists it.
    """
    admitted: bool
    updated_record: Optional[PurchaseRecord] = None
    item: Optional[PurchasedItem] = None
    reason: Optional[DenialReason] = None
    message: str = ""


# ---------------------------------------------------------------------------
# Download-facing outputs
# ---------------------------------------------------------------------------

class DownloadGrant(BaseModel):
    """Everything the file-serving layer needs to package one released item."""
    product_id: str
    title: str
    asset_ref: str
    count: int
    suggested_filename: str
    is_remote: bool = False


class AuthorizationResult(BaseModel):
    admitted: bool
    reason: Optional[DenialReason] = None
    message: str = ""
    grant: Optional[DownloadGrant] = None


class EntitlementView(BaseModel):
    """Read-only projection of one purchased item for the success page."""
    product_id: str
    title: str
    file_name: str
    quantity_purchased: int
    downloaded: bool
    can_download: bool


class PurchaseEntitlements(BaseModel):
    """Purchase summary plus one EntitlementView per item (never mutates the record)."""
    session_id: str
    customer_email: str
    payment_status: str
    purchase_date: str
    is_final: bool
    finalized_at: Optional[str] = None
    total_quantity: int
    items: List[EntitlementView] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Error envelope — {error: {code, message, details}}
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field: Optional[str] = None
    issue: str


class ErrorBody(BaseModel):
    code: str
    message: str
    details: List[ErrorDetail] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    error: ErrorBody
