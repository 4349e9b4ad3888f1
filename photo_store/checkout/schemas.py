"""
schemas.py — checkout Pydantic v2 data contracts.

Defines:
  - CheckoutItem, CheckoutRequest   (POST /api/checkout-session body)
  - CheckoutSessionCreated          (POST /api/checkout-session response)
  - CartItem                        (pre-payment cart entry parked in the side channel)
  - LineItem                        (provider line item, reduced to what ingestion needs)

CartItem accepts both snake_case and the camelCase keys written by older
storefront builds (productId, imageSrc, imageHQ) so legacy metadata still parses.
"""
from __future__ import annotations

from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CheckoutItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1)
    description: str = "High-resolution digital photography print"
    price: float = Field(..., gt=0, description="Unit price in major currency units (e.g. 0.99 AUD).")
    quantity: int = Field(default=1, ge=1)
    product_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("product_id", "productId", "id"),
    )
    image_src: str = Field(default="", validation_alias=AliasChoices("image_src", "imageSrc"))
    image_hq: str = Field(default="", validation_alias=AliasChoices("image_hq", "imageHQ"))


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem] = Field(..., min_length=1)
    customer_email: Optional[str] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class CheckoutSessionCreated(BaseModel):
    id: str
    url: Optional[str] = None


class CartItem(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    product_id: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("product_id", "productId", "id"),
    )
    name: str = ""
    title: str = ""
    image_src: str = Field(default="", validation_alias=AliasChoices("image_src", "imageSrc"))
    image_hq: str = Field(default="", validation_alias=AliasChoices("image_hq", "imageHQ"))
    quantity: int = 1

    @property
    def display_title(self) -> str:
        return self.title or self.name

    @property
    def asset_ref(self) -> str:
        """High-quality file wins; the display image is the fallback deliverable."""
        return self.image_hq or self.image_src


class LineItem(BaseModel):
    id: Optional[str] = None
    product_name: str = "Photo"
    quantity: int = 1
    # price.product.metadata.productId / assetRef, set when the session was created here
    product_ref: Optional[str] = None
    asset_ref: str = ""
