# printflow/domain/schemas.py
from datetime import datetime
from typing import List

from pydantic import BaseModel, ConfigDict, Field


class SessionCreate(BaseModel):
    """Prompt submission starting a design session."""

    prompt: str = Field(..., min_length=1, max_length=2000)
    style_hints: List[str] = Field(default_factory=list, max_length=20)
    locale: str = Field("en", min_length=2, max_length=16)


class AssetOut(BaseModel):
    id: str
    preview_url: str
    mockup_urls: List[str] = []
    notes: str | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class SessionOut(BaseModel):
    session_id: str
    owner_id: str | None = None
    prompt: str
    style_hints: List[str] = []
    locale: str
    stage: str
    progress: int
    message: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retry_count: int
    retries_left: int
    selected_asset_id: str | None = None
    product_slug: str | None = None
    variant_id: int | None = None
    consent_accepted: bool
    consent_accepted_at: datetime | None = None
    abandoned: bool
    assets: List[AssetOut] = []
    version: int
    created_at: datetime
    updated_at: datetime


class SnapshotOut(BaseModel):
    """Pollable truth for one session."""

    session_id: str
    seq: int
    stage: str
    progress: int
    message: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    retry_count: int
    selected_asset_id: str | None = None
    updated_at: datetime


class StageEventOut(BaseModel):
    session_id: str
    seq: int
    stage: str
    progress: int
    message: str | None = None
    error_code: str | None = None
    attempt: int
    created_at: str | None = None


class ConfigureProductIn(BaseModel):
    product_slug: str = Field(..., min_length=1, max_length=128)
    variant_id: int = Field(..., gt=0)
    asset_id: str | None = None


class ApproveIn(BaseModel):
    consent: bool


class ApprovalOut(BaseModel):
    session_id: str
    approval_token: str
    consent_accepted_at: datetime | None = None
    expires_in: int


class ShippingAddress(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    line1: str = Field(..., min_length=1, max_length=200)
    line2: str | None = Field(None, max_length=200)
    city: str = Field(..., min_length=1, max_length=100)
    state: str | None = Field(None, max_length=100)
    postal_code: str = Field(..., min_length=1, max_length=20)
    country: str = Field(..., min_length=2, max_length=2, description="ISO 3166-1 alpha-2")
    email: str | None = Field(None, max_length=254)
    phone: str | None = Field(None, max_length=40)


class CheckoutCreate(BaseModel):
    """Either an approval token (designed item) or a catalog variant."""

    shipping_address: ShippingAddress
    quantity: int = Field(1, gt=0, le=100)
    approval_token: str | None = None
    variant_id: int | None = Field(None, gt=0)
    product_slug: str | None = None


class CheckoutOut(BaseModel):
    checkout_id: str
    payment_ref: str
    client_secret: str
    subtotal_minor: int
    shipping_minor: int
    tax_minor: int
    discount_minor: int
    total_minor: int
    currency: str


class CheckoutStatusOut(BaseModel):
    checkout_id: str
    payment_status: str
    failure_code: str | None = None
    order_id: str | None = None
    status: str
    status_message: str
    total_minor: int
    currency: str


class OrderItemOut(BaseModel):
    id: int
    variant_id: int
    product_slug: str
    quantity: int
    unit_price_minor: int
    asset_id: str | None = None


class OrderOut(BaseModel):
    id: str
    session_id: str | None = None
    status: str
    status_message: str
    payment_status: str
    fulfillment_status: str
    items: List[OrderItemOut]
    subtotal_minor: int
    shipping_minor: int
    tax_minor: int
    discount_minor: int
    total_minor: int
    adjustments_minor: int
    refunded_minor: int
    currency: str
    tracking_code: str | None = None
    tracking_url: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    created_at: datetime
    updated_at: datetime


class AdjustItemIn(BaseModel):
    item_id: int = Field(..., gt=0)
    quantity_delta: int
    reason: str = Field(..., min_length=1, max_length=255)


class TrackingOut(BaseModel):
    tracking_code: str
    tracking_url: str | None = None
    status: str
    status_message: str
    fulfillment_status: str
    updated_at: datetime


class FulfillmentEventIn(BaseModel):
    """Status push from the fulfillment provider."""

    provider_order_ref: str = Field(..., min_length=1)
    status: str
    tracking_code: str | None = None
    tracking_url: str | None = None


class RetryEntryOut(BaseModel):
    id: str
    kind: str
    status: str
    operation_type: str
    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    last_error: str | None = None
    external_ref: str | None = None
    created_at: datetime
    updated_at: datetime
