# printflow/data/models/checkout.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text

from printflow.data.database import Base


class CheckoutModel(Base):
    """Priced purchase waiting for the payment processor to confirm it."""

    __tablename__ = "checkouts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(36), nullable=True, index=True)
    approval_token = Column(Text, nullable=True)

    product_slug = Column(String(128), nullable=False)
    variant_id = Column(Integer, nullable=False)
    asset_id = Column(String(36), nullable=True)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price_minor = Column(Integer, nullable=False)

    subtotal_minor = Column(Integer, nullable=False)
    shipping_minor = Column(Integer, nullable=False, default=0)
    tax_minor = Column(Integer, nullable=False, default=0)
    discount_minor = Column(Integer, nullable=False, default=0)
    total_minor = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    shipping_address = Column(JSON, nullable=False)

    payment_ref = Column(String(255), nullable=True, unique=True)
    payment_status = Column(String(32), nullable=False, default="pending")
    failure_code = Column(String(64), nullable=True)
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
