# printflow/data/models/order.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    String,
)
from sqlalchemy.orm import relationship

from printflow.data.database import Base


def _now():
    return datetime.now(timezone.utc)


class OrderModel(Base):
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64), nullable=True, index=True)
    session_id = Column(String(36), nullable=True, index=True)
    checkout_id = Column(String(36), nullable=True)

    subtotal_minor = Column(Integer, nullable=False)
    shipping_minor = Column(Integer, nullable=False, default=0)
    tax_minor = Column(Integer, nullable=False, default=0)
    discount_minor = Column(Integer, nullable=False, default=0)
    total_minor = Column(Integer, nullable=False)
    refunded_minor = Column(Integer, nullable=False, default=0)
    currency = Column(String(8), nullable=False)
    shipping_address = Column(JSON, nullable=False)

    payment_status = Column(String(32), nullable=False, default="paid", index=True)
    fulfillment_status = Column(String(32), nullable=False, default="unsubmitted", index=True)

    # provider correlation
    payment_ref = Column(String(255), nullable=False, unique=True)
    provider_order_ref = Column(String(255), nullable=True, index=True)
    tracking_code = Column(String(128), nullable=True, index=True)
    tracking_url = Column(String(1024), nullable=True)

    fulfillment_attempts = Column(Integer, nullable=False, default=0)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)
    last_error_code = Column(String(64), nullable=True)
    failure_code = Column(String(64), nullable=True)
    failure_message = Column(String(255), nullable=True)

    needs_review = Column(Boolean, nullable=False, default=False)
    review_reason = Column(String(64), nullable=True)
    dead_lettered_at = Column(DateTime(timezone=True), nullable=True)
    dead_letter_reason = Column(String(64), nullable=True)

    submitted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    version = Column(Integer, nullable=False, default=1)

    items = relationship(
        "OrderItemModel",
        back_populates="order",
        order_by="OrderItemModel.id",
    )
    adjustments = relationship(
        "OrderAdjustmentModel",
        back_populates="order",
        order_by="OrderAdjustmentModel.id",
    )

    __table_args__ = (
        CheckConstraint(
            "fulfillment_status NOT IN ('submitted', 'in_production', 'shipped', 'delivered') "
            "OR provider_order_ref IS NOT NULL",
            name="ck_orders_provider_ref",
        ),
    )
