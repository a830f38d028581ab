# printflow/data/models/order_adjustment.py
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from printflow.data.database import Base


class OrderAdjustmentModel(Base):
    """Compensating correction for an order item; items themselves stay untouched."""

    __tablename__ = "order_adjustments"

    id = Column(Integer, primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    order_item_id = Column(Integer, ForeignKey("order_items.id"), nullable=False)

    quantity_delta = Column(Integer, nullable=False)
    amount_delta_minor = Column(Integer, nullable=False)
    reason = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    order = relationship("OrderModel", back_populates="adjustments")
