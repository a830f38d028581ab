# printflow/data/models/refund_review.py
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String

from printflow.data.database import Base


class RefundReviewModel(Base):
    __tablename__ = "refund_reviews"

    id = Column(Integer, primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, unique=True)

    amount_minor = Column(Integer, nullable=False)
    currency = Column(String(8), nullable=False)
    reason = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="pending")

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))
