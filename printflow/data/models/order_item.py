# printflow/data/models/order_item.py
from sqlalchemy import Column, ForeignKey, Integer, String
from sqlalchemy.orm import relationship

from printflow.data.database import Base


class OrderItemModel(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)

    variant_id = Column(Integer, nullable=False)
    product_slug = Column(String(128), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price_minor = Column(Integer, nullable=False)
    asset_id = Column(String(36), ForeignKey("design_assets.id"), nullable=True)

    order = relationship("OrderModel", back_populates="items")
