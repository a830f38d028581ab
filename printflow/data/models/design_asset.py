# printflow/data/models/design_asset.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.orm import relationship

from printflow.data.database import Base


class DesignAssetModel(Base):
    """Output of one generation run. Rows are never updated."""

    __tablename__ = "design_assets"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    session_id = Column(String(36), ForeignKey("design_sessions.id"), nullable=False, index=True)

    preview_url = Column(String(1024), nullable=False)
    mockup_urls = Column(JSON, nullable=False, default=list)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    session = relationship("DesignSessionModel", back_populates="assets")
