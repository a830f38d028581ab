# printflow/data/models/design_session.py
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text
from sqlalchemy.orm import relationship

from printflow.data.database import Base


def _now():
    return datetime.now(timezone.utc)


class DesignSessionModel(Base):
    __tablename__ = "design_sessions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String(64), nullable=True, index=True)

    prompt = Column(Text, nullable=False)
    style_hints = Column(JSON, nullable=False, default=list)
    locale = Column(String(16), nullable=False, default="en")

    stage = Column(String(32), nullable=False, default="queued", index=True)
    progress = Column(Integer, nullable=False, default=0)
    message = Column(String(255), nullable=True)
    error_code = Column(String(64), nullable=True)
    error_message = Column(String(255), nullable=True)

    job_handle = Column(String(128), nullable=True)
    # provider jobs restarted within the current stage
    job_attempts = Column(Integer, nullable=False, default=0)
    stage_started_at = Column(DateTime(timezone=True), nullable=True, default=_now)
    retry_count = Column(Integer, nullable=False, default=0)
    # every write bumps version, it doubles as the event sequence number
    version = Column(Integer, nullable=False, default=1)

    selected_asset_id = Column(String(36), nullable=True)
    product_slug = Column(String(128), nullable=True)
    variant_id = Column(Integer, nullable=True)

    consent_accepted = Column(Boolean, nullable=False, default=False)
    consent_accepted_at = Column(DateTime(timezone=True), nullable=True)
    approval_nonce = Column(String(36), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    approval_consumed_at = Column(DateTime(timezone=True), nullable=True)
    abandoned_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now)

    assets = relationship(
        "DesignAssetModel",
        back_populates="session",
        order_by="DesignAssetModel.created_at",
    )
