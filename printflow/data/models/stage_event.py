# printflow/data/models/stage_event.py
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint

from printflow.data.database import Base


class StageEventModel(Base):
    __tablename__ = "stage_events"

    id = Column(Integer, primary_key=True)
    session_id = Column(String(36), ForeignKey("design_sessions.id"), nullable=False, index=True)
    seq = Column(Integer, nullable=False)

    stage = Column(String(32), nullable=False)
    progress = Column(Integer, nullable=False)
    message = Column(String(255), nullable=True)
    error_code = Column(String(64), nullable=True)
    attempt = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (UniqueConstraint("session_id", "seq", name="u_session_event_seq"),)
