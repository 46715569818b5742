"""Sync log model for tracking bulk sync passes."""

from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from fieldsync.core.database import Base


class SyncLog(Base):
    """Log of non-silent sync passes."""

    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String, nullable=False)  # "all", "manual", "reconnect"
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False)  # "success", "failed", "offline"
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
