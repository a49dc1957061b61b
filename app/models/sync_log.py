"""Sync log model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum
from datetime import datetime
import enum
from app.models.base import Base, enum_values


class SyncStatus(str, enum.Enum):
    """Sync status enumeration"""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncDirection(str, enum.Enum):
    """Sync direction enumeration"""
    OUTBOUND = "outbound"  # report -> tracker issue
    INBOUND = "inbound"  # tracker webhook -> report status


class SyncLog(Base):
    """Log of sync operations"""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    integration_id = Column(String, nullable=False, index=True)
    report_id = Column(String, nullable=True, index=True)
    issue_number = Column(Integer, nullable=True)

    # Sync details
    status = Column(Enum(SyncStatus, values_callable=enum_values), nullable=False)
    direction = Column(Enum(SyncDirection, values_callable=enum_values), nullable=True)
    message = Column(Text, nullable=True)

    # Timestamp
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<SyncLog(status={self.status}, direction={self.direction})>"
