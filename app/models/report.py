"""Bug report model (sync-relevant columns)"""

import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, Enum, Integer, String, Text

from app.models.base import Base, enum_values, new_id


class ReportStatus(str, enum.Enum):
    """Workflow status, owned by humans"""
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class ReportSyncStatus(str, enum.Enum):
    """Tracker sync state, owned by the sync engine"""
    NONE = "none"
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"


class Report(Base):
    """A bug report submitted through the widget"""

    __tablename__ = "reports"

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    priority = Column(String, default="medium")
    # JSON captured by the widget (page url, browser, console errors, ...)
    metadata_json = Column("metadata", Text, nullable=True)

    status = Column(
        Enum(ReportStatus, values_callable=enum_values),
        default=ReportStatus.OPEN,
        nullable=False,
    )
    # Stamped by human status edits only; the webhook guard compares it with synced_at.
    status_changed_at = Column(DateTime, nullable=True)

    sync_status = Column(
        Enum(ReportSyncStatus, values_callable=enum_values),
        default=ReportSyncStatus.NONE,
        nullable=False,
        index=True,
    )
    external_integration_id = Column(String, nullable=True, index=True)
    external_issue_number = Column(Integer, nullable=True)
    external_issue_url = Column(String, nullable=True)
    sync_error = Column(Text, nullable=True)
    synced_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def has_external_ref(self) -> bool:
        return self.external_issue_number is not None

    def __repr__(self):
        return f"<Report(id='{self.id}', status={self.status}, sync_status={self.sync_status})>"
