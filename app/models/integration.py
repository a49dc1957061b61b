"""Issue tracker integration model"""

import enum
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Enum, Integer, String

from app.models.base import Base, enum_values, new_id


class TrackerType(str, enum.Enum):
    """Supported issue trackers"""
    GITHUB = "github"
    GITLAB = "gitlab"


class SyncMode(str, enum.Enum):
    """How new reports reach the tracker"""
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class Integration(Base):
    """A project's link to one repository on an issue tracker"""

    __tablename__ = "integrations"

    id = Column(String, primary_key=True, default=new_id)
    project_id = Column(String, nullable=False, index=True)
    type = Column(Enum(TrackerType, values_callable=enum_values), nullable=False)
    name = Column(String, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    sync_mode = Column(
        Enum(SyncMode, values_callable=enum_values),
        default=SyncMode.MANUAL,
        nullable=False,
    )

    # Tracker coordinates. For GitLab, `repo` holds the project id or path and
    # `base_url` the instance URL.
    owner = Column(String, nullable=True)
    repo = Column(String, nullable=False)
    base_url = Column(String, nullable=True)
    # Decrypted by the credential layer before it reaches us.
    access_token = Column(String, nullable=False)

    # Comma-separated defaults applied to every forwarded issue.
    labels = Column(String, nullable=True)
    assignees = Column(String, nullable=True)

    # Tracker-side webhook subscription (automatic mode only)
    webhook_id = Column(String, nullable=True)
    webhook_secret = Column(String, nullable=True)

    # Usage, advanced by the forwarder on success only
    usage_count = Column(Integer, default=0, nullable=False)
    last_used_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Integration(type={self.type}, repo='{self.repo}', sync_mode={self.sync_mode})>"
