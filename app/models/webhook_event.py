"""Processed webhook deliveries (dedup window)"""
from sqlalchemy import Column, Integer, String, DateTime
from datetime import datetime
from app.models.base import Base


class WebhookEvent(Base):
    """A tracker delivery we've already consumed"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)

    # Tracker delivery id (X-GitHub-Delivery / X-Gitlab-Event-UUID)
    event_id = Column(String, unique=True, nullable=False)
    integration_id = Column(String, nullable=False, index=True)
    issue_number = Column(Integer, nullable=True)
    action = Column(String, nullable=True)

    received_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<WebhookEvent(event_id='{self.event_id}', action={self.action})>"
