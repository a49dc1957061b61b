"""System-wide key/value settings"""

from datetime import datetime

from sqlalchemy import Column, DateTime, String, Text

from app.models.base import Base


class SystemSetting(Base):
    """Runtime-editable setting (e.g. the public app URL)"""

    __tablename__ = "system_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<SystemSetting(key='{self.key}')>"
