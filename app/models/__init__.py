"""Database models"""

from app.models.base import Base
from app.models.integration import Integration
from app.models.report import Report
from app.models.sync_log import SyncLog
from app.models.sync_queue_entry import SyncQueueEntry
from app.models.system_setting import SystemSetting
from app.models.webhook_event import WebhookEvent

__all__ = [
    "Base",
    "Integration",
    "Report",
    "SyncQueueEntry",
    "WebhookEvent",
    "SyncLog",
    "SystemSetting",
]
