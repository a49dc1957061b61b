"""API routes"""

from app.api import integrations, reports, settings, sync, webhooks

__all__ = ["integrations", "reports", "settings", "sync", "webhooks"]
