"""Services"""

from app.services.connection_check import ConnectionChecker
from app.services.forwarder import Forwarder, ForwardResult
from app.services.reconciler import WebhookReconciler
from app.services.sync_engine import SyncEngine, get_sync_engine, sync_engine
from app.services.sync_mode import SyncModeController
from app.services.sync_queue import SyncQueue
from app.services.sync_worker import SyncWorker

__all__ = [
    "ConnectionChecker",
    "Forwarder",
    "ForwardResult",
    "SyncEngine",
    "SyncModeController",
    "SyncQueue",
    "SyncWorker",
    "WebhookReconciler",
    "get_sync_engine",
    "sync_engine",
]
