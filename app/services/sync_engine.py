"""Wiring of the sync engine components"""

from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.config import Settings, settings as default_settings
from app.models.base import SessionLocal, utcnow
from app.services.connection_check import ConnectionChecker
from app.services.forwarder import Forwarder
from app.services.integration_store import IntegrationConfig
from app.services.queue_store import QueueStore, SqlAlchemyQueueStore
from app.services.rate_limit import RateLimitTracker
from app.services.reconciler import WebhookReconciler
from app.services.report_hooks import ReportHooks
from app.services.status_projection import StatusProjection
from app.services.sync_mode import SyncModeController
from app.services.sync_queue import SyncQueue
from app.services.sync_worker import SyncWorker
from app.services.trackers.base import IssueTrackerClient, build_tracker_client


class SyncEngine:
    """All sync components sharing one session factory, queue store and clock."""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        config: Optional[Settings] = None,
        store: Optional[QueueStore] = None,
        client_factory: Callable[[IntegrationConfig], IssueTrackerClient] = build_tracker_client,
        clock: Callable = utcnow,
    ):
        config = config or default_settings
        self.settings = config
        self.session_factory = session_factory
        self.store = store if store is not None else SqlAlchemyQueueStore(session_factory)
        self.rate_limits = RateLimitTracker(
            reserve=config.sync_rate_limit_reserve,
            min_interval_seconds=config.sync_min_call_interval_seconds,
        )
        self.queue = SyncQueue(session_factory, self.store, clock=clock)
        self.forwarder = Forwarder(
            session_factory, client_factory=client_factory, rate_limits=self.rate_limits, clock=clock
        )
        self.worker = SyncWorker(
            session_factory,
            self.queue,
            self.forwarder,
            self.rate_limits,
            max_concurrent=config.sync_max_concurrent,
            max_attempts=config.sync_max_attempts,
            base_delay_seconds=config.sync_retry_base_seconds,
            max_delay_seconds=config.sync_retry_max_delay_seconds,
            clock=clock,
        )
        self.sync_mode = SyncModeController(session_factory, client_factory=client_factory)
        self.connections = ConnectionChecker(session_factory, client_factory=client_factory)
        self.reconciler = WebhookReconciler(session_factory, clock=clock)
        self.projection = StatusProjection(session_factory, self.queue)
        self.hooks = ReportHooks(session_factory, self.queue, clock=clock)

    def purge_webhook_events(self) -> int:
        return self.reconciler.purge_expired(self.settings.webhook_event_retention_hours)


sync_engine = SyncEngine()


def get_sync_engine() -> SyncEngine:
    """FastAPI dependency; overridden in tests."""
    return sync_engine
