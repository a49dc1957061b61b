"""Report lifecycle hooks that feed automatic sync"""

import logging
from typing import Callable, Optional

from sqlalchemy.orm import Session

from app.models import Report
from app.models.base import utcnow
from app.models.report import ReportStatus, ReportSyncStatus
from app.models.sync_queue_entry import SyncAction
from app.services.integration_store import IntegrationStore
from app.services.queue_store import QueueEntry
from app.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)


class ReportHooks:
    """Called by the report layer after writes.

    Hooks only enqueue; they never call a tracker and never fail the write that
    triggered them.
    """

    def __init__(self, session_factory: Callable[[], Session], queue: SyncQueue, *, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.queue = queue
        self.clock = clock

    def _automatic_integration_id(self, db: Session, project_id: str) -> Optional[str]:
        integration = IntegrationStore(db).find_automatic_integration(project_id)
        return integration.id if integration else None

    def on_report_created(self, report_id: str) -> Optional[QueueEntry]:
        db = self.session_factory()
        try:
            report = db.query(Report).filter(Report.id == report_id).first()
            if not report:
                return None
            integration_id = self._automatic_integration_id(db, report.project_id)
        finally:
            db.close()

        if integration_id is None:
            return None
        entry, _ = self.queue.enqueue(report_id, integration_id, SyncAction.CREATE)
        return entry

    def on_report_updated(self, report_id: str) -> Optional[QueueEntry]:
        """Push edits of an already-synced report to its issue."""
        db = self.session_factory()
        try:
            report = db.query(Report).filter(Report.id == report_id).first()
            if not report or not report.has_external_ref:
                return None
            if report.sync_status not in (ReportSyncStatus.SYNCED, ReportSyncStatus.PENDING):
                return None
            integration_id = self._automatic_integration_id(db, report.project_id)
            if integration_id is None or integration_id != report.external_integration_id:
                return None
        finally:
            db.close()

        entry, _ = self.queue.enqueue(report_id, integration_id, SyncAction.UPDATE)
        return entry

    def update_status(self, report_id: str, status: ReportStatus) -> Report:
        """Human status edit: stamps status_changed_at, then fires the update hook."""
        status = ReportStatus(status)
        db = self.session_factory()
        try:
            report = db.query(Report).filter(Report.id == report_id).first()
            if not report:
                raise ValueError(f"Report {report_id} not found")
            if report.status != status:
                report.status = status
                report.status_changed_at = self.clock()
                db.commit()
                logger.info(f"Report {report_id} status set to {status.value}")
            db.refresh(report)
            db.expunge(report)
        finally:
            db.close()

        self.on_report_updated(report_id)
        return report
