"""Sync queue: enqueue, bulk enqueue, cancel and retry"""

import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from sqlalchemy.orm import Session

from app.models import Report
from app.models.base import utcnow
from app.models.report import ReportSyncStatus
from app.models.sync_queue_entry import QueueState, SyncAction
from app.services.errors import SyncError
from app.services.forwarder import check_usable
from app.services.integration_store import IntegrationConfig, IntegrationStore
from app.services.queue_store import QueueEntry, QueueStore

logger = logging.getLogger(__name__)

ALL_REPORTS = "all"


class NotRetryableError(SyncError):
    """Retry requested for a report that isn't in the error state."""

    code = "NOT_RETRYABLE"
    status_code = 409


class SyncQueue:
    """Front door for queued forwards.

    All inserts go through :meth:`QueueStore.add_if_absent`, so a report never
    has more than one queued or processing entry no matter how many triggers
    fire at once.
    """

    def __init__(self, session_factory: Callable[[], Session], store: QueueStore, *, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.store = store
        self.clock = clock

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _get_report(db: Session, report_id: str) -> Report:
        report = db.query(Report).filter(Report.id == report_id).first()
        if not report:
            raise ValueError(f"Report {report_id} not found")
        return report

    def validate(self, report_id: str, integration_id: str) -> IntegrationConfig:
        """Raise unless the report can be forwarded to this integration."""
        db = self.session_factory()
        try:
            report = self._get_report(db, report_id)
            config = IntegrationStore(db).get_integration(integration_id)
            check_usable(config, report.project_id)
            return config
        finally:
            db.close()

    def mark_pending(self, report_ids: Iterable[str]) -> None:
        ids = list(report_ids)
        if not ids:
            return
        db = self.session_factory()
        try:
            db.query(Report).filter(Report.id.in_(ids)).update(
                {Report.sync_status: ReportSyncStatus.PENDING, Report.sync_error: None},
                synchronize_session=False,
            )
            db.commit()
        finally:
            db.close()

    # ------------------------------------------------------------------ enqueue

    def enqueue(
        self,
        report_id: str,
        integration_id: str,
        action: Optional[SyncAction] = None,
        batch_id: Optional[str] = None,
    ) -> Tuple[QueueEntry, bool]:
        """Queue a forward for the report; coalesces with an active entry."""
        db = self.session_factory()
        try:
            report = self._get_report(db, report_id)
            if action is None:
                action = SyncAction.UPDATE if report.has_external_ref else SyncAction.CREATE
        finally:
            db.close()

        entry, created = self.store.add_if_absent(
            report_id, integration_id, action, now=self.clock(), batch_id=batch_id
        )
        if created:
            self.mark_pending([report_id])
            logger.info(f"Queued {action.value} of report {report_id} for integration {integration_id}")
        else:
            logger.debug(f"Report {report_id} already has active entry {entry.id} ({entry.state.value})")
        return entry, created

    def enqueue_many(self, integration_id: str, report_ids: Union[List[str], str]) -> Dict:
        """Bulk enqueue, used by "sync existing reports".

        ``report_ids`` is a list of ids or ``"all"`` for every report of the
        integration's project that has never been synced.
        """
        db = self.session_factory()
        try:
            config = IntegrationStore(db).get_integration(integration_id)
            check_usable(config, config.project_id)
            query = db.query(Report.id).filter(Report.project_id == config.project_id)
            if report_ids == ALL_REPORTS:
                query = query.filter(Report.sync_status == ReportSyncStatus.NONE)
            else:
                query = query.filter(Report.id.in_(list(report_ids or [])))
            ids = [row[0] for row in query.order_by(Report.created_at, Report.id).all()]
        finally:
            db.close()

        batch_id = uuid.uuid4().hex
        queued = 0
        for report_id in ids:
            try:
                self.enqueue(report_id, integration_id, batch_id=batch_id)
            except ValueError:
                # Deleted between the listing and the enqueue.
                logger.warning(f"Skipping report {report_id}: no longer exists")
                continue
            queued += 1

        logger.info(f"Bulk sync for integration {integration_id}: {queued} reports (batch {batch_id})")
        return {"queued": queued, "batch_id": batch_id}

    def cancel_batch(self, batch_id: str) -> int:
        """Cancel not-yet-started entries of a batch; running ones finish."""
        cancelled = self.store.cancel_batch(batch_id, self.clock())
        if not cancelled:
            return 0

        db = self.session_factory()
        try:
            for entry in cancelled:
                report = db.query(Report).filter(Report.id == entry.report_id).first()
                if report is None or report.sync_status != ReportSyncStatus.PENDING:
                    continue
                report.sync_status = ReportSyncStatus.SYNCED if report.has_external_ref else ReportSyncStatus.NONE
            db.commit()
        finally:
            db.close()

        logger.info(f"Cancelled {len(cancelled)} queued entries of batch {batch_id}")
        return len(cancelled)

    def retry(self, report_id: str) -> QueueEntry:
        """Re-queue a report whose last sync failed, with a fresh retry budget."""
        db = self.session_factory()
        try:
            report = self._get_report(db, report_id)
            if report.sync_status != ReportSyncStatus.ERROR:
                raise NotRetryableError(f"Report sync status is {ReportSyncStatus(report.sync_status).value}")

            integration_id = None
            failed = self.store.latest_for_report(report_id, QueueState.FAILED)
            if failed is not None:
                integration_id = failed.integration_id
            elif report.external_integration_id:
                integration_id = report.external_integration_id
            else:
                integration = IntegrationStore(db).find_active_integration(report.project_id)
                if integration is not None:
                    integration_id = integration.id
            if integration_id is None:
                raise ValueError(f"No integration to retry report {report_id} against")
            project_id = report.project_id
        finally:
            db.close()

        db = self.session_factory()
        try:
            check_usable(IntegrationStore(db).get_integration(integration_id), project_id)
        finally:
            db.close()

        entry, _ = self.enqueue(report_id, integration_id)
        return entry

    def status(self, integration_id: str) -> Dict[str, Any]:
        """Waiting entries, and whether one is being forwarded right now."""
        active = self.store.list_active(integration_id)
        processing = sum(1 for e in active if e.state == QueueState.PROCESSING)
        return {"queue_length": len(active) - processing, "processing": processing > 0}
