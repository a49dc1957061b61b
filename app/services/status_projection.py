"""Read-only sync status views for the admin UI"""

from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from app.models import Report
from app.models.integration import SyncMode
from app.models.report import ReportSyncStatus
from app.services.integration_store import IntegrationStore
from app.services.sync_mode import count_unsynced
from app.services.sync_queue import SyncQueue


class StatusProjection:
    def __init__(self, session_factory: Callable[[], Session], queue: SyncQueue):
        self.session_factory = session_factory
        self.queue = queue

    def get_sync_status(self, integration_id: str) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            integration = IntegrationStore(db).get_model(integration_id)
            sync_mode = SyncMode(integration.sync_mode or SyncMode.MANUAL)
            unsynced = count_unsynced(db, integration.project_id)
        finally:
            db.close()

        status = self.queue.status(integration_id)
        return {
            "sync_mode": sync_mode,
            "unsynced_count": unsynced,
            "queue_length": status["queue_length"],
            "processing": status["processing"],
        }

    def get_report_sync_status(self, report_id: str) -> Dict[str, Any]:
        """Sync status of one report; optional keys appear only when set."""
        db = self.session_factory()
        try:
            report = db.query(Report).filter(Report.id == report_id).first()
            if not report:
                raise ValueError(f"Report {report_id} not found")

            result: Dict[str, Any] = {"status": ReportSyncStatus(report.sync_status)}
            if report.has_external_ref:
                result["external_ref"] = {
                    "integration_id": report.external_integration_id,
                    "id": str(report.external_issue_number),
                    "url": report.external_issue_url,
                }
            if report.sync_error:
                result["error"] = report.sync_error
            if report.synced_at:
                result["synced_at"] = report.synced_at
            return result
        finally:
            db.close()
