"""Forward a single report to its integration's issue tracker"""

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from app.models import Integration, Report, SyncLog
from app.models.base import utcnow
from app.models.report import ReportSyncStatus
from app.models.sync_log import SyncDirection, SyncStatus
from app.models.sync_queue_entry import SyncAction
from app.services.app_settings import get_app_url
from app.services.errors import IntegrationUnavailableError
from app.services.integration_store import IntegrationConfig, IntegrationStore
from app.services.issue_body import ReportSnapshot, build_issue_payload
from app.services.rate_limit import RateLimitTracker
from app.services.trackers.base import IssueRef, IssueTrackerClient, build_tracker_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ForwardResult:
    type: str
    external_id: str
    url: str
    action: SyncAction


def check_usable(config: IntegrationConfig, project_id: str) -> None:
    """Reject integrations that can never accept this report."""
    if not config.is_active:
        raise IntegrationUnavailableError("Integration is disabled")
    if config.project_id != project_id:
        raise IntegrationUnavailableError("Integration does not belong to this project")


class Forwarder:
    """Creates or updates the tracker issue for one report.

    The caller (queue worker or the direct forward endpoint) must already hold
    the report's active queue entry; that is what keeps two forwards of the
    same report from running at once.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        client_factory: Callable[[IntegrationConfig], IssueTrackerClient] = build_tracker_client,
        rate_limits: Optional[RateLimitTracker] = None,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.rate_limits = rate_limits
        self.clock = clock

    def snapshot(self, report_id: str) -> ReportSnapshot:
        db = self.session_factory()
        try:
            report = db.query(Report).filter(Report.id == report_id).first()
            if not report:
                raise ValueError(f"Report {report_id} not found")
            return ReportSnapshot.from_model(report)
        finally:
            db.close()

    @staticmethod
    def _current_issue_number(db: Session, report_id: str) -> Optional[int]:
        # Fresh read, bypassing anything cached in the session.
        db.expire_all()
        row = db.query(Report.external_issue_number).filter(Report.id == report_id).first()
        return row[0] if row else None

    def forward(
        self,
        report_id: str,
        integration_id: str,
        *,
        labels: Optional[Iterable[str]] = None,
        assignees: Optional[Iterable[str]] = None,
        snapshot: Optional[ReportSnapshot] = None,
    ) -> ForwardResult:
        """Push the report to the tracker.

        Raises a TrackerError (or IntegrationUnavailableError) on failure; the
        report's sync status is left alone so the caller decides between
        retrying and marking it as errored.
        """
        if snapshot is None:
            snapshot = self.snapshot(report_id)

        db = self.session_factory()
        try:
            config = IntegrationStore(db).get_integration(integration_id)
            check_usable(config, snapshot.project_id)
            app_url = get_app_url(db)

            issue_number = self._current_issue_number(db, report_id)
            action = SyncAction.UPDATE if issue_number is not None else SyncAction.CREATE
            payload = build_issue_payload(
                snapshot,
                default_labels=config.labels,
                default_assignees=config.assignees,
                labels=labels,
                assignees=assignees,
                for_update=action == SyncAction.UPDATE,
                app_url=app_url,
            )

            client = self.client_factory(config)
            try:
                if action == SyncAction.UPDATE:
                    issue = client.update_issue(issue_number, payload)
                else:
                    issue = client.create_issue(payload)
            finally:
                if self.rate_limits is not None:
                    self.rate_limits.observe(integration_id, client.rate_limit, self.clock())
                client.close()

            self._record_success(db, report_id, integration_id, issue, action)
            return ForwardResult(
                type=config.type.value,
                external_id=str(issue.number),
                url=issue.url,
                action=action,
            )
        finally:
            db.close()

    def _record_success(
        self, db: Session, report_id: str, integration_id: str, issue: IssueRef, action: SyncAction
    ) -> None:
        """Report sync fields and integration usage change in one commit."""
        now = self.clock()
        report = db.query(Report).filter(Report.id == report_id).first()
        integration = db.query(Integration).filter(Integration.id == integration_id).first()

        if report is None:
            logger.warning(f"Report {report_id} disappeared while forwarding issue #{issue.number}")
        else:
            # Only sync-owned columns; `status` belongs to humans.
            report.sync_status = ReportSyncStatus.SYNCED
            report.external_integration_id = integration_id
            report.external_issue_number = issue.number
            report.external_issue_url = issue.url
            report.synced_at = now
            report.sync_error = None

        if integration is not None:
            integration.usage_count = (integration.usage_count or 0) + 1
            if integration.last_used_at is None or now > integration.last_used_at:
                integration.last_used_at = now

        db.add(
            SyncLog(
                integration_id=integration_id,
                report_id=report_id,
                issue_number=issue.number,
                status=SyncStatus.SUCCESS,
                direction=SyncDirection.OUTBOUND,
                message=f"{action.value.capitalize()}d issue #{issue.number}",
            )
        )
        db.commit()
        logger.info(f"Report {report_id} synced to issue #{issue.number} ({action.value})")
