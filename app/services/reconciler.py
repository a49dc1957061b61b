"""Inbound tracker webhooks: apply closed/reopened issue events to reports"""

import hashlib
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import Integration, Report, SyncLog, WebhookEvent
from app.models.base import utcnow
from app.models.integration import SyncMode, TrackerType
from app.models.report import ReportStatus
from app.models.sync_log import SyncDirection, SyncStatus
from app.services.errors import DuplicateEventError
from app.services.trackers.base import TrackerEvent, TrackerEventKind, WebhookDelivery, get_client_class

logger = logging.getLogger(__name__)

APPLIED = "applied"
IGNORED = "ignored"
DUPLICATE = "duplicate"
REJECTED = "rejected"

_DONE_STATUSES = (ReportStatus.RESOLVED, ReportStatus.CLOSED)


def next_status(current: ReportStatus, kind: TrackerEventKind) -> Optional[ReportStatus]:
    """Report status after a tracker event, or None when nothing changes."""
    if kind == TrackerEventKind.CLOSED and current not in _DONE_STATUSES:
        return ReportStatus.RESOLVED
    if kind == TrackerEventKind.REOPENED and current in _DONE_STATUSES:
        return ReportStatus.OPEN
    return None


class WebhookReconciler:
    """Turns verified tracker events into report status changes.

    Only the report's ``status`` is ever written here. Integration and queue
    state are left alone, and nothing is enqueued, so an inbound change can't
    bounce back out to the tracker.
    """

    def __init__(self, session_factory: Callable[[], Session], *, clock: Callable = utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def handle_event(
        self,
        integration_id: str,
        delivery: WebhookDelivery,
        tracker_type: Optional[TrackerType] = None,
    ) -> str:
        db = self.session_factory()
        try:
            integration = db.query(Integration).filter(Integration.id == integration_id).first()
            if not integration:
                logger.warning(f"Webhook for unknown integration {integration_id} rejected")
                return REJECTED
            if tracker_type is not None and TrackerType(integration.type) != TrackerType(tracker_type):
                logger.warning(f"Webhook for integration {integration_id} arrived on the wrong tracker path")
                return REJECTED
            if not integration.webhook_secret:
                logger.warning(f"Webhook for integration {integration_id} rejected: no secret configured")
                return REJECTED

            client_cls = get_client_class(TrackerType(integration.type))
            if not client_cls.verify_signature(integration.webhook_secret, delivery):
                logger.warning(f"Webhook for integration {integration_id} rejected: invalid signature")
                return REJECTED

            try:
                event = client_cls.parse_event(delivery)
            except (TypeError, ValueError) as e:
                logger.warning(f"Webhook for integration {integration_id} rejected: {e}")
                return REJECTED

            if event.kind == TrackerEventKind.PING:
                logger.info(f"Webhook ping received for integration {integration_id}")
                return IGNORED
            if integration.sync_mode != SyncMode.AUTOMATIC:
                logger.debug(f"Integration {integration_id} is in manual mode; ignoring webhook")
                return IGNORED

            try:
                return self._apply(db, integration_id, event, delivery)
            except DuplicateEventError:
                logger.info(f"Duplicate webhook delivery {event.event_id} for integration {integration_id}")
                return DUPLICATE
        finally:
            db.close()

    def _record_delivery(self, db: Session, integration_id: str, event: TrackerEvent, delivery: WebhookDelivery):
        event_id = event.event_id or hashlib.sha256(delivery.raw_body or b"").hexdigest()
        db.add(
            WebhookEvent(
                event_id=f"{integration_id}:{event_id}",
                integration_id=integration_id,
                issue_number=event.issue_number,
                action=event.action,
                received_at=self.clock(),
            )
        )
        try:
            db.flush()
        except IntegrityError as e:
            db.rollback()
            raise DuplicateEventError(f"Delivery {event_id} already processed") from e

    def _commit(self, db: Session) -> None:
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            raise DuplicateEventError("Delivery already processed") from e

    def _apply(self, db: Session, integration_id: str, event: TrackerEvent, delivery: WebhookDelivery) -> str:
        # Dedup row and status change share one transaction.
        self._record_delivery(db, integration_id, event, delivery)

        if event.kind not in (TrackerEventKind.CLOSED, TrackerEventKind.REOPENED) or event.issue_number is None:
            self._commit(db)
            return IGNORED

        report = (
            db.query(Report)
            .filter(
                Report.external_integration_id == integration_id,
                Report.external_issue_number == event.issue_number,
            )
            .first()
        )
        if report is None:
            self._commit(db)
            logger.debug(f"No report linked to issue #{event.issue_number} of integration {integration_id}")
            return IGNORED

        # A human status edit after our last sync wins over the tracker.
        if report.status_changed_at and report.synced_at and report.status_changed_at > report.synced_at:
            self._commit(db)
            logger.info(
                f"Ignoring {event.kind.value} for report {report.id}: status was changed locally after last sync"
            )
            return IGNORED

        current = ReportStatus(report.status)
        new_status = next_status(current, event.kind)
        if new_status is None:
            self._commit(db)
            return IGNORED

        report.status = new_status
        db.add(
            SyncLog(
                integration_id=integration_id,
                report_id=report.id,
                issue_number=event.issue_number,
                status=SyncStatus.SUCCESS,
                direction=SyncDirection.INBOUND,
                message=f"Issue {event.kind.value}: {current.value} -> {new_status.value}",
            )
        )
        self._commit(db)
        logger.info(f"Report {report.id} moved {current.value} -> {new_status.value} from issue #{event.issue_number}")
        return APPLIED

    def purge_expired(self, retention_hours: int, now: Optional[datetime] = None) -> int:
        """Drop dedup rows older than the retention window."""
        cutoff = (now or self.clock()) - timedelta(hours=retention_hours)
        db = self.session_factory()
        try:
            deleted = db.query(WebhookEvent).filter(WebhookEvent.received_at < cutoff).delete(synchronize_session=False)
            db.commit()
            if deleted:
                logger.info(f"Purged {deleted} expired webhook delivery records")
            return deleted
        finally:
            db.close()
