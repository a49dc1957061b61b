"""Queue worker: claims due entries and forwards them with bounded retries"""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.models import Report, SyncLog
from app.models.base import utcnow
from app.models.report import ReportSyncStatus
from app.models.sync_log import SyncDirection, SyncStatus
from app.models.sync_queue_entry import QueueState, SyncAction
from app.services.errors import ForwardInProgressError, RetryableTransportError, is_retryable
from app.services.forwarder import Forwarder, ForwardResult
from app.services.queue_store import QueueEntry
from app.services.rate_limit import RateLimitTracker
from app.services.sync_queue import SyncQueue

logger = logging.getLogger(__name__)

# Outcomes of a single attempt
SUCCEEDED = "succeeded"
RETRY_SCHEDULED = "retry_scheduled"
FAILED = "failed"


class SyncWorker:
    """Drains the sync queue.

    At most one entry per integration is processing at any time and entries of
    an integration leave the queue in FIFO order; different integrations run
    in parallel up to ``max_concurrent``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: SyncQueue,
        forwarder: Forwarder,
        rate_limits: RateLimitTracker,
        *,
        max_concurrent: int = 3,
        max_attempts: int = 3,
        base_delay_seconds: float = 1.0,
        max_delay_seconds: float = 60.0,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.store = queue.store
        self.forwarder = forwarder
        self.rate_limits = rate_limits
        self.max_concurrent = max(1, max_concurrent)
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay_seconds
        self.max_delay = max_delay_seconds
        self.clock = clock

    def backoff_seconds(self, attempts: int, retry_after: Optional[float] = None) -> float:
        delay = min(self.base_delay * (2 ** max(0, attempts - 1)), self.max_delay)
        if retry_after:
            delay = max(delay, retry_after)
        return delay

    def recover(self) -> int:
        """Requeue entries a previous process left in processing."""
        return self.store.requeue_stale_processing(self.clock())

    # ------------------------------------------------------------------ draining

    def _busy(self, integration_id: str) -> bool:
        # Direct forwards hold a processing entry that is not necessarily the head.
        return any(e.state == QueueState.PROCESSING for e in self.store.list_active(integration_id))

    def _claim_ready(self) -> List[QueueEntry]:
        now = self.clock()
        claimed: List[QueueEntry] = []
        for integration_id in self.store.integrations_with_work():
            if len(claimed) >= self.max_concurrent:
                break
            if self._busy(integration_id):
                continue
            head = self.store.head(integration_id)
            if head is None or head.state != QueueState.QUEUED:
                continue
            if head.next_attempt_at and head.next_attempt_at > now:
                continue
            if not self.rate_limits.ready(integration_id, now):
                logger.debug(f"Integration {integration_id} throttled; leaving its queue for later")
                continue
            if self.store.claim(head.id, now):
                claimed.append(self.store.get(head.id))
        return claimed

    def _run(self, entries: Iterable[QueueEntry]) -> List[str]:
        entries = list(entries)
        if self.max_concurrent == 1 or len(entries) == 1:
            return [self._process(entry) for entry in entries]
        with ThreadPoolExecutor(max_workers=self.max_concurrent, thread_name_prefix="sync-worker") as pool:
            futures = [pool.submit(self._process, entry) for entry in entries]
            return [future.result() for future in futures]

    def drain(self) -> Dict[str, int]:
        """Process everything that is ready right now.

        Returns counts per outcome. Entries still waiting on backoff or a rate
        limit window are left queued for a later drain.
        """
        stats = {"processed": 0, SUCCEEDED: 0, RETRY_SCHEDULED: 0, FAILED: 0}
        while True:
            entries = self._claim_ready()
            if not entries:
                break
            for outcome in self._run(entries):
                stats["processed"] += 1
                stats[outcome] += 1
        if stats["processed"]:
            logger.info(
                f"Sync drain: {stats[SUCCEEDED]} synced, {stats[RETRY_SCHEDULED]} retrying, {stats[FAILED]} failed"
            )
        return stats

    def _process(self, entry: QueueEntry) -> str:
        """Run one claimed entry. Never raises: every error ends in an outcome."""
        try:
            return self._attempt(entry)
        except Exception as exc:
            try:
                return self._handle_failure(entry, exc)
            except Exception as e:
                # Entry stays processing until recover() runs at the next start.
                logger.exception(f"Could not record failure of queue entry {entry.id}: {e}")
                return FAILED

    def _attempt(self, entry: QueueEntry) -> str:
        try:
            snapshot = self.forwarder.snapshot(entry.report_id)
        except ValueError:
            logger.warning(f"Report {entry.report_id} was deleted; dropping queue entry {entry.id}")
            self.store.update(
                entry.id,
                state=QueueState.CANCELLED,
                finished_at=self.clock(),
                last_error="Report no longer exists",
            )
            return FAILED

        self.forwarder.forward(entry.report_id, entry.integration_id, snapshot=snapshot)
        self.store.update(
            entry.id,
            state=QueueState.DONE,
            attempts=entry.attempts + 1,
            finished_at=self.clock(),
            last_error=None,
        )
        return SUCCEEDED


    # ------------------------------------------------------------------ failures

    def _handle_failure(self, entry: QueueEntry, exc: Exception) -> str:
        attempts = entry.attempts + 1
        message = str(exc) or exc.__class__.__name__

        if not is_retryable(exc):
            logger.error(f"Sync of report {entry.report_id} failed permanently: {message}")
            self._fail(entry, attempts, message)
            return FAILED

        if attempts >= self.max_attempts:
            logger.error(f"Sync of report {entry.report_id} gave up after {attempts} attempts: {message}")
            self._fail(entry, attempts, f"Failed after {attempts} attempts: {message}")
            return FAILED

        now = self.clock()
        retry_after = exc.retry_after if isinstance(exc, RetryableTransportError) else None
        delay = self.backoff_seconds(attempts, retry_after)
        if retry_after:
            self.rate_limits.defer(entry.integration_id, now + timedelta(seconds=retry_after))
        self.store.update(
            entry.id,
            state=QueueState.QUEUED,
            attempts=attempts,
            last_error=message,
            next_attempt_at=now + timedelta(seconds=delay),
        )
        logger.warning(
            f"Sync of report {entry.report_id} failed (attempt {attempts}/{self.max_attempts}), "
            f"retrying in {delay:.1f}s: {message}"
        )
        return RETRY_SCHEDULED

    def _fail(self, entry: QueueEntry, attempts: int, message: str) -> None:
        self.store.update(
            entry.id,
            state=QueueState.FAILED,
            attempts=attempts,
            last_error=message,
            finished_at=self.clock(),
        )
        db = self.session_factory()
        try:
            report = db.query(Report).filter(Report.id == entry.report_id).first()
            if report is not None:
                report.sync_status = ReportSyncStatus.ERROR
                report.sync_error = message
            db.add(
                SyncLog(
                    integration_id=entry.integration_id,
                    report_id=entry.report_id,
                    status=SyncStatus.FAILED,
                    direction=SyncDirection.OUTBOUND,
                    message=message,
                )
            )
            db.commit()
        finally:
            db.close()

    # ------------------------------------------------------------------ direct forward

    def forward_now(
        self,
        report_id: str,
        integration_id: str,
        *,
        labels: Optional[Iterable[str]] = None,
        assignees: Optional[Iterable[str]] = None,
    ) -> ForwardResult:
        """Forward immediately, outside the scheduler.

        The report is claimed through the same enqueue guard as queued work,
        so a direct forward and a queued one can never create two issues.
        """
        self.queue.validate(report_id, integration_id)

        db = self.session_factory()
        try:
            report = db.query(Report).filter(Report.id == report_id).first()
            action = SyncAction.UPDATE if report is not None and report.has_external_ref else SyncAction.CREATE
        finally:
            db.close()

        entry, created = self.store.add_if_absent(
            report_id, integration_id, action, now=self.clock(), state=QueueState.PROCESSING
        )
        if not created:
            raise ForwardInProgressError("A sync for this report is already queued or in progress")
        self.queue.mark_pending([report_id])

        try:
            result = self.forwarder.forward(report_id, integration_id, labels=labels, assignees=assignees)
        except Exception as exc:
            outcome = self._handle_failure(entry, exc)
            exc.retry_queued = outcome == RETRY_SCHEDULED
            raise

        self.store.update(
            entry.id,
            state=QueueState.DONE,
            attempts=1,
            finished_at=self.clock(),
            last_error=None,
        )
        return result
