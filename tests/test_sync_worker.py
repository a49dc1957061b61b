import logging
import unittest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from app.models import Integration, Report, SyncLog
from app.models.report import ReportStatus, ReportSyncStatus
from app.models.sync_log import SyncStatus
from app.models.sync_queue_entry import QueueState, SyncAction
from app.services.errors import (
    ForwardInProgressError,
    IntegrationUnavailableError,
    RetryableTransportError,
    TerminalTrackerError,
)
from app.services.trackers.base import RateLimitInfo
from tests.support import FakeTracker, FixedClock, add_integration, add_report, load, make_engine, make_session_factory

logging.disable(logging.CRITICAL)


class TickingTracker(FakeTracker):
    """Runs ``on_create`` once, in the middle of the next create call."""

    def __init__(self):
        super().__init__()
        self.on_create = None

    def create_issue(self, payload):
        callback, self.on_create = self.on_create, None
        if callback is not None:
            callback()
        return super().create_issue(payload)


class SyncWorkerTests(unittest.TestCase):
    def setUp(self):
        self.sf = make_session_factory()
        self.integration_id = add_integration(self.sf, labels="bug", assignees="octocat")

    def _engine(self, tracker=None, **settings):
        engine, tracker = make_engine(self.sf, tracker=tracker, **settings)
        return engine, tracker

    def test_drain_creates_issue_and_links_report(self):
        engine, tracker = self._engine()
        report_id = add_report(self.sf)
        engine.queue.enqueue(report_id, self.integration_id)

        stats = engine.worker.drain()

        self.assertEqual(stats["succeeded"], 1)
        self.assertEqual(len(tracker.created), 1)
        self.assertEqual(tracker.created[0].labels, ("bug",))
        self.assertEqual(tracker.created[0].assignees, ("octocat",))
        report = load(self.sf, Report, report_id)
        self.assertEqual(report.sync_status, ReportSyncStatus.SYNCED)
        self.assertEqual(report.external_integration_id, self.integration_id)
        self.assertEqual(report.external_issue_number, 101)
        self.assertIsNotNone(report.synced_at)
        self.assertIsNone(report.sync_error)
        integration = load(self.sf, Integration, self.integration_id)
        self.assertEqual(integration.usage_count, 1)
        self.assertIsNotNone(integration.last_used_at)
        self.assertEqual(engine.queue.status(self.integration_id), {"queue_length": 0, "processing": False})

    def test_many_triggers_produce_a_single_issue(self):
        engine, tracker = self._engine()
        report_id = add_report(self.sf)

        for _ in range(5):
            engine.queue.enqueue(report_id, self.integration_id)
        with self.assertRaises(ForwardInProgressError):
            engine.worker.forward_now(report_id, self.integration_id)
        engine.worker.drain()

        self.assertEqual(len(tracker.created), 1)
        self.assertEqual(tracker.updated, [])

    def test_second_sync_of_linked_report_updates(self):
        engine, tracker = self._engine()
        report_id = add_report(self.sf, status=ReportStatus.RESOLVED)
        engine.queue.enqueue(report_id, self.integration_id)
        engine.worker.drain()

        engine.queue.enqueue(report_id, self.integration_id)
        engine.worker.drain()

        self.assertEqual(len(tracker.created), 1)
        self.assertEqual(len(tracker.updated), 1)
        number, payload = tracker.updated[0]
        self.assertEqual(number, 101)
        self.assertEqual(payload.state, "closed")

    def test_retries_exhausted_marks_report_error(self):
        tracker = FakeTracker(failures=[RetryableTransportError("GitHub API error: HTTP 502", status=502)] * 3)
        engine, _ = self._engine(tracker)
        report_id = add_report(self.sf)
        entry, _ = engine.queue.enqueue(report_id, self.integration_id)

        stats = engine.worker.drain()

        self.assertEqual(tracker.calls, 3)
        self.assertEqual(stats["retry_scheduled"], 2)
        self.assertEqual(stats["failed"], 1)
        report = load(self.sf, Report, report_id)
        self.assertEqual(report.sync_status, ReportSyncStatus.ERROR)
        self.assertEqual(report.sync_error, "Failed after 3 attempts: GitHub API error: HTTP 502")
        self.assertEqual(report.status, ReportStatus.OPEN)
        finished = engine.store.get(entry.id)
        self.assertEqual(finished.state, QueueState.FAILED)
        self.assertEqual(finished.attempts, 3)

    def test_recovers_after_transient_failure(self):
        tracker = FakeTracker(failures=[RetryableTransportError("reset")])
        engine, _ = self._engine(tracker)
        report_id = add_report(self.sf)
        engine.queue.enqueue(report_id, self.integration_id)

        engine.worker.drain()

        self.assertEqual(tracker.calls, 2)
        self.assertEqual(load(self.sf, Report, report_id).sync_status, ReportSyncStatus.SYNCED)

    def test_terminal_error_fails_without_retry(self):
        tracker = FakeTracker(failures=[TerminalTrackerError("Repository not found or no access", status=404)])
        engine, _ = self._engine(tracker)
        report_id = add_report(self.sf)
        engine.queue.enqueue(report_id, self.integration_id)

        stats = engine.worker.drain()

        self.assertEqual(tracker.calls, 1)
        self.assertEqual(stats["failed"], 1)
        report = load(self.sf, Report, report_id)
        self.assertEqual(report.sync_status, ReportSyncStatus.ERROR)
        self.assertEqual(report.sync_error, "Repository not found or no access")
        db = self.sf()
        try:
            log = db.query(SyncLog).filter(SyncLog.report_id == report_id).one()
            self.assertEqual(log.status, SyncStatus.FAILED)
        finally:
            db.close()

    def test_unexpected_exception_gets_retry_budget(self):
        tracker = FakeTracker(failures=[RuntimeError("weird")])
        engine, _ = self._engine(tracker)
        report_id = add_report(self.sf)
        engine.queue.enqueue(report_id, self.integration_id)

        engine.worker.drain()

        self.assertEqual(tracker.calls, 2)
        self.assertEqual(load(self.sf, Report, report_id).sync_status, ReportSyncStatus.SYNCED)

    def test_database_error_before_forward_is_retried(self):
        engine, tracker = self._engine()
        report_id = add_report(self.sf)
        entry, _ = engine.queue.enqueue(report_id, self.integration_id)
        real_snapshot = engine.forwarder.snapshot
        calls = []

        def flaky_snapshot(rid):
            calls.append(rid)
            if len(calls) == 1:
                raise OperationalError("SELECT reports", {}, Exception("database is locked"))
            return real_snapshot(rid)

        engine.forwarder.snapshot = flaky_snapshot

        stats = engine.worker.drain()

        self.assertEqual(stats["retry_scheduled"], 1)
        self.assertEqual(stats["succeeded"], 1)
        self.assertEqual(engine.store.get(entry.id).state, QueueState.DONE)
        self.assertEqual(load(self.sf, Report, report_id).sync_status, ReportSyncStatus.SYNCED)

    def test_failure_while_recording_failure_does_not_abort_drain(self):
        tracker = FakeTracker(failures=[RuntimeError("weird")])
        engine, _ = self._engine(tracker)
        stuck = add_report(self.sf)
        entry, _ = engine.queue.enqueue(stuck, self.integration_id)
        other_integration = add_integration(self.sf, name="Second")
        other = add_report(self.sf)
        engine.queue.enqueue(other, other_integration)

        with patch.object(engine.worker, "_handle_failure", side_effect=RuntimeError("database is gone")):
            stats = engine.worker.drain()

        self.assertEqual(stats["failed"], 1)
        self.assertEqual(stats["succeeded"], 1)
        self.assertEqual(load(self.sf, Report, other).sync_status, ReportSyncStatus.SYNCED)
        # Left for recover() at the next start.
        self.assertEqual(engine.store.get(entry.id).state, QueueState.PROCESSING)

    def test_inactive_integration_fails_entry(self):
        engine, tracker = self._engine()
        report_id = add_report(self.sf)
        engine.queue.enqueue(report_id, self.integration_id)
        db = self.sf()
        db.query(Integration).filter(Integration.id == self.integration_id).update({Integration.is_active: False})
        db.commit()
        db.close()

        engine.worker.drain()

        self.assertEqual(tracker.calls, 0)
        self.assertEqual(load(self.sf, Report, report_id).sync_status, ReportSyncStatus.ERROR)

    def test_bulk_all_reaches_terminal_state(self):
        tracker = FakeTracker(failures=[TerminalTrackerError("Issues are disabled", status=410)])
        engine, _ = self._engine(tracker)
        report_ids = [add_report(self.sf, title=f"Report {i}") for i in range(5)]

        result = engine.queue.enqueue_many(self.integration_id, "all")
        engine.worker.drain()

        self.assertEqual(result["queued"], 5)
        statuses = [load(self.sf, Report, rid).sync_status for rid in report_ids]
        self.assertTrue(all(s in (ReportSyncStatus.SYNCED, ReportSyncStatus.ERROR) for s in statuses))
        self.assertEqual(statuses.count(ReportSyncStatus.ERROR), 1)
        self.assertEqual(engine.queue.status(self.integration_id), {"queue_length": 0, "processing": False})

    def test_deleted_report_entry_is_dropped(self):
        engine, tracker = self._engine()
        report_id = add_report(self.sf)
        entry, _ = engine.queue.enqueue(report_id, self.integration_id)
        db = self.sf()
        db.query(Report).filter(Report.id == report_id).delete()
        db.commit()
        db.close()

        engine.worker.drain()

        self.assertEqual(tracker.calls, 0)
        self.assertEqual(engine.store.get(entry.id).state, QueueState.CANCELLED)

    def test_recover_requeues_orphaned_processing_entries(self):
        engine, tracker = self._engine()
        report_id = add_report(self.sf)
        entry, _ = engine.queue.enqueue(report_id, self.integration_id)
        engine.store.claim(entry.id, engine.queue.clock())

        self.assertEqual(engine.worker.drain()["processed"], 0)
        self.assertEqual(engine.worker.recover(), 1)
        engine.worker.drain()

        self.assertEqual(len(tracker.created), 1)


class SchedulingTests(unittest.TestCase):
    """Backoff, FIFO order and rate limiting, driven by a fixed clock."""

    def setUp(self):
        self.sf = make_session_factory()
        self.clock = FixedClock()
        self.integration_id = add_integration(self.sf)

    def _engine(self, tracker=None, **settings):
        settings.setdefault("sync_retry_base_seconds", 2)
        settings.setdefault("sync_retry_max_delay_seconds", 60)
        return make_engine(self.sf, tracker=tracker, clock=self.clock, **settings)

    def test_backoff_is_exponential_and_capped(self):
        engine, _ = self._engine(sync_retry_base_seconds=1, sync_retry_max_delay_seconds=5)
        worker = engine.worker

        self.assertEqual([worker.backoff_seconds(n) for n in (1, 2, 3, 4)], [1, 2, 4, 5])
        self.assertEqual(worker.backoff_seconds(1, retry_after=30), 30)

    def test_entry_waits_for_backoff(self):
        tracker = FakeTracker(failures=[RetryableTransportError("down")])
        engine, _ = self._engine(tracker)
        report_id = add_report(self.sf)
        entry, _ = engine.queue.enqueue(report_id, self.integration_id)

        engine.worker.drain()
        waiting = engine.store.get(entry.id)
        self.assertEqual(waiting.state, QueueState.QUEUED)
        self.assertEqual(waiting.attempts, 1)
        self.assertEqual(waiting.next_attempt_at, self.clock.now + timedelta(seconds=2))
        self.assertEqual(load(self.sf, Report, report_id).sync_status, ReportSyncStatus.PENDING)

        self.clock.advance(1)
        self.assertEqual(engine.worker.drain()["processed"], 0)

        self.clock.advance(1)
        engine.worker.drain()
        self.assertEqual(load(self.sf, Report, report_id).sync_status, ReportSyncStatus.SYNCED)

    def test_retry_after_is_honoured(self):
        tracker = FakeTracker(failures=[RetryableTransportError("GitHub rate limit exceeded", status=403, retry_after=90)])
        engine, _ = self._engine(tracker)
        report_id = add_report(self.sf)
        other_report = add_report(self.sf)
        entry, _ = engine.queue.enqueue(report_id, self.integration_id)
        engine.queue.enqueue(other_report, self.integration_id)

        engine.worker.drain()

        self.assertEqual(engine.store.get(entry.id).next_attempt_at, self.clock.now + timedelta(seconds=90))
        self.assertFalse(engine.rate_limits.ready(self.integration_id, self.clock.now))
        # The head entry blocks the rest of the integration's queue.
        self.assertEqual(tracker.calls, 1)

        self.clock.advance(90)
        engine.worker.drain()
        self.assertEqual(len(tracker.created), 2)

    def test_integration_queue_is_fifo(self):
        engine, tracker = self._engine()
        first = add_report(self.sf, title="first")
        second = add_report(self.sf, title="second")
        third = add_report(self.sf, title="third")
        for report_id in (first, second, third):
            engine.queue.enqueue(report_id, self.integration_id)
            self.clock.advance(1)

        engine.worker.drain()

        self.assertEqual([p.title for p in tracker.created], ["first", "second", "third"])

    def test_low_quota_pauses_integration_until_reset(self):
        tracker = FakeTracker()
        tracker.rate_limit = RateLimitInfo(limit=5000, remaining=3, reset_at=self.clock.now + timedelta(minutes=10))
        engine, _ = self._engine(tracker)
        first = add_report(self.sf)
        second = add_report(self.sf)
        engine.queue.enqueue(first, self.integration_id)
        self.clock.advance(1)
        engine.queue.enqueue(second, self.integration_id)

        engine.worker.drain()
        self.assertEqual(len(tracker.created), 1)
        self.assertEqual(engine.queue.status(self.integration_id)["queue_length"], 1)

        self.clock.advance(600)
        tracker.rate_limit = RateLimitInfo(limit=5000, remaining=5000)
        engine.worker.drain()
        self.assertEqual(len(tracker.created), 2)

    def test_other_integrations_keep_flowing_while_one_is_blocked(self):
        tracker = FakeTracker(failures=[RetryableTransportError("down")])
        engine, _ = self._engine(tracker)
        second_integration = add_integration(self.sf, name="Other")
        blocked = add_report(self.sf)
        flowing = add_report(self.sf)
        engine.queue.enqueue(blocked, self.integration_id)
        self.clock.advance(1)
        engine.queue.enqueue(flowing, second_integration)

        engine.worker.drain()

        self.assertEqual(load(self.sf, Report, blocked).sync_status, ReportSyncStatus.PENDING)
        self.assertEqual(load(self.sf, Report, flowing).sync_status, ReportSyncStatus.SYNCED)


class ForwardNowTests(unittest.TestCase):
    def setUp(self):
        self.sf = make_session_factory()
        self.integration_id = add_integration(self.sf)

    def test_forward_now_returns_issue_reference(self):
        engine, tracker = make_engine(self.sf)
        report_id = add_report(self.sf)

        result = engine.worker.forward_now(report_id, self.integration_id, labels=["ui"], assignees=["alice"])

        self.assertEqual(result.type, "github")
        self.assertEqual(result.external_id, "101")
        self.assertEqual(result.url, "https://tracker.example/issues/101")
        self.assertEqual(result.action, SyncAction.CREATE)
        self.assertEqual(tracker.created[0].labels, ("ui",))
        self.assertEqual(tracker.created[0].assignees, ("alice",))
        self.assertEqual(engine.store.list_active(), [])

    def test_forward_now_retryable_failure_hands_entry_to_queue(self):
        tracker = FakeTracker(failures=[RetryableTransportError("GitHub unreachable")])
        engine, _ = make_engine(self.sf, tracker=tracker)
        report_id = add_report(self.sf)

        with self.assertRaises(RetryableTransportError) as ctx:
            engine.worker.forward_now(report_id, self.integration_id)

        self.assertTrue(ctx.exception.retry_queued)
        self.assertEqual(load(self.sf, Report, report_id).sync_status, ReportSyncStatus.PENDING)
        engine.worker.drain()
        self.assertEqual(load(self.sf, Report, report_id).sync_status, ReportSyncStatus.SYNCED)

    def test_forward_now_terminal_failure_marks_error(self):
        tracker = FakeTracker(failures=[TerminalTrackerError("Invalid or revoked GitHub access token", status=401)])
        engine, _ = make_engine(self.sf, tracker=tracker)
        report_id = add_report(self.sf)

        with self.assertRaises(TerminalTrackerError) as ctx:
            engine.worker.forward_now(report_id, self.integration_id)

        self.assertFalse(ctx.exception.retry_queued)
        report = load(self.sf, Report, report_id)
        self.assertEqual(report.sync_status, ReportSyncStatus.ERROR)
        self.assertEqual(report.sync_error, "Invalid or revoked GitHub access token")
        self.assertEqual(engine.store.list_active(), [])

    def test_drain_waits_while_direct_forward_is_in_flight(self):
        tracker = TickingTracker()
        engine, _ = make_engine(self.sf, tracker=tracker)
        queued = add_report(self.sf)
        direct = add_report(self.sf)
        engine.queue.enqueue(queued, self.integration_id)
        seen = {}

        def tick():
            seen["stats"] = engine.worker.drain()
            seen["status"] = engine.queue.status(self.integration_id)

        tracker.on_create = tick
        engine.worker.forward_now(direct, self.integration_id)

        self.assertEqual(seen["stats"]["processed"], 0)
        self.assertEqual(seen["status"], {"queue_length": 1, "processing": True})
        self.assertEqual(len(tracker.created), 1)
        self.assertEqual(load(self.sf, Report, queued).sync_status, ReportSyncStatus.PENDING)

        self.assertEqual(engine.worker.drain()["succeeded"], 1)
        self.assertEqual(len(tracker.created), 2)

    def test_forward_now_rejects_foreign_project(self):
        engine, tracker = make_engine(self.sf)
        report_id = add_report(self.sf, project_id="someone-else")

        with self.assertRaises(IntegrationUnavailableError):
            engine.worker.forward_now(report_id, self.integration_id)
        self.assertEqual(tracker.calls, 0)
        self.assertEqual(engine.store.list_active(), [])


if __name__ == "__main__":
    unittest.main()
