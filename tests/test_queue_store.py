import threading
import unittest
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from app.models import SyncQueueEntry
from app.models.sync_queue_entry import QueueState, SyncAction
from app.services.queue_store import InMemoryQueueStore, SqlAlchemyQueueStore
from tests.support import make_session_factory

T0 = datetime(2026, 1, 1, 12, 0, 0)


class _QueueStoreContract:
    """Behaviour both queue stores must share."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    def test_add_if_absent_is_idempotent_per_report(self):
        first, created = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)
        again, created_again = self.store.add_if_absent("r1", "i1", SyncAction.UPDATE, now=T0)

        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(again.id, first.id)
        self.assertEqual(again.action, SyncAction.CREATE)
        self.assertEqual(len(self.store.list_active()), 1)

    def test_new_entry_allowed_after_previous_finished(self):
        first, _ = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)
        self.store.update(first.id, state=QueueState.DONE, finished_at=T0)

        second, created = self.store.add_if_absent("r1", "i1", SyncAction.UPDATE, now=T0)

        self.assertTrue(created)
        self.assertNotEqual(second.id, first.id)

    def test_head_is_oldest_entry_of_integration(self):
        a, _ = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)
        self.store.add_if_absent("r2", "i1", SyncAction.CREATE, now=T0 + timedelta(seconds=1))
        c, _ = self.store.add_if_absent("r3", "i2", SyncAction.CREATE, now=T0 + timedelta(seconds=2))

        self.assertEqual(self.store.head("i1").id, a.id)
        self.assertEqual(self.store.head("i2").id, c.id)
        self.assertEqual(self.store.integrations_with_work(), ["i1", "i2"])

    def test_claim_is_compare_and_set(self):
        entry, _ = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)

        self.assertTrue(self.store.claim(entry.id, T0))
        self.assertFalse(self.store.claim(entry.id, T0))
        self.assertEqual(self.store.get(entry.id).state, QueueState.PROCESSING)

    def test_processing_entry_still_blocks_report(self):
        entry, _ = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0, state=QueueState.PROCESSING)

        existing, created = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)

        self.assertFalse(created)
        self.assertEqual(existing.id, entry.id)
        self.assertEqual(existing.state, QueueState.PROCESSING)

    def test_cancel_batch_only_touches_queued_entries(self):
        a, _ = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0, batch_id="b1")
        b, _ = self.store.add_if_absent("r2", "i1", SyncAction.CREATE, now=T0, batch_id="b1")
        other, _ = self.store.add_if_absent("r3", "i1", SyncAction.CREATE, now=T0, batch_id="b2")
        self.store.claim(a.id, T0)

        cancelled = self.store.cancel_batch("b1", T0)

        self.assertEqual([e.id for e in cancelled], [b.id])
        self.assertEqual(self.store.get(a.id).state, QueueState.PROCESSING)
        self.assertEqual(self.store.get(b.id).state, QueueState.CANCELLED)
        self.assertEqual(self.store.get(other.id).state, QueueState.QUEUED)

    def test_requeue_stale_processing(self):
        entry, _ = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)
        self.store.claim(entry.id, T0)

        later = T0 + timedelta(minutes=5)
        self.assertEqual(self.store.requeue_stale_processing(later), 1)

        entry = self.store.get(entry.id)
        self.assertEqual(entry.state, QueueState.QUEUED)
        self.assertEqual(entry.next_attempt_at, later)

    def test_latest_for_report_filters_by_state(self):
        first, _ = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)
        self.store.update(first.id, state=QueueState.FAILED)
        self.store.add_if_absent("r1", "i2", SyncAction.CREATE, now=T0 + timedelta(seconds=1))

        self.assertEqual(self.store.latest_for_report("r1", QueueState.FAILED).integration_id, "i1")
        self.assertEqual(self.store.latest_for_report("r1").integration_id, "i2")
        self.assertIsNone(self.store.latest_for_report("r2"))

    def test_concurrent_adds_create_one_entry(self):
        barrier = threading.Barrier(8)
        results = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            _, created = self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)
            with lock:
                results.append(created)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(results.count(True), 1)
        self.assertEqual(len(self.store.list_active()), 1)


class InMemoryQueueStoreTests(_QueueStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryQueueStore()


class SqlAlchemyQueueStoreTests(_QueueStoreContract, unittest.TestCase):
    def make_store(self):
        self.session_factory = make_session_factory()
        return SqlAlchemyQueueStore(self.session_factory)

    def test_count_active_uses_database(self):
        self.store.add_if_absent("r1", "i1", SyncAction.CREATE, now=T0)
        self.store.add_if_absent("r2", "i1", SyncAction.CREATE, now=T0)
        self.store.add_if_absent("r3", "i2", SyncAction.CREATE, now=T0)

        self.assertEqual(self.store.count_active("i1"), 2)

    def test_partial_unique_index_rejects_second_active_row(self):
        db = self.session_factory()
        try:
            db.add(SyncQueueEntry(report_id="r1", integration_id="i1", action=SyncAction.CREATE,
                                  state=QueueState.QUEUED, next_attempt_at=T0))
            db.commit()
            db.add(SyncQueueEntry(report_id="r1", integration_id="i1", action=SyncAction.CREATE,
                                  state=QueueState.PROCESSING, next_attempt_at=T0))
            with self.assertRaises(IntegrityError):
                db.commit()
            db.rollback()

            # Finished rows don't count.
            db.add(SyncQueueEntry(report_id="r1", integration_id="i1", action=SyncAction.CREATE,
                                  state=QueueState.DONE, next_attempt_at=T0))
            db.commit()
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
