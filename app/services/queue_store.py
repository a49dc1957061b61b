"""Storage for sync queue entries.

Two interchangeable stores sit behind :class:`QueueStore`:

* :class:`SqlAlchemyQueueStore` persists entries in ``sync_queue_entries`` so
  queued work survives restarts (the default).
* :class:`InMemoryQueueStore` keeps entries in a dict guarded by a lock; handy
  for tests and single-process setups that don't need durability.

Both make ``add_if_absent`` atomic per report id: that check-and-insert is the
engine's only required mutual-exclusion boundary.
"""

from __future__ import annotations

import itertools
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import SyncQueueEntry
from app.models.sync_queue_entry import ACTIVE_STATES, QueueState, SyncAction

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueEntry:
    """Detached view of a queue entry"""

    id: int
    report_id: str
    integration_id: str
    action: SyncAction
    state: QueueState
    attempts: int
    next_attempt_at: datetime
    enqueued_at: datetime
    last_error: Optional[str] = None
    batch_id: Optional[str] = None
    finished_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES


class QueueStore(ABC):
    """Small persistence interface the queue and worker depend on."""

    @abstractmethod
    def add_if_absent(
        self,
        report_id: str,
        integration_id: str,
        action: SyncAction,
        *,
        now: datetime,
        batch_id: Optional[str] = None,
        state: QueueState = QueueState.QUEUED,
    ) -> Tuple[QueueEntry, bool]:
        """Insert an entry unless the report already has an active one.

        Returns ``(entry, created)``; when not created, ``entry`` is the
        existing active entry, unchanged.
        """

    @abstractmethod
    def get(self, entry_id: int) -> Optional[QueueEntry]:
        ...

    @abstractmethod
    def active_for_report(self, report_id: str) -> Optional[QueueEntry]:
        ...

    @abstractmethod
    def latest_for_report(self, report_id: str, state: Optional[QueueState] = None) -> Optional[QueueEntry]:
        ...

    @abstractmethod
    def integrations_with_work(self) -> List[str]:
        """Integration ids with at least one active entry, oldest work first."""

    @abstractmethod
    def head(self, integration_id: str) -> Optional[QueueEntry]:
        """Oldest active entry of an integration (FIFO order)."""

    @abstractmethod
    def claim(self, entry_id: int, now: datetime) -> bool:
        """Move a queued entry to processing; False if someone else got it."""

    @abstractmethod
    def update(self, entry_id: int, **changes: Any) -> QueueEntry:
        ...

    @abstractmethod
    def cancel_batch(self, batch_id: str, now: datetime) -> List[QueueEntry]:
        """Cancel queued (not processing) entries of a batch."""

    @abstractmethod
    def list_active(self, integration_id: Optional[str] = None) -> List[QueueEntry]:
        ...

    def count_active(self, integration_id: str) -> int:
        return len(self.list_active(integration_id))

    @abstractmethod
    def requeue_stale_processing(self, now: datetime) -> int:
        """Return entries orphaned in processing (crashed process) to the queue."""


def _sort_key(entry) -> Tuple[datetime, int]:
    return (entry.enqueued_at, entry.id)


class InMemoryQueueStore(QueueStore):
    """Dict-backed store; state is lost on restart."""

    def __init__(self):
        self._entries: Dict[int, QueueEntry] = {}
        self._ids = itertools.count(1)
        self._lock = threading.RLock()

    def _active(self, integration_id: Optional[str] = None) -> List[QueueEntry]:
        entries = [
            e
            for e in self._entries.values()
            if e.is_active and (integration_id is None or e.integration_id == integration_id)
        ]
        return sorted(entries, key=_sort_key)

    def add_if_absent(self, report_id, integration_id, action, *, now, batch_id=None, state=QueueState.QUEUED):
        with self._lock:
            existing = self.active_for_report(report_id)
            if existing is not None:
                return existing, False
            entry = QueueEntry(
                id=next(self._ids),
                report_id=report_id,
                integration_id=integration_id,
                action=action,
                state=state,
                attempts=0,
                next_attempt_at=now,
                enqueued_at=now,
                batch_id=batch_id,
            )
            self._entries[entry.id] = entry
            return entry, True

    def get(self, entry_id):
        with self._lock:
            return self._entries.get(entry_id)

    def active_for_report(self, report_id):
        with self._lock:
            return next((e for e in self._active() if e.report_id == report_id), None)

    def latest_for_report(self, report_id, state=None):
        with self._lock:
            matches = [
                e
                for e in self._entries.values()
                if e.report_id == report_id and (state is None or e.state == state)
            ]
            return max(matches, key=_sort_key) if matches else None

    def integrations_with_work(self):
        with self._lock:
            ordered: List[str] = []
            for e in self._active():
                if e.integration_id not in ordered:
                    ordered.append(e.integration_id)
            return ordered

    def head(self, integration_id):
        with self._lock:
            active = self._active(integration_id)
            return active[0] if active else None

    def claim(self, entry_id, now):
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.state != QueueState.QUEUED:
                return False
            self._entries[entry_id] = replace(entry, state=QueueState.PROCESSING)
            return True

    def update(self, entry_id, **changes):
        with self._lock:
            if entry_id not in self._entries:
                raise ValueError(f"Queue entry {entry_id} not found")
            entry = replace(self._entries[entry_id], **changes)
            self._entries[entry_id] = entry
            return entry

    def cancel_batch(self, batch_id, now):
        with self._lock:
            cancelled = []
            for e in self._active():
                if e.batch_id == batch_id and e.state == QueueState.QUEUED:
                    cancelled.append(self.update(e.id, state=QueueState.CANCELLED, finished_at=now))
            return cancelled

    def list_active(self, integration_id=None):
        with self._lock:
            return self._active(integration_id)

    def requeue_stale_processing(self, now):
        with self._lock:
            stale = [e for e in self._entries.values() if e.state == QueueState.PROCESSING]
            for e in stale:
                self.update(e.id, state=QueueState.QUEUED, next_attempt_at=now)
            return len(stale)


class SqlAlchemyQueueStore(QueueStore):
    """Durable store on the ``sync_queue_entries`` table."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory
        # Serializes check-and-insert inside this process; the partial unique
        # index covers other processes.
        self._lock = threading.Lock()

    @staticmethod
    def _to_entry(row: SyncQueueEntry) -> QueueEntry:
        return QueueEntry(
            id=row.id,
            report_id=row.report_id,
            integration_id=row.integration_id,
            action=SyncAction(row.action),
            state=QueueState(row.state),
            attempts=row.attempts or 0,
            next_attempt_at=row.next_attempt_at,
            enqueued_at=row.enqueued_at,
            last_error=row.last_error,
            batch_id=row.batch_id,
            finished_at=row.finished_at,
        )

    @staticmethod
    def _active_query(db: Session):
        return db.query(SyncQueueEntry).filter(SyncQueueEntry.state.in_(list(ACTIVE_STATES)))

    def add_if_absent(self, report_id, integration_id, action, *, now, batch_id=None, state=QueueState.QUEUED):
        with self._lock:
            db = self.session_factory()
            try:
                existing = (
                    self._active_query(db)
                    .filter(SyncQueueEntry.report_id == report_id)
                    .order_by(SyncQueueEntry.id)
                    .first()
                )
                if existing is not None:
                    return self._to_entry(existing), False

                row = SyncQueueEntry(
                    report_id=report_id,
                    integration_id=integration_id,
                    action=action,
                    state=state,
                    attempts=0,
                    next_attempt_at=now,
                    enqueued_at=now,
                    batch_id=batch_id,
                )
                db.add(row)
                try:
                    db.commit()
                except IntegrityError:
                    # Another process inserted the active entry first.
                    db.rollback()
                    existing = (
                        self._active_query(db).filter(SyncQueueEntry.report_id == report_id).first()
                    )
                    if existing is None:
                        raise
                    return self._to_entry(existing), False
                db.refresh(row)
                return self._to_entry(row), True
            finally:
                db.close()

    def get(self, entry_id):
        db = self.session_factory()
        try:
            row = db.query(SyncQueueEntry).filter(SyncQueueEntry.id == entry_id).first()
            return self._to_entry(row) if row else None
        finally:
            db.close()

    def active_for_report(self, report_id):
        db = self.session_factory()
        try:
            row = self._active_query(db).filter(SyncQueueEntry.report_id == report_id).first()
            return self._to_entry(row) if row else None
        finally:
            db.close()

    def latest_for_report(self, report_id, state=None):
        db = self.session_factory()
        try:
            query = db.query(SyncQueueEntry).filter(SyncQueueEntry.report_id == report_id)
            if state is not None:
                query = query.filter(SyncQueueEntry.state == state)
            row = query.order_by(SyncQueueEntry.enqueued_at.desc(), SyncQueueEntry.id.desc()).first()
            return self._to_entry(row) if row else None
        finally:
            db.close()

    def integrations_with_work(self):
        db = self.session_factory()
        try:
            rows = self._active_query(db).order_by(SyncQueueEntry.enqueued_at, SyncQueueEntry.id).all()
            ordered: List[str] = []
            for row in rows:
                if row.integration_id not in ordered:
                    ordered.append(row.integration_id)
            return ordered
        finally:
            db.close()

    def head(self, integration_id):
        db = self.session_factory()
        try:
            row = (
                self._active_query(db)
                .filter(SyncQueueEntry.integration_id == integration_id)
                .order_by(SyncQueueEntry.enqueued_at, SyncQueueEntry.id)
                .first()
            )
            return self._to_entry(row) if row else None
        finally:
            db.close()

    def claim(self, entry_id, now):
        db = self.session_factory()
        try:
            # Compare-and-set so two workers can never both win the same entry.
            updated = (
                db.query(SyncQueueEntry)
                .filter(SyncQueueEntry.id == entry_id, SyncQueueEntry.state == QueueState.QUEUED)
                .update(
                    {SyncQueueEntry.state: QueueState.PROCESSING, SyncQueueEntry.updated_at: now},
                    synchronize_session=False,
                )
            )
            db.commit()
            return updated == 1
        finally:
            db.close()

    def update(self, entry_id, **changes):
        db = self.session_factory()
        try:
            row = db.query(SyncQueueEntry).filter(SyncQueueEntry.id == entry_id).first()
            if row is None:
                raise ValueError(f"Queue entry {entry_id} not found")
            for key, value in changes.items():
                setattr(row, key, value)
            db.commit()
            db.refresh(row)
            return self._to_entry(row)
        finally:
            db.close()

    def cancel_batch(self, batch_id, now):
        db = self.session_factory()
        try:
            rows = (
                db.query(SyncQueueEntry)
                .filter(SyncQueueEntry.batch_id == batch_id, SyncQueueEntry.state == QueueState.QUEUED)
                .all()
            )
            for row in rows:
                row.state = QueueState.CANCELLED
                row.finished_at = now
            db.commit()
            return [self._to_entry(row) for row in rows]
        finally:
            db.close()

    def list_active(self, integration_id=None):
        db = self.session_factory()
        try:
            query = self._active_query(db)
            if integration_id is not None:
                query = query.filter(SyncQueueEntry.integration_id == integration_id)
            rows = query.order_by(SyncQueueEntry.enqueued_at, SyncQueueEntry.id).all()
            return [self._to_entry(row) for row in rows]
        finally:
            db.close()

    def count_active(self, integration_id):
        db = self.session_factory()
        try:
            return self._active_query(db).filter(SyncQueueEntry.integration_id == integration_id).count()
        finally:
            db.close()

    def requeue_stale_processing(self, now):
        db = self.session_factory()
        try:
            count = (
                db.query(SyncQueueEntry)
                .filter(SyncQueueEntry.state == QueueState.PROCESSING)
                .update(
                    {SyncQueueEntry.state: QueueState.QUEUED, SyncQueueEntry.next_attempt_at: now},
                    synchronize_session=False,
                )
            )
            db.commit()
            if count:
                logger.warning(f"Returned {count} orphaned sync entries to the queue")
            return count
        finally:
            db.close()
