"""Sync queue entry model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum
from datetime import datetime
import enum
from app.models.base import Base, enum_values


class SyncAction(str, enum.Enum):
    """What the forwarder does on the tracker"""
    CREATE = "create"
    UPDATE = "update"


class QueueState(str, enum.Enum):
    """Queue entry lifecycle"""
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({QueueState.DONE, QueueState.FAILED, QueueState.CANCELLED})
ACTIVE_STATES = frozenset({QueueState.QUEUED, QueueState.PROCESSING})


class SyncQueueEntry(Base):
    """One unit of forward work for a (report, integration) pair"""

    __tablename__ = "sync_queue_entries"

    id = Column(Integer, primary_key=True, index=True)

    report_id = Column(String, nullable=False, index=True)
    integration_id = Column(String, nullable=False, index=True)
    action = Column(Enum(SyncAction, values_callable=enum_values), nullable=False)
    state = Column(
        Enum(QueueState, values_callable=enum_values, native_enum=False),
        default=QueueState.QUEUED,
        nullable=False,
        index=True,
    )

    # Retry bookkeeping
    attempts = Column(Integer, default=0, nullable=False)
    next_attempt_at = Column(DateTime, nullable=False)
    last_error = Column(Text, nullable=True)

    # Set for entries created by a bulk "sync existing" call
    batch_id = Column(String, nullable=True, index=True)

    enqueued_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<SyncQueueEntry(report_id='{self.report_id}', action={self.action}, state={self.state})>"
