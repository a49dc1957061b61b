"""Database base configuration"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from app.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def new_id() -> str:
    """Opaque string primary key."""
    return uuid.uuid4().hex


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# At most one non-terminal queue entry per report. Partial indexes work on
# both SQLite and PostgreSQL.
_ACTIVE_QUEUE_INDEX_SQL = (
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_queue_active_report "
    "ON sync_queue_entries(report_id) WHERE state IN ('queued', 'processing')"
)


def ensure_queue_indexes(bind=None):
    """
    Best-effort schema hardening for the sync queue.

    The ORM cannot express the partial unique index portably, so it is created
    with raw SQL after create_all().
    """
    bind = bind if bind is not None else engine
    with bind.begin() as conn:
        try:
            conn.exec_driver_sql(_ACTIVE_QUEUE_INDEX_SQL)
        except Exception:
            # Dialects without partial indexes fall back to the in-process lock.
            pass


def init_db(bind=None):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import app.models  # noqa: F401  (import for side-effects)

    bind = bind if bind is not None else engine
    Base.metadata.create_all(bind=bind)
    ensure_queue_indexes(bind)


def enum_values(enum_cls):
    """Persist enum members by value (lowercase strings), not by name."""
    return [member.value for member in enum_cls]


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (consistent with stored columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
