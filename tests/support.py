"""Shared fixtures: in-memory database, fake tracker and a test engine."""

import json
import threading
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.config import Settings
from app.models import Integration, Report
from app.models.base import init_db
from app.models.integration import SyncMode, TrackerType
from app.services.sync_engine import SyncEngine
from app.services.trackers.base import IssueRef, IssueTrackerClient, TrackerEvent, TrackerEventKind


def make_session_factory(url: str = "sqlite://"):
    if url == "sqlite://":
        bind = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        bind = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    init_db(bind=bind)
    return sessionmaker(autocommit=False, autoflush=False, bind=bind)


def engine_settings(**overrides) -> Settings:
    values = dict(
        sync_max_concurrent=1,
        sync_max_attempts=3,
        sync_retry_base_seconds=0,
        sync_retry_max_delay_seconds=0,
        sync_min_call_interval_seconds=0,
        sync_rate_limit_reserve=10,
    )
    values.update(overrides)
    return Settings(**values)


class FixedClock:
    """Callable clock the test advances by hand."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeTracker(IssueTrackerClient):
    """In-process tracker recording calls.

    ``failures`` holds exceptions raised (in order) by the next create/update
    calls; ``webhook_error`` is raised by create_webhook and
    ``connection_error`` by verify_connection.
    """

    def __init__(self, failures=None, webhook_error=None, delete_error=None, connection_error=None):
        super().__init__()
        self.connection_error = connection_error
        self.failures = list(failures or [])
        self.webhook_error = webhook_error
        self.delete_error = delete_error
        self.created: List = []
        self.updated: List = []
        self.hooks = {}
        self.deleted_hooks: List[str] = []
        self.calls = 0
        self._next_number = 100
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config):
        return cls()

    def _before_call(self):
        with self._lock:
            self.calls += 1
            if self.failures:
                raise self.failures.pop(0)

    def create_issue(self, payload):
        self._before_call()
        with self._lock:
            self._next_number += 1
            number = self._next_number
            self.created.append(payload)
        return IssueRef(number=number, url=f"https://tracker.example/issues/{number}", state="open")

    def update_issue(self, number, payload):
        self._before_call()
        with self._lock:
            self.updated.append((number, payload))
        return IssueRef(number=number, url=f"https://tracker.example/issues/{number}", state=payload.state)

    def get_issue(self, number):
        return IssueRef(number=number, url=f"https://tracker.example/issues/{number}")

    def list_issues(self, state="open"):
        return []

    def verify_connection(self):
        if self.connection_error is not None:
            raise self.connection_error
        return "acme/widget"

    def create_webhook(self, url, secret):
        if self.webhook_error is not None:
            raise self.webhook_error
        hook_id = str(len(self.hooks) + 1)
        self.hooks[hook_id] = (url, secret)
        return hook_id

    def delete_webhook(self, webhook_id):
        self.deleted_hooks.append(webhook_id)
        if self.delete_error is not None:
            raise self.delete_error

    @classmethod
    def verify_signature(cls, secret, delivery):
        return delivery.signature == secret

    @classmethod
    def parse_event(cls, delivery):
        return TrackerEvent(event_id=delivery.delivery_id, kind=TrackerEventKind.OTHER)


def make_engine(session_factory, tracker: Optional[FakeTracker] = None, store=None, clock=None, **settings):
    tracker = tracker if tracker is not None else FakeTracker()
    kwargs = {}
    if clock is not None:
        kwargs["clock"] = clock
    engine = SyncEngine(
        session_factory,
        config=engine_settings(**settings),
        store=store,
        client_factory=lambda config: tracker,
        **kwargs,
    )
    return engine, tracker


def add_integration(session_factory, **overrides) -> str:
    values = dict(
        project_id="proj-1",
        type=TrackerType.GITHUB,
        name="GitHub",
        owner="acme",
        repo="widget",
        access_token="token",
        is_active=True,
        sync_mode=SyncMode.MANUAL,
    )
    values.update(overrides)
    db = session_factory()
    try:
        integration = Integration(**values)
        db.add(integration)
        db.commit()
        return integration.id
    finally:
        db.close()


def add_report(session_factory, **overrides) -> str:
    values = dict(
        project_id="proj-1",
        title="Button does nothing",
        description="Clicking save has no effect",
        metadata_json=json.dumps({"url": "https://shop.example/cart", "browser": {"name": "Firefox", "version": "128"}}),
    )
    values.update(overrides)
    db = session_factory()
    try:
        report = Report(**values)
        db.add(report)
        db.commit()
        return report.id
    finally:
        db.close()


def load(session_factory, model, pk):
    db = session_factory()
    try:
        obj = db.get(model, pk)
        if obj is not None:
            db.expunge(obj)
        return obj
    finally:
        db.close()
