"""Issue tracker client interface.

The sync engine only talks to trackers through :class:`IssueTrackerClient`.
Each tracker gets one implementation, registered by tracker type, so adding a
tracker never touches queue or forwarder logic.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple, Type

from app.models.integration import TrackerType

if TYPE_CHECKING:
    from app.services.integration_store import IntegrationConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuePayload:
    """Tracker-agnostic issue content"""

    title: str
    body: str
    labels: Tuple[str, ...] = ()
    assignees: Tuple[str, ...] = ()
    # "open" / "closed"; only sent on update
    state: Optional[str] = None


@dataclass(frozen=True)
class IssueRef:
    """Reference to an issue on the tracker"""

    number: int
    url: str
    state: Optional[str] = None


@dataclass
class RateLimitInfo:
    """Last known quota, taken from tracker response metadata."""

    limit: Optional[int] = None
    remaining: Optional[int] = None
    reset_at: Optional[datetime] = None


@dataclass(frozen=True)
class WebhookDelivery:
    """Raw inbound webhook as received over HTTP"""

    raw_body: bytes
    signature: Optional[str] = None
    event_type: Optional[str] = None
    delivery_id: Optional[str] = None


class TrackerEventKind(str, enum.Enum):
    CLOSED = "closed"
    REOPENED = "reopened"
    PING = "ping"
    OTHER = "other"


@dataclass(frozen=True)
class TrackerEvent:
    """Parsed webhook event, normalized across trackers"""

    event_id: Optional[str]
    kind: TrackerEventKind
    issue_number: Optional[int] = None
    action: str = ""


class IssueTrackerClient(ABC):
    """Typed create/update/list calls against one tracker repository."""

    tracker_type: TrackerType

    def __init__(self) -> None:
        self.rate_limit = RateLimitInfo()

    @classmethod
    @abstractmethod
    def from_config(cls, config: "IntegrationConfig") -> "IssueTrackerClient":
        """Build a client from a decrypted integration config."""

    @abstractmethod
    def create_issue(self, payload: IssuePayload) -> IssueRef:
        """Create an issue and return its reference."""

    @abstractmethod
    def update_issue(self, number: int, payload: IssuePayload) -> IssueRef:
        """Update title/body/state of an existing issue."""

    @abstractmethod
    def get_issue(self, number: int) -> IssueRef:
        """Fetch a single issue."""

    @abstractmethod
    def list_issues(self, state: str = "open") -> List[IssueRef]:
        """List issues in the repository (``open``, ``closed`` or ``all``)."""

    @abstractmethod
    def verify_connection(self) -> str:
        """Check credentials and repository access; returns the repository's full name."""

    @abstractmethod
    def create_webhook(self, url: str, secret: str) -> str:
        """Subscribe ``url`` to issue events; returns the tracker's hook id."""

    @abstractmethod
    def delete_webhook(self, webhook_id: str) -> None:
        """Remove a subscription. Missing hooks are not an error."""

    @classmethod
    @abstractmethod
    def verify_signature(cls, secret: str, delivery: WebhookDelivery) -> bool:
        """Check the delivery was produced by the tracker holding ``secret``."""

    @classmethod
    @abstractmethod
    def parse_event(cls, delivery: WebhookDelivery) -> TrackerEvent:
        """Normalize a verified delivery. Raises ValueError on malformed payloads."""

    def close(self) -> None:
        """Release network resources."""


_REGISTRY: Dict[TrackerType, Type[IssueTrackerClient]] = {}


def register_tracker(tracker_type: TrackerType) -> Callable[[Type[IssueTrackerClient]], Type[IssueTrackerClient]]:
    """Class decorator registering a client implementation for a tracker type."""

    def decorator(cls: Type[IssueTrackerClient]) -> Type[IssueTrackerClient]:
        cls.tracker_type = tracker_type
        _REGISTRY[tracker_type] = cls
        logger.debug(f"Registered tracker client {cls.__name__} for {tracker_type.value}")
        return cls

    return decorator


def get_client_class(tracker_type: TrackerType) -> Type[IssueTrackerClient]:
    try:
        return _REGISTRY[TrackerType(tracker_type)]
    except (KeyError, ValueError):
        raise ValueError(f"No tracker client registered for '{tracker_type}'")


def build_tracker_client(config: "IntegrationConfig") -> IssueTrackerClient:
    """Default client factory used by the engine."""
    return get_client_class(config.type).from_config(config)


def supported_trackers() -> List[TrackerType]:
    return sorted(_REGISTRY, key=lambda t: t.value)


__all__ = [
    "IssuePayload",
    "IssueRef",
    "RateLimitInfo",
    "WebhookDelivery",
    "TrackerEvent",
    "TrackerEventKind",
    "IssueTrackerClient",
    "register_tracker",
    "get_client_class",
    "build_tracker_client",
    "supported_trackers",
]
