"""Issue tracker clients"""

from app.services.trackers.base import (
    IssuePayload,
    IssueRef,
    IssueTrackerClient,
    RateLimitInfo,
    TrackerEvent,
    TrackerEventKind,
    WebhookDelivery,
    build_tracker_client,
    get_client_class,
    supported_trackers,
)
from app.services.trackers.github import GitHubClient
from app.services.trackers.gitlab import GitLabClient

__all__ = [
    "IssuePayload",
    "IssueRef",
    "IssueTrackerClient",
    "RateLimitInfo",
    "TrackerEvent",
    "TrackerEventKind",
    "WebhookDelivery",
    "build_tracker_client",
    "get_client_class",
    "supported_trackers",
    "GitHubClient",
    "GitLabClient",
]
