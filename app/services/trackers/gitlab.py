"""GitLab API client wrapper"""
import gitlab
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from app.config import settings
from app.models.integration import TrackerType
from app.services.errors import RetryableTransportError, TerminalTrackerError, TrackerError
from app.services.trackers.base import (
    IssuePayload,
    IssueRef,
    IssueTrackerClient,
    TrackerEvent,
    TrackerEventKind,
    WebhookDelivery,
    register_tracker,
)

logger = logging.getLogger(__name__)

_RETRYABLE_CODES = (429, 500, 502, 503, 504)


@register_tracker(TrackerType.GITLAB)
class GitLabClient(IssueTrackerClient):
    """Wrapper for GitLab issue and project hook operations"""

    def __init__(self, url: str, access_token: str, project_id: str):
        """Initialize GitLab client"""
        super().__init__()
        if not url or not access_token or not project_id:
            raise TerminalTrackerError(
                "GitLab configuration incomplete. Required: instance URL, project, access token"
            )
        self.url = url
        self.project_id = project_id
        # Retries are owned by the sync queue; don't stack python-gitlab's on top.
        self.gl = gitlab.Gitlab(
            url,
            private_token=access_token,
            timeout=settings.tracker_timeout_seconds,
            retry_transient_errors=False,
        )
        # Quota headers feed the queue's proactive throttling.
        self.gl.session.hooks["response"].append(self._record_rate_limit)
        self._project = None

    @classmethod
    def from_config(cls, config) -> "GitLabClient":
        return cls(config.base_url or "https://gitlab.com", config.access_token, config.repo)

    def _record_rate_limit(self, response, *args, **kwargs) -> None:
        """requests response hook: keep the last RateLimit-* values GitLab sent."""
        headers = response.headers
        try:
            if headers.get("RateLimit-Limit"):
                self.rate_limit.limit = int(headers["RateLimit-Limit"])
            if headers.get("RateLimit-Remaining"):
                self.rate_limit.remaining = int(headers["RateLimit-Remaining"])
            if headers.get("RateLimit-Reset"):
                self.rate_limit.reset_at = datetime.fromtimestamp(
                    int(headers["RateLimit-Reset"]), tz=timezone.utc
                ).replace(tzinfo=None)
        except ValueError:
            logger.debug(f"Ignoring malformed rate limit headers from GitLab: {dict(headers)}")

    @staticmethod
    def _translate(exc: Exception, what: str) -> TrackerError:
        """Classify a python-gitlab failure for the queue."""
        rc = getattr(exc, "response_code", None)
        if isinstance(exc, gitlab.exceptions.GitlabAuthenticationError) or rc == 401:
            return TerminalTrackerError(f"Invalid or revoked GitLab access token ({what})", status=rc)
        if rc in _RETRYABLE_CODES:
            return RetryableTransportError(f"GitLab API error while {what}: {exc}", status=rc)
        if rc == 403:
            return TerminalTrackerError(f"GitLab permission denied while {what}", status=rc)
        if rc == 404:
            return TerminalTrackerError("Project not found or no access", status=rc)
        if rc is not None:
            return TerminalTrackerError(f"GitLab API error while {what}: {exc}", status=rc)
        # No HTTP response at all: connection reset, DNS, timeout.
        return RetryableTransportError(f"GitLab unreachable while {what}: {exc}")

    def _call(self, fn, what: str):
        try:
            return fn()
        except Exception as e:
            error = self._translate(e, what)
            logger.warning(f"GitLab call failed ({what}): {error}")
            raise error from e

    @staticmethod
    def _normalize_issue_payload(issue_data: Dict[str, Any], *, for_update: bool) -> Dict[str, Any]:
        """Normalize payload fields for GitLab API quirks."""
        data = dict(issue_data)

        # GitLab API expects comma-separated string for `labels`. Some servers ignore empty lists.
        if "labels" in data:
            labels = data.get("labels")
            if not labels:
                if for_update:
                    data["labels"] = ""
                else:
                    data.pop("labels", None)
            elif isinstance(labels, (list, tuple)):
                data["labels"] = ",".join(labels)

        return data

    @staticmethod
    def _to_ref(issue: Any) -> IssueRef:
        return IssueRef(number=int(issue.iid), url=getattr(issue, "web_url", ""), state=getattr(issue, "state", None))

    def get_project(self):
        """Get the configured project (cached per client)"""
        if self._project is None:
            self._project = self._call(
                lambda: self.gl.projects.get(self.project_id), f"loading project {self.project_id}"
            )
        return self._project

    def _assignee_ids(self, usernames) -> List[int]:
        ids = []
        for username in usernames:
            users = self._call(lambda: self.gl.users.list(username=username), f"looking up user {username}")
            if users:
                ids.append(users[0].id)
            else:
                logger.warning(f"No GitLab user found for assignee '{username}'")
        return ids

    def create_issue(self, payload: IssuePayload) -> IssueRef:
        """Create a new issue"""
        project = self.get_project()
        data: Dict[str, Any] = {
            "title": payload.title,
            "description": payload.body,
            "labels": list(payload.labels),
        }
        if payload.assignees:
            data["assignee_ids"] = self._assignee_ids(payload.assignees)
        issue = self._call(
            lambda: project.issues.create(self._normalize_issue_payload(data, for_update=False)),
            "creating issue",
        )
        logger.info(f"Created issue #{issue.iid} in project {self.project_id}")
        return self._to_ref(issue)

    def update_issue(self, number: int, payload: IssuePayload) -> IssueRef:
        """Update an existing issue"""
        project = self.get_project()
        issue = self._call(lambda: project.issues.get(number), f"loading issue #{number}")
        issue.title = payload.title
        issue.description = payload.body
        if payload.state == "closed" and getattr(issue, "state", None) != "closed":
            issue.state_event = "close"
        elif payload.state == "open" and getattr(issue, "state", None) == "closed":
            issue.state_event = "reopen"
        self._call(lambda: issue.save(), f"updating issue #{number}")
        logger.info(f"Updated issue #{number} in project {self.project_id}")
        return self._to_ref(issue)

    def get_issue(self, number: int) -> IssueRef:
        """Get a specific issue by IID"""
        project = self.get_project()
        return self._to_ref(self._call(lambda: project.issues.get(number), f"loading issue #{number}"))

    def list_issues(self, state: str = "open") -> List[IssueRef]:
        """List issues; GitLab calls open issues 'opened'"""
        project = self.get_project()
        gl_state = {"open": "opened", "closed": "closed"}.get(state, "all")
        issues = self._call(
            lambda: project.issues.list(get_all=True, state=gl_state, per_page=100),
            "listing issues",
        )
        return [self._to_ref(issue) for issue in issues]

    def verify_connection(self) -> str:
        """Authenticate and load the project"""
        self._call(self.gl.auth, "authenticating")
        project = self.get_project()
        return str(getattr(project, "path_with_namespace", self.project_id))

    def create_webhook(self, url: str, secret: str) -> str:
        """Create a project hook for issue events"""
        project = self.get_project()
        hook = self._call(
            lambda: project.hooks.create(
                {
                    "url": url,
                    "token": secret,
                    "issues_events": True,
                    "push_events": False,
                    "enable_ssl_verification": True,
                }
            ),
            "creating project hook",
        )
        logger.info(f"Created project hook {hook.id} in project {self.project_id}")
        return str(hook.id)

    def delete_webhook(self, webhook_id: str) -> None:
        """Delete a project hook; already-gone hooks are fine"""
        project = self.get_project()
        try:
            self._call(lambda: project.hooks.delete(int(webhook_id)), f"deleting hook {webhook_id}")
        except TerminalTrackerError as e:
            if e.status != 404:
                raise
        logger.info(f"Deleted project hook {webhook_id} from project {self.project_id}")

    @classmethod
    def verify_signature(cls, secret: str, delivery: WebhookDelivery) -> bool:
        # GitLab echoes the configured secret token verbatim in X-Gitlab-Token.
        if not secret or not delivery.signature:
            return False
        return hmac.compare_digest(delivery.signature.encode("utf-8"), secret.encode("utf-8"))

    @classmethod
    def parse_event(cls, delivery: WebhookDelivery) -> TrackerEvent:
        try:
            payload = json.loads(delivery.raw_body or b"{}")
        except ValueError as e:
            raise ValueError(f"Invalid JSON in GitLab webhook: {e}") from e
        if not isinstance(payload, dict):
            raise ValueError("GitLab webhook payload is not an object")

        attrs: Optional[Dict[str, Any]] = payload.get("object_attributes")
        if payload.get("object_kind") != "issue" or not isinstance(attrs, dict):
            return TrackerEvent(event_id=delivery.delivery_id, kind=TrackerEventKind.OTHER)

        action = str(attrs.get("action") or "")
        kind = {
            "close": TrackerEventKind.CLOSED,
            "reopen": TrackerEventKind.REOPENED,
        }.get(action, TrackerEventKind.OTHER)
        iid = attrs.get("iid")
        try:
            number = int(iid) if iid is not None else None
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid issue iid in GitLab webhook: {iid!r}") from e
        return TrackerEvent(event_id=delivery.delivery_id, kind=kind, issue_number=number, action=action)
