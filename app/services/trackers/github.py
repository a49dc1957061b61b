"""GitHub REST API client"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

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

_RETRYABLE_STATUSES = {500, 502, 503, 504}


@register_tracker(TrackerType.GITHUB)
class GitHubClient(IssueTrackerClient):
    """Issues and repository hooks for one ``owner/repo``."""

    API_VERSION = "2022-11-28"

    def __init__(
        self,
        owner: str,
        repo: str,
        access_token: str,
        *,
        api_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        super().__init__()
        if not owner or not repo or not access_token:
            raise TerminalTrackerError(
                "GitHub configuration incomplete. Required: owner, repo, access token"
            )
        self.owner = owner
        self.repo = repo
        self.http = httpx.Client(
            base_url=(api_url or settings.github_api_url).rstrip("/"),
            timeout=timeout or settings.tracker_timeout_seconds,
            headers={
                "Accept": "application/vnd.github+json",
                "Authorization": f"Bearer {access_token}",
                "X-GitHub-Api-Version": self.API_VERSION,
            },
            transport=transport,
        )

    @classmethod
    def from_config(cls, config) -> "GitHubClient":
        return cls(config.owner, config.repo, config.access_token, api_url=config.base_url)

    def close(self) -> None:
        self.http.close()

    # -- transport --------------------------------------------------------

    def _repo_path(self, suffix: str = "") -> str:
        return f"/repos/{self.owner}/{self.repo}{suffix}"

    def _record_rate_limit(self, response: httpx.Response) -> None:
        headers = response.headers
        try:
            if "x-ratelimit-limit" in headers:
                self.rate_limit.limit = int(headers["x-ratelimit-limit"])
            if "x-ratelimit-remaining" in headers:
                self.rate_limit.remaining = int(headers["x-ratelimit-remaining"])
            if "x-ratelimit-reset" in headers:
                self.rate_limit.reset_at = datetime.fromtimestamp(
                    int(headers["x-ratelimit-reset"]), tz=timezone.utc
                ).replace(tzinfo=None)
        except ValueError:
            logger.debug(f"Ignoring malformed rate limit headers from GitHub: {dict(headers)}")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("message"):
            return str(data["message"])
        return f"HTTP {response.status_code}"

    def _retry_after_seconds(self, response: httpx.Response) -> Optional[float]:
        value = response.headers.get("retry-after")
        if value:
            try:
                return max(0.0, float(value))
            except ValueError:
                return None
        if self.rate_limit.remaining == 0 and self.rate_limit.reset_at is not None:
            now = datetime.now(timezone.utc).replace(tzinfo=None)
            return max(0.0, (self.rate_limit.reset_at - now).total_seconds())
        return None

    def _classify(self, response: httpx.Response) -> TrackerError:
        """Map a non-2xx response onto the retryable/terminal split."""
        status = response.status_code
        message = self._error_message(response)
        retry_after = self._retry_after_seconds(response)

        rate_limited = status == 429 or (
            status == 403
            and (
                self.rate_limit.remaining == 0
                or "retry-after" in response.headers
                or "rate limit" in message.lower()
            )
        )
        if rate_limited:
            return RetryableTransportError(
                f"GitHub rate limit exceeded: {message}", status=status, retry_after=retry_after
            )
        if status in _RETRYABLE_STATUSES:
            return RetryableTransportError(f"GitHub API error: {message}", status=status)
        if status == 401:
            return TerminalTrackerError("Invalid or revoked GitHub access token", status=status)
        if status == 403:
            return TerminalTrackerError(f"GitHub permission denied: {message}", status=status)
        if status == 404:
            return TerminalTrackerError("Repository not found or no access", status=status)
        if status == 410:
            return TerminalTrackerError("Issues are disabled for this repository", status=status)
        return TerminalTrackerError(f"GitHub API error: {message}", status=status)

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = self.http.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise RetryableTransportError(f"GitHub unreachable: {e}") from e

        self._record_rate_limit(response)
        if response.is_success:
            return response

        error = self._classify(response)
        logger.warning(f"GitHub {method} {path} failed ({response.status_code}): {error}")
        raise error

    @staticmethod
    def _to_ref(data: Dict[str, Any]) -> IssueRef:
        return IssueRef(number=int(data["number"]), url=data.get("html_url", ""), state=data.get("state"))

    # -- issues -----------------------------------------------------------

    def create_issue(self, payload: IssuePayload) -> IssueRef:
        body: Dict[str, Any] = {"title": payload.title, "body": payload.body}
        # GitHub rejects empty lists on some repos; omit instead.
        if payload.labels:
            body["labels"] = list(payload.labels)
        if payload.assignees:
            body["assignees"] = list(payload.assignees)

        issue = self._to_ref(self._request("POST", self._repo_path("/issues"), json=body).json())
        logger.info(f"Created GitHub issue #{issue.number} in {self.owner}/{self.repo}")
        return issue

    def update_issue(self, number: int, payload: IssuePayload) -> IssueRef:
        body: Dict[str, Any] = {"title": payload.title, "body": payload.body}
        if payload.state:
            body["state"] = payload.state

        issue = self._to_ref(
            self._request("PATCH", self._repo_path(f"/issues/{int(number)}"), json=body).json()
        )
        logger.info(f"Updated GitHub issue #{issue.number} in {self.owner}/{self.repo}")
        return issue

    def get_issue(self, number: int) -> IssueRef:
        return self._to_ref(self._request("GET", self._repo_path(f"/issues/{int(number)}")).json())

    def list_issues(self, state: str = "open") -> List[IssueRef]:
        issues: List[IssueRef] = []
        page = 1
        while True:
            response = self._request(
                "GET",
                self._repo_path("/issues"),
                params={"state": state, "per_page": 100, "page": page},
            )
            batch = response.json()
            # The issues endpoint also returns pull requests.
            issues.extend(self._to_ref(item) for item in batch if "pull_request" not in item)
            if not batch or 'rel="next"' not in response.headers.get("link", ""):
                return issues
            page += 1

    def verify_connection(self) -> str:
        data = self._request("GET", self._repo_path()).json()
        return str(data.get("full_name") or f"{self.owner}/{self.repo}")

    # -- webhooks ---------------------------------------------------------

    def create_webhook(self, url: str, secret: str) -> str:
        response = self._request(
            "POST",
            self._repo_path("/hooks"),
            json={
                "name": "web",
                "active": True,
                "events": ["issues"],
                "config": {
                    "url": url,
                    "content_type": "json",
                    "secret": secret,
                    "insecure_ssl": "0",
                },
            },
        )
        hook_id = str(response.json()["id"])
        logger.info(f"Created GitHub webhook {hook_id} for {self.owner}/{self.repo}")
        return hook_id

    def delete_webhook(self, webhook_id: str) -> None:
        try:
            self._request("DELETE", self._repo_path(f"/hooks/{webhook_id}"))
        except TerminalTrackerError as e:
            if e.status != 404:
                raise
        logger.info(f"Deleted GitHub webhook {webhook_id} from {self.owner}/{self.repo}")

    @classmethod
    def verify_signature(cls, secret: str, delivery: WebhookDelivery) -> bool:
        signature = delivery.signature or ""
        if not secret or not signature.startswith("sha256="):
            return False
        expected = hmac.new(secret.encode("utf-8"), delivery.raw_body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature[len("sha256="):], expected)

    @classmethod
    def parse_event(cls, delivery: WebhookDelivery) -> TrackerEvent:
        if delivery.event_type == "ping":
            return TrackerEvent(event_id=delivery.delivery_id, kind=TrackerEventKind.PING, action="ping")

        try:
            payload = json.loads(delivery.raw_body or b"{}")
        except ValueError as e:
            raise ValueError(f"Invalid JSON in GitHub webhook: {e}") from e

        issue = payload.get("issue") if isinstance(payload, dict) else None
        action = str(payload.get("action") or "") if isinstance(payload, dict) else ""
        if delivery.event_type != "issues" or not isinstance(issue, dict):
            return TrackerEvent(event_id=delivery.delivery_id, kind=TrackerEventKind.OTHER, action=action)

        kind = TrackerEventKind.OTHER
        if action == "closed" and issue.get("state") == "closed":
            kind = TrackerEventKind.CLOSED
        elif action == "reopened" and issue.get("state") == "open":
            kind = TrackerEventKind.REOPENED

        try:
            number = int(issue["number"]) if issue.get("number") is not None else None
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid issue number in GitHub webhook: {issue.get('number')!r}") from e

        return TrackerEvent(event_id=delivery.delivery_id, kind=kind, issue_number=number, action=action)
