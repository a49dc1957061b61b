"""Issue content built from a report snapshot"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from app.models import Report
from app.models.report import ReportStatus
from app.services.trackers.base import IssuePayload

logger = logging.getLogger(__name__)

_MAX_LIST_ITEMS = 50


@dataclass(frozen=True)
class ReportSnapshot:
    """Immutable copy of the report fields a forward needs.

    Taken once when the entry is dequeued so a concurrent edit can't produce a
    half-updated issue.
    """

    id: str
    project_id: str
    title: str
    description: Optional[str]
    priority: Optional[str]
    status: ReportStatus
    metadata: Dict[str, Any]
    created_at: Optional[datetime]

    @classmethod
    def from_model(cls, report: Report) -> "ReportSnapshot":
        metadata: Dict[str, Any] = {}
        if report.metadata_json:
            try:
                loaded = json.loads(report.metadata_json)
                metadata = loaded if isinstance(loaded, dict) else {}
            except ValueError:
                logger.warning(f"Report {report.id} has unreadable metadata; forwarding without it")
        return cls(
            id=report.id,
            project_id=report.project_id,
            title=report.title,
            description=report.description,
            priority=report.priority,
            status=ReportStatus(report.status),
            metadata=metadata,
            created_at=report.created_at,
        )


def _get(data: Any, *path: str, default: Any = None) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return default
        data = data.get(key)
    return default if data is None else data


def _console_section(errors: Iterable[Dict[str, Any]]) -> str:
    errors = list(errors)[:_MAX_LIST_ITEMS]
    lines = []
    for e in errors:
        source = ""
        if e.get("source"):
            line = f":{e['line']}" if e.get("line") else ""
            source = f" _({e['source']}{line})_"
        lines.append(f"- `[{str(e.get('type', 'log')).upper()}]` {e.get('message', '')}{source}")
    return f"\n### Console Output ({len(errors)})\n" + "\n".join(lines) + "\n"


def _network_section(errors: Iterable[Dict[str, Any]]) -> str:
    errors = list(errors)[:_MAX_LIST_ITEMS]
    rows = []
    for e in errors:
        status = "Failed" if e.get("status") == 0 else e.get("status", "?")
        rows.append(f"| {status} {e.get('statusText', '')} | {e.get('method', '')} | {e.get('url', '')} |")
    return (
        f"\n### Network Errors ({len(errors)})\n"
        "| Status | Method | URL |\n"
        "|--------|--------|-----|\n" + "\n".join(rows) + "\n"
    )


def build_issue_body(snapshot: ReportSnapshot, app_url: Optional[str] = None) -> str:
    """Markdown body describing the report"""
    meta = snapshot.metadata
    device = _get(meta, "device", default={})
    viewport = _get(meta, "viewport", default={})

    parts = [
        "## Bug Report",
        "",
        f"**URL:** {_get(meta, 'url', default='N/A')}",
    ]
    if _get(meta, "title"):
        parts.append(f"**Page Title:** {meta['title']}")
    parts += [
        "",
        "### Description",
        snapshot.description or "No description provided.",
        "",
        "### Environment",
        "| Property | Value |",
        "|----------|-------|",
        f"| Browser | {_get(meta, 'browser', 'name', default='Unknown')} {_get(meta, 'browser', 'version', default='')} |",
        f"| Device | {_get(device, 'type', default='Unknown')} ({_get(device, 'os', default='Unknown')}) |",
        f"| Viewport | {_get(viewport, 'width', default='?')}x{_get(viewport, 'height', default='?')} |",
        f"| Timestamp | {_get(meta, 'timestamp', default=snapshot.created_at or 'N/A')} |",
        f"| Priority | {snapshot.priority or 'N/A'} |",
    ]
    body = "\n".join(parts) + "\n"

    if _get(meta, "consoleErrors"):
        body += _console_section(meta["consoleErrors"])
    if _get(meta, "networkErrors"):
        body += _network_section(meta["networkErrors"])

    if app_url:
        body += f"\n> [View full report]({app_url}/admin/reports/{snapshot.id})\n"

    return body


def _merge(*groups: Iterable[str]) -> Tuple[str, ...]:
    seen = []
    for group in groups:
        for item in group or ():
            if item and item not in seen:
                seen.append(item)
    return tuple(seen)


def build_issue_payload(
    snapshot: ReportSnapshot,
    *,
    default_labels: Iterable[str] = (),
    default_assignees: Iterable[str] = (),
    labels: Optional[Iterable[str]] = None,
    assignees: Optional[Iterable[str]] = None,
    for_update: bool = False,
    app_url: Optional[str] = None,
) -> IssuePayload:
    state = None
    if for_update:
        state = "closed" if snapshot.status in (ReportStatus.RESOLVED, ReportStatus.CLOSED) else "open"
    return IssuePayload(
        title=snapshot.title,
        body=build_issue_body(snapshot, app_url),
        labels=_merge(default_labels, labels or ()),
        assignees=_merge(default_assignees, assignees or ()),
        state=state,
    )
