"""Report endpoints (creation, status edits and tracker forwarding)"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Any, Dict, List, Optional
from pydantic import BaseModel
from datetime import datetime
import json

from app.models.base import get_db
from app.models import Report
from app.models.report import ReportStatus, ReportSyncStatus
from app.services.sync_engine import SyncEngine, get_sync_engine

router = APIRouter(prefix="/api/reports", tags=["reports"])


class ReportCreate(BaseModel):
    project_id: str
    title: str
    description: Optional[str] = None
    priority: str = "medium"
    metadata: Dict[str, Any] = {}


class ReportResponse(BaseModel):
    id: str
    project_id: str
    title: str
    description: Optional[str] = None
    priority: Optional[str] = None
    status: ReportStatus
    sync_status: ReportSyncStatus
    external_issue_number: Optional[int] = None
    external_issue_url: Optional[str] = None
    sync_error: Optional[str] = None
    synced_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    status: ReportStatus


class ForwardRequest(BaseModel):
    labels: Optional[List[str]] = None
    assignees: Optional[List[str]] = None


@router.post("/", response_model=ReportResponse)
def create_report(
    report: ReportCreate,
    db: Session = Depends(get_db),
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Store a report; queued for sync when the project syncs automatically"""
    db_report = Report(
        project_id=report.project_id,
        title=report.title,
        description=report.description,
        priority=report.priority,
        metadata_json=json.dumps(report.metadata) if report.metadata else None,
    )
    db.add(db_report)
    db.commit()

    engine.hooks.on_report_created(db_report.id)
    db.refresh(db_report)
    return db_report


@router.get("/{report_id}", response_model=ReportResponse)
def get_report(report_id: str, db: Session = Depends(get_db)):
    report = db.query(Report).filter(Report.id == report_id).first()
    if not report:
        raise HTTPException(status_code=404, detail="Report not found")
    return report


@router.patch("/{report_id}/status", response_model=ReportResponse)
def update_report_status(
    report_id: str,
    update: StatusUpdate,
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Human status change; pushed to the linked issue in automatic mode"""
    try:
        return engine.hooks.update_status(report_id, update.status)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.post("/{report_id}/forward/{integration_id}")
def forward_report(
    report_id: str,
    integration_id: str,
    request: Optional[ForwardRequest] = None,
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Create (or update) the tracker issue for a report right away"""
    request = request or ForwardRequest()
    try:
        result = engine.worker.forward_now(
            report_id,
            integration_id,
            labels=request.labels,
            assignees=request.assignees,
        )
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"type": result.type, "id": result.external_id, "url": result.url}


@router.post("/{report_id}/retry-sync")
def retry_sync(report_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    """Re-queue a report whose sync failed"""
    try:
        engine.queue.retry(report_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"queued": True}


@router.get("/{report_id}/sync-status")
def get_report_sync_status(report_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    try:
        status = engine.projection.get_report_sync_status(report_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))

    response: Dict[str, Any] = {"status": status["status"]}
    if "external_ref" in status:
        response["externalRef"] = {
            "integrationId": status["external_ref"]["integration_id"],
            "id": status["external_ref"]["id"],
            "url": status["external_ref"]["url"],
        }
    if "error" in status:
        response["error"] = status["error"]
    if "synced_at" in status:
        response["syncedAt"] = status["synced_at"]
    return response
