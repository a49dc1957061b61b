"""Sync activity endpoints"""
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List, Optional
from pydantic import BaseModel
from datetime import datetime

from app.models.base import get_db
from app.models import SyncLog
from app.models.sync_log import SyncDirection, SyncStatus

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncLogResponse(BaseModel):
    id: int
    integration_id: str
    report_id: Optional[str] = None
    issue_number: Optional[int] = None
    status: SyncStatus
    direction: Optional[SyncDirection] = None
    message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    limit: int = 100,
    integration_id: Optional[str] = None,
    report_id: Optional[str] = None,
    status: Optional[SyncStatus] = None,
    direction: Optional[SyncDirection] = None,
    db: Session = Depends(get_db)
):
    """List sync logs, newest first"""
    query = db.query(SyncLog).order_by(SyncLog.created_at.desc(), SyncLog.id.desc())
    if integration_id:
        query = query.filter(SyncLog.integration_id == integration_id)
    if report_id:
        query = query.filter(SyncLog.report_id == report_id)
    if status:
        query = query.filter(SyncLog.status == status)
    if direction:
        query = query.filter(SyncLog.direction == direction)
    logs = query.limit(limit).all()
    return logs
