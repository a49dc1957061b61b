"""Issue tracker integration endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List, Optional, Union
from pydantic import BaseModel, Field
from datetime import datetime

from app.models.base import get_db
from app.models import Integration
from app.models.integration import SyncMode, TrackerType
from app.services.sync_engine import SyncEngine, get_sync_engine

router = APIRouter(prefix="/api/integrations", tags=["integrations"])


class IntegrationCreate(BaseModel):
    project_id: str
    type: TrackerType
    name: str
    access_token: str
    owner: Optional[str] = None
    repo: str
    base_url: Optional[str] = None
    labels: List[str] = []
    assignees: List[str] = []
    is_active: bool = True


class IntegrationResponse(BaseModel):
    id: str
    project_id: str
    type: TrackerType
    name: str
    owner: Optional[str] = None
    repo: str
    base_url: Optional[str] = None
    is_active: bool
    sync_mode: SyncMode
    usage_count: int = 0
    last_used_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class SyncModeRequest(BaseModel):
    syncMode: SyncMode


class SyncExistingRequest(BaseModel):
    reportIds: Union[List[str], str] = Field(default="all")


@router.get("/", response_model=List[IntegrationResponse])
def list_integrations(project_id: Optional[str] = None, db: Session = Depends(get_db)):
    """List integrations"""
    query = db.query(Integration).order_by(Integration.created_at)
    if project_id:
        query = query.filter(Integration.project_id == project_id)
    return query.all()


@router.post("/", response_model=IntegrationResponse)
def create_integration(integration: IntegrationCreate, db: Session = Depends(get_db)):
    """Create a new integration (starts in manual sync mode)"""
    if integration.type == TrackerType.GITHUB and not integration.owner:
        raise HTTPException(status_code=400, detail="GitHub integrations require an owner")

    data = integration.model_dump()
    data["labels"] = ",".join(data["labels"])
    data["assignees"] = ",".join(data["assignees"])
    db_integration = Integration(**data, sync_mode=SyncMode.MANUAL)
    db.add(db_integration)
    db.commit()
    db.refresh(db_integration)
    return db_integration


@router.get("/{integration_id}", response_model=IntegrationResponse)
def get_integration(integration_id: str, db: Session = Depends(get_db)):
    """Get a specific integration"""
    integration = db.query(Integration).filter(Integration.id == integration_id).first()
    if not integration:
        raise HTTPException(status_code=404, detail="Integration not found")
    return integration


@router.post("/{integration_id}/sync-mode")
def set_sync_mode(
    integration_id: str,
    request: SyncModeRequest,
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Switch between manual and automatic sync.

    Automatic mode registers a webhook on the tracker; it fails with
    CONFIG_ERROR when the public app URL isn't configured.
    """
    try:
        result = engine.sync_mode.set_sync_mode(integration_id, request.syncMode)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"syncMode": result["sync_mode"], "unsyncedCount": result["unsynced_count"]}


@router.get("/{integration_id}/sync-status")
def get_sync_status(integration_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    try:
        status = engine.projection.get_sync_status(integration_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "syncMode": status["sync_mode"],
        "unsyncedCount": status["unsynced_count"],
        "queueLength": status["queue_length"],
        "processing": status["processing"],
    }


@router.post("/{integration_id}/sync-existing")
def sync_existing(
    integration_id: str,
    request: Optional[SyncExistingRequest] = None,
    engine: SyncEngine = Depends(get_sync_engine),
):
    """Queue existing reports: a list of ids, or "all" never-synced reports"""
    report_ids = request.reportIds if request is not None else "all"
    if isinstance(report_ids, str) and report_ids != "all":
        raise HTTPException(status_code=400, detail='reportIds must be a list of ids or "all"')
    try:
        result = engine.queue.enqueue_many(integration_id, report_ids)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    queued = result["queued"]
    return {
        "queued": queued,
        "message": f"{queued} report{'s' if queued != 1 else ''} queued for sync",
        "batchId": result["batch_id"],
    }


@router.delete("/{integration_id}/sync-batches/{batch_id}")
def cancel_sync_batch(integration_id: str, batch_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    """Cancel entries of a bulk sync that haven't started yet"""
    return {"cancelled": engine.queue.cancel_batch(batch_id)}


@router.post("/{integration_id}/test")
def check_integration_connection(integration_id: str, engine: SyncEngine = Depends(get_sync_engine)):
    """Check the integration's credentials and repository access"""
    try:
        result = engine.connections.check(integration_id)
    except ValueError as e:
        raise HTTPException(status_code=404, detail=str(e))
    response = {"success": result["success"]}
    if "error" in result:
        response["error"] = result["error"]
    if "details" in result:
        response["details"] = {"repoName": result["details"]["repo_name"]}
    return response
