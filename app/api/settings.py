"""System settings endpoints"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import Optional
from pydantic import BaseModel

from app.models.base import get_db
from app.services.app_settings import get_app_url, set_app_url

router = APIRouter(prefix="/api/settings", tags=["settings"])


class AppUrlUpdate(BaseModel):
    appUrl: Optional[str] = None


@router.get("/app-url")
def read_app_url(db: Session = Depends(get_db)):
    """Public base URL used for webhook registration and report links"""
    return {"appUrl": get_app_url(db)}


@router.put("/app-url")
def update_app_url(update: AppUrlUpdate, db: Session = Depends(get_db)):
    try:
        set_app_url(db, update.appUrl)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"appUrl": get_app_url(db)}
