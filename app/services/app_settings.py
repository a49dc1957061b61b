"""Public app URL lookup (DB setting first, then APP_URL)"""

from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models import SystemSetting

APP_URL_KEY = "app_url"


def normalize_base_url(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip().rstrip("/")
    return value or None


def get_app_url(db: Session) -> Optional[str]:
    row = db.query(SystemSetting).filter(SystemSetting.key == APP_URL_KEY).first()
    if row is not None and normalize_base_url(row.value):
        return normalize_base_url(row.value)
    return normalize_base_url(settings.app_url)


def set_app_url(db: Session, value: Optional[str]) -> Optional[str]:
    normalized = normalize_base_url(value)
    if normalized and not normalized.startswith(("http://", "https://")):
        raise ValueError("App URL must start with http:// or https://")

    row = db.query(SystemSetting).filter(SystemSetting.key == APP_URL_KEY).first()
    if row is None:
        row = SystemSetting(key=APP_URL_KEY)
        db.add(row)
    row.value = normalized
    db.commit()
    return normalized
