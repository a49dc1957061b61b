"""Read access to integrations in the shape the sync engine consumes.

Credential storage and encryption live outside the engine; by the time a
config reaches us the access token is already decrypted.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from app.models import Integration
from app.models.integration import SyncMode, TrackerType


def split_csv(value: Optional[str]) -> Tuple[str, ...]:
    return tuple(part.strip() for part in (value or "").split(",") if part.strip())


@dataclass(frozen=True)
class IntegrationConfig:
    id: str
    project_id: str
    type: TrackerType
    is_active: bool
    sync_mode: SyncMode
    access_token: str
    owner: Optional[str]
    repo: str
    base_url: Optional[str] = None
    labels: Tuple[str, ...] = ()
    assignees: Tuple[str, ...] = ()
    webhook_id: Optional[str] = None
    webhook_secret: Optional[str] = None

    @classmethod
    def from_model(cls, integration: Integration) -> "IntegrationConfig":
        return cls(
            id=integration.id,
            project_id=integration.project_id,
            type=TrackerType(integration.type),
            is_active=bool(integration.is_active),
            sync_mode=SyncMode(integration.sync_mode or SyncMode.MANUAL),
            access_token=integration.access_token,
            owner=integration.owner,
            repo=integration.repo,
            base_url=integration.base_url,
            labels=split_csv(integration.labels),
            assignees=split_csv(integration.assignees),
            webhook_id=integration.webhook_id,
            webhook_secret=integration.webhook_secret,
        )


class IntegrationStore:
    """Looks up integrations for the engine"""

    def __init__(self, db: Session):
        self.db = db

    def get_model(self, integration_id: str) -> Integration:
        integration = self.db.query(Integration).filter(Integration.id == integration_id).first()
        if not integration:
            raise ValueError(f"Integration {integration_id} not found")
        return integration

    def get_integration(self, integration_id: str) -> IntegrationConfig:
        return IntegrationConfig.from_model(self.get_model(integration_id))

    def find_automatic_integration(self, project_id: str) -> Optional[Integration]:
        """The active automatic-mode integration of a project, if any."""
        return (
            self.db.query(Integration)
            .filter(
                Integration.project_id == project_id,
                Integration.is_active == True,  # noqa: E712
                Integration.sync_mode == SyncMode.AUTOMATIC,
            )
            .order_by(Integration.created_at)
            .first()
        )

    def find_active_integration(self, project_id: str) -> Optional[Integration]:
        return (
            self.db.query(Integration)
            .filter(Integration.project_id == project_id, Integration.is_active == True)  # noqa: E712
            .order_by(Integration.created_at)
            .first()
        )
