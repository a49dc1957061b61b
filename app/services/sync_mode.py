"""Switching integrations between manual and automatic sync"""

import logging
import secrets
from typing import Callable, Dict

from sqlalchemy.orm import Session

from app.models import Integration, Report
from app.models.integration import SyncMode
from app.models.report import ReportSyncStatus
from app.services.app_settings import get_app_url
from app.services.errors import ConfigError, IntegrationUnavailableError, TrackerError, WebhookRegistrationError
from app.services.integration_store import IntegrationConfig, IntegrationStore
from app.services.trackers.base import IssueTrackerClient, build_tracker_client

logger = logging.getLogger(__name__)


def webhook_url(base_url: str, config: IntegrationConfig) -> str:
    return f"{base_url}/api/webhooks/{config.type.value}/{config.id}"


def count_unsynced(db: Session, project_id: str) -> int:
    return (
        db.query(Report)
        .filter(Report.project_id == project_id, Report.sync_status == ReportSyncStatus.NONE)
        .count()
    )


class SyncModeController:
    """Registers and removes tracker webhooks as the sync mode changes.

    Switching modes never enqueues anything; existing reports are pushed only
    through an explicit "sync existing" request.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        client_factory: Callable[[IntegrationConfig], IssueTrackerClient] = build_tracker_client,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory

    def set_sync_mode(self, integration_id: str, mode: SyncMode) -> Dict:
        mode = SyncMode(mode)
        db = self.session_factory()
        try:
            integration = IntegrationStore(db).get_model(integration_id)
            if not integration.is_active:
                raise IntegrationUnavailableError("Integration is disabled")
            config = IntegrationConfig.from_model(integration)

            if mode == SyncMode.AUTOMATIC:
                self._enable_automatic(db, integration, config)
            else:
                self._disable_automatic(integration, config)

            integration.sync_mode = mode
            db.commit()
            logger.info(f"Integration {integration_id} switched to {mode.value} sync")

            return {"sync_mode": mode, "unsynced_count": count_unsynced(db, integration.project_id)}
        finally:
            db.close()

    def _enable_automatic(self, db: Session, integration: Integration, config: IntegrationConfig) -> None:
        base_url = get_app_url(db)
        if not base_url:
            raise ConfigError(
                "The public app URL is not configured. Set it in settings (or APP_URL) "
                "before enabling automatic sync."
            )

        secret = secrets.token_urlsafe(32)
        url = webhook_url(base_url, config)
        client = self.client_factory(config)
        try:
            try:
                hook_id = client.create_webhook(url, secret)
            except TrackerError as e:
                logger.error(f"Webhook registration failed for integration {config.id}: {e}")
                raise WebhookRegistrationError(f"Failed to register webhook: {e}") from e
            # The old subscription goes only once its replacement exists.
            if config.webhook_id and config.webhook_id != hook_id:
                self._delete_quietly(client, config)
        finally:
            client.close()

        integration.webhook_id = hook_id
        integration.webhook_secret = secret
        logger.info(f"Registered webhook {hook_id} for integration {config.id} at {url}")

    def _disable_automatic(self, integration: Integration, config: IntegrationConfig) -> None:
        if config.webhook_id:
            client = self.client_factory(config)
            try:
                self._delete_quietly(client, config)
            finally:
                client.close()
        integration.webhook_id = None
        integration.webhook_secret = None

    @staticmethod
    def _delete_quietly(client: IssueTrackerClient, config: IntegrationConfig) -> None:
        try:
            client.delete_webhook(config.webhook_id)
        except Exception as e:
            logger.warning(f"Could not remove webhook {config.webhook_id} for integration {config.id}: {e}")
