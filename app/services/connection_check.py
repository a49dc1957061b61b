"""Credential and repository access check for an integration"""

import logging
from typing import Any, Callable, Dict

from sqlalchemy.orm import Session

from app.services.errors import TrackerError
from app.services.integration_store import IntegrationConfig, IntegrationStore
from app.services.trackers.base import IssueTrackerClient, build_tracker_client

logger = logging.getLogger(__name__)


class ConnectionChecker:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        client_factory: Callable[[IntegrationConfig], IssueTrackerClient] = build_tracker_client,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory

    def check(self, integration_id: str) -> Dict[str, Any]:
        """Try the integration's credentials against its repository.

        Tracker failures are reported in the result rather than raised; an
        unknown integration raises ValueError.
        """
        db = self.session_factory()
        try:
            config = IntegrationStore(db).get_integration(integration_id)
        finally:
            db.close()

        try:
            client = self.client_factory(config)
            try:
                repo_name = client.verify_connection()
            finally:
                client.close()
        except TrackerError as e:
            logger.warning(f"Connection test failed for integration {integration_id}: {e}")
            return {"success": False, "error": e.message}

        logger.info(f"Connection test succeeded for integration {integration_id} ({repo_name})")
        return {"success": True, "details": {"repo_name": repo_name}}
