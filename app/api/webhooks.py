"""Inbound tracker webhook endpoints.

Trackers retry on non-2xx responses, so every delivery is acknowledged with 200
and the outcome is reported in the body.
"""
import logging

from fastapi import APIRouter, Depends, Request

from app.models.integration import TrackerType
from app.services.reconciler import REJECTED
from app.services.sync_engine import SyncEngine, get_sync_engine
from app.services.trackers.base import WebhookDelivery

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def read_raw_body(request: Request) -> bytes:
    """Signatures are computed over the exact bytes received."""
    return await request.body()


def _handle(engine: SyncEngine, integration_id: str, delivery: WebhookDelivery, tracker_type: TrackerType) -> dict:
    try:
        outcome = engine.reconciler.handle_event(integration_id, delivery, tracker_type)
    except Exception as e:
        logger.exception(f"Error handling {tracker_type.value} webhook for integration {integration_id}: {e}")
        outcome = REJECTED
    return {"message": outcome}


@router.post("/github/{integration_id}")
def github_webhook(
    integration_id: str,
    request: Request,
    raw_body: bytes = Depends(read_raw_body),
    engine: SyncEngine = Depends(get_sync_engine),
):
    delivery = WebhookDelivery(
        raw_body=raw_body,
        signature=request.headers.get("X-Hub-Signature-256"),
        event_type=request.headers.get("X-GitHub-Event"),
        delivery_id=request.headers.get("X-GitHub-Delivery"),
    )
    return _handle(engine, integration_id, delivery, TrackerType.GITHUB)


@router.post("/gitlab/{integration_id}")
def gitlab_webhook(
    integration_id: str,
    request: Request,
    raw_body: bytes = Depends(read_raw_body),
    engine: SyncEngine = Depends(get_sync_engine),
):
    delivery = WebhookDelivery(
        raw_body=raw_body,
        signature=request.headers.get("X-Gitlab-Token"),
        event_type=request.headers.get("X-Gitlab-Event"),
        delivery_id=request.headers.get("X-Gitlab-Event-UUID"),
    )
    return _handle(engine, integration_id, delivery, TrackerType.GITLAB)
