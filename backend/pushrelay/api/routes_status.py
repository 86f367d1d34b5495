from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from ..config import settings
from ..core.service import NotificationService
from .routes_notifications import QueueStatusOut, get_service

router = APIRouter(tags=["status"])


class HealthResponse(BaseModel):
    status: str
    app: str
    environment: str
    now: datetime
    push_configured: bool
    queue: QueueStatusOut
    pending_retries: int


@router.get("/health", response_model=HealthResponse)
def health(service: NotificationService = Depends(get_service)):
    return HealthResponse(
        status="ok",
        app=settings.app_name,
        environment=settings.environment,
        now=datetime.utcnow(),
        push_configured=bool(service.sender.endpoint_url),
        queue=QueueStatusOut(**service.get_queue_status()),
        pending_retries=len(service.tracker.get_retry_queue_status()),
    )
