from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, model_validator

from ..core.notification_types import (
    NotificationPayload,
    NotificationRequest,
    Priority,
    RoleTarget,
    UserTarget,
)
from ..core.service import NotificationService
from ..core.tracker import NotificationRecordError

router = APIRouter(prefix="/notifications", tags=["notifications"])


def get_service(request: Request) -> NotificationService:
    return request.app.state.notification_service


# ---------- Schemas ----------

class TargetIn(BaseModel):
    role: Optional[str] = None
    userIds: Optional[List[str]] = None

    @model_validator(mode="after")
    def validate_one_of(self):
        if bool(self.role) == bool(self.userIds):
            raise ValueError("target must have exactly one of 'role' or 'userIds'")
        return self


class PayloadIn(BaseModel):
    title: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)


class NotificationIn(BaseModel):
    target: TargetIn
    payload: PayloadIn
    priority: Priority = Priority.NORMAL
    project_id: Optional[int] = None

    def to_request(self) -> NotificationRequest:
        if self.target.userIds:
            target = UserTarget(tuple(self.target.userIds))
        else:
            target = RoleTarget(self.target.role)
        return NotificationRequest(
            target=target,
            payload=NotificationPayload(self.payload.title, self.payload.body),
            priority=self.priority,
            project_id=self.project_id,
        )


class GuaranteeOut(BaseModel):
    success: bool
    immediate: bool
    queue_id: Optional[str] = None
    error: Optional[str] = None


class QueuedOut(BaseModel):
    queue_id: str


class TrackedItemOut(BaseModel):
    success: bool
    notification_id: Optional[int] = None
    delivery_status: str
    error: Optional[str] = None


class TrackedOut(BaseModel):
    success: bool
    results: List[TrackedItemOut]
    error: Optional[str] = None


class NotificationOut(BaseModel):
    id: int
    user_id: Optional[str]
    target_role: Optional[str]
    project_id: Optional[int]
    title: str
    body: str
    delivery_status: str
    retry_count: int
    error_message: Optional[str]
    created_at: datetime
    delivered_at: Optional[datetime]

    class Config:
        from_attributes = True


class StatsOut(BaseModel):
    total: int
    delivered: int
    failed: int
    pending: int
    delivery_rate: int


class QueueStatusOut(BaseModel):
    queue_length: int
    processing: bool
    active_count: int


class RetryOut(BaseModel):
    notification_id: int
    attempt_number: int
    scheduled_at: datetime
    scheduled: bool


class ClearedOut(BaseModel):
    cleared: int


class RecoveredOut(BaseModel):
    scheduled: int


# ---------- Sending ----------

@router.post("/send", response_model=GuaranteeOut)
async def send_with_guarantee(payload: NotificationIn, service: NotificationService = Depends(get_service)):
    result = await service.send_notification_with_guarantee(payload.to_request())
    return GuaranteeOut(
        success=result.success,
        immediate=result.immediate,
        queue_id=result.queue_id,
        error=result.error,
    )


@router.post("/queue", response_model=QueuedOut, status_code=status.HTTP_202_ACCEPTED)
async def queue_notification(payload: NotificationIn, service: NotificationService = Depends(get_service)):
    return QueuedOut(queue_id=service.queue_notification(payload.to_request()))


@router.post("/track", response_model=TrackedOut)
async def send_tracked(payload: NotificationIn, service: NotificationService = Depends(get_service)):
    try:
        result = await service.send_tracked_notification(payload.to_request())
    except NotificationRecordError as exc:
        raise HTTPException(status_code=503, detail=str(exc))

    return TrackedOut(
        success=result.success,
        results=[
            TrackedItemOut(
                success=r.success,
                notification_id=r.notification_id,
                delivery_status=r.delivery_status.value,
                error=r.error,
            )
            for r in result.results
        ],
        error=result.error,
    )


# ---------- History & stats ----------

@router.get("/history/{user_id}", response_model=List[NotificationOut])
def notification_history(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    service: NotificationService = Depends(get_service),
):
    return service.tracker.get_notification_history(user_id, limit)


@router.get("/stats", response_model=StatsOut)
def notification_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    service: NotificationService = Depends(get_service),
):
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="start_date must be before end_date")
    return service.tracker.get_notification_stats(start_date, end_date)


# ---------- Queue & retries ----------

@router.get("/queue/status", response_model=QueueStatusOut)
def queue_status(service: NotificationService = Depends(get_service)):
    return service.get_queue_status()


@router.delete("/queue", status_code=status.HTTP_204_NO_CONTENT)
async def clear_queue(service: NotificationService = Depends(get_service)):
    service.clear_queue()
    return


@router.get("/retries", response_model=List[RetryOut])
def retry_status(service: NotificationService = Depends(get_service)):
    return service.tracker.get_retry_queue_status()


@router.delete("/retries", response_model=ClearedOut)
async def clear_retries(service: NotificationService = Depends(get_service)):
    return ClearedOut(cleared=service.tracker.clear_all_retries())


@router.post("/retries/recover", response_model=RecoveredOut)
async def recover_retries(service: NotificationService = Depends(get_service)):
    return RecoveredOut(scheduled=service.recover())
