from __future__ import annotations

import logging

from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..models import NotificationRecord
from .notification_types import (
    DeliveryStatus,
    GuaranteeResult,
    NotificationData,
    NotificationPayload,
    NotificationRequest,
    NotificationResult,
    RoleTarget,
    SendFunction,
    SendResult,
    Target,
    TrackedSendResult,
    UserTarget,
)
from .queue import NotificationQueue, QueueEntry
from .scheduler import DelayedTaskScheduler
from .sender import PushSender
from .tracker import NotificationRecordError, NotificationTracker

logger = logging.getLogger(__name__)


class NotificationService:
    """
    Owns the delivery pipeline: sender, queue, tracker and retry scheduler.

    Construct one per process (or per test) and pass it around; nothing here
    is module-global.
    """

    def __init__(
        self,
        sender: PushSender,
        session_factory: sessionmaker,
        queue_interval_ms: int = 100,
        queue_max_concurrent: int = 5,
        max_retries: int = 3,
        retry_delays: tuple[float, ...] = (2.0, 8.0, 32.0),
        lookback_hours: int = 24,
    ) -> None:
        self.sender = sender
        self.scheduler = DelayedTaskScheduler()
        self.tracker = NotificationTracker(
            session_factory,
            self.scheduler,
            max_retries=max_retries,
            retry_delays=retry_delays,
            lookback_hours=lookback_hours,
        )
        self.queue = NotificationQueue(
            self._process_queue_entry,
            interval_ms=queue_interval_ms,
            max_concurrent=queue_max_concurrent,
        )

    @classmethod
    def from_settings(cls, settings: Settings, session_factory: sessionmaker) -> "NotificationService":
        sender = PushSender(
            settings.push_endpoint_url,
            api_key=settings.push_api_key,
            timeout_sec=settings.push_timeout_sec,
        )
        return cls(
            sender,
            session_factory,
            queue_interval_ms=settings.queue_interval_ms,
            queue_max_concurrent=settings.queue_max_concurrent,
            max_retries=settings.max_retry_attempts,
            retry_delays=tuple(settings.retry_delays_sec),
            lookback_hours=settings.retry_lookback_hours,
        )

    # ---------- Lifecycle ----------

    def start(self) -> int:
        """Start the queue worker and reschedule retries lost to a restart."""
        self.queue.start()
        return self.recover()

    def recover(self) -> int:
        return self.tracker.retry_failed_notifications(self._send_factory)

    async def stop(self) -> None:
        await self.queue.stop()
        await self.scheduler.aclose()

    # ---------- Sending ----------

    def _send_fn(self, target: Target, payload: NotificationPayload) -> SendFunction:
        async def _send() -> SendResult:
            return await self.sender.send(target, payload)

        return _send

    def _send_factory(self, rec: NotificationRecord) -> SendFunction:
        data = NotificationData(
            title=rec.title,
            body=rec.body,
            user_id=rec.user_id,
            role=rec.target_role,
            project_id=rec.project_id,
        )
        return self._send_fn(data.target(), NotificationPayload(rec.title, rec.body))

    async def send_notification(self, request: NotificationRequest) -> SendResult:
        """One untracked attempt."""
        return await self.sender.send(request.target, request.payload)

    async def send_tracked_notification(self, request: NotificationRequest) -> TrackedSendResult:
        """
        One tracked attempt per recipient; failures are retried by the tracker.
        User targets get a record per user, role targets a single record.
        A recipient whose record cannot be written gets a failed result and is
        not sent; NotificationRecordError is raised only if no record was written.
        """
        target = request.target
        payload = request.payload

        if isinstance(target, UserTarget):
            recipients = [
                (NotificationData(payload.title, payload.body, user_id=uid, project_id=request.project_id),
                 UserTarget((uid,)))
                for uid in target.user_ids
            ]
        elif isinstance(target, RoleTarget):
            recipients = [
                (NotificationData(payload.title, payload.body, role=target.role, project_id=request.project_id),
                 target)
            ]
        else:
            raise TypeError(f"unsupported target {target!r}")

        results = []
        for data, single_target in recipients:
            try:
                result = await self.tracker.track_notification_delivery(
                    data, self._send_fn(single_target, payload)
                )
            except NotificationRecordError as exc:
                # keep going for the other recipients
                logger.error("[service] skipping %s: %s", single_target.to_wire(), exc)
                result = NotificationResult(
                    success=False,
                    notification_id=None,
                    delivery_status=DeliveryStatus.FAILED,
                    error=str(exc),
                )
            results.append(result)

        if results and all(r.notification_id is None for r in results):
            raise NotificationRecordError("Failed to create notification record")

        ok = all(r.success for r in results)
        errors = ", ".join(r.error for r in results if not r.success and r.error)
        return TrackedSendResult(success=ok, results=results, error=None if ok else errors)

    def queue_notification(self, request: NotificationRequest) -> str:
        return self.queue.enqueue(request)

    async def _process_queue_entry(self, entry: QueueEntry) -> TrackedSendResult:
        result = await self.send_tracked_notification(entry.request)
        if result.success:
            logger.info("[service] processed queued notification %s", entry.id)
        else:
            logger.warning("[service] queued notification %s failed: %s", entry.id, result.error)
        return result

    async def send_notification_with_guarantee(self, request: NotificationRequest) -> GuaranteeResult:
        """Try now; on any failure hand the request to the queue."""
        try:
            immediate = await self.send_notification(request)
            reason = immediate.error
        except Exception as exc:
            logger.exception("[service] immediate send raised")
            immediate = None
            reason = str(exc) or type(exc).__name__

        if immediate is not None and immediate.success:
            self._record_immediate_delivery(request)
            return GuaranteeResult(success=True, immediate=True, queue_id=None)

        queue_id = self.queue_notification(request)
        return GuaranteeResult(
            success=True,
            immediate=False,
            queue_id=queue_id,
            error=f"Queued after initial failure: {reason or 'unknown error'}",
        )

    def _record_immediate_delivery(self, request: NotificationRequest) -> None:
        """Keep history complete for sends that never went through the tracker."""
        if not isinstance(request.target, UserTarget):
            return
        for uid in request.target.user_ids:
            data = NotificationData(
                request.payload.title,
                request.payload.body,
                user_id=uid,
                project_id=request.project_id,
            )
            try:
                self.tracker.create_notification_record(data, status=DeliveryStatus.DELIVERED)
            except NotificationRecordError:
                # delivery already happened; history is best effort here
                logger.error("[service] could not record delivered notification for %s", uid)

    # ---------- Observability ----------

    def get_queue_status(self) -> dict:
        return self.queue.get_status()

    def clear_queue(self) -> None:
        self.queue.clear()
