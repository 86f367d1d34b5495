"""
Delivery records and retry orchestration for tracked notifications.

Every tracked send gets a row in ``notification_history``. Failed sends are
retried through a :class:`DelayedTaskScheduler` with exponential backoff
until ``max_retries`` is reached; after that the row stays ``failed``.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..models import NotificationRecord
from .notification_types import (
    DeliveryStatus,
    NotificationData,
    NotificationResult,
    SendFunction,
    SendResult,
)
from .scheduler import DelayedTaskScheduler
from .sender import NON_RETRYABLE

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_SEC = (2.0, 8.0, 32.0)

SendFactory = Callable[[NotificationRecord], SendFunction]


class NotificationRecordError(RuntimeError):
    """The initial delivery record could not be written."""


async def _attempt(send_fn: SendFunction) -> SendResult:
    try:
        return await send_fn()
    except Exception as exc:
        logger.exception("[tracker] send function raised")
        return SendResult(success=False, error=str(exc) or type(exc).__name__)


class NotificationTracker:
    def __init__(
        self,
        session_factory: sessionmaker,
        scheduler: DelayedTaskScheduler,
        max_retries: int = MAX_RETRY_ATTEMPTS,
        retry_delays: Sequence[float] = RETRY_DELAYS_SEC,
        lookback_hours: int = 24,
    ) -> None:
        self._session_factory = session_factory
        self._scheduler = scheduler
        self.max_retries = max_retries
        self.retry_delays = tuple(retry_delays)
        self.lookback_hours = lookback_hours

    # ---------- Records ----------

    def create_notification_record(
        self,
        data: NotificationData,
        status: DeliveryStatus = DeliveryStatus.PENDING,
    ) -> int:
        db: Session = self._session_factory()
        try:
            rec = NotificationRecord(
                user_id=data.user_id,
                target_role=data.role if data.user_id is None else None,
                project_id=data.project_id,
                title=data.title,
                body=data.body,
                delivery_status=status.value,
                retry_count=0,
                delivered_at=datetime.utcnow() if status == DeliveryStatus.DELIVERED else None,
            )
            db.add(rec)
            db.commit()
            db.refresh(rec)
            return rec.id
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("[tracker] failed to create notification record: %s", exc)
            raise NotificationRecordError("Failed to create notification record") from exc
        finally:
            db.close()

    def update_delivery_status(
        self,
        notification_id: int,
        status: DeliveryStatus,
        error_message: Optional[str] = None,
    ) -> None:
        db: Session = self._session_factory()
        try:
            rec = db.get(NotificationRecord, notification_id)
            if rec is None:
                logger.warning("[tracker] notification %s not found", notification_id)
                return
            rec.delivery_status = status.value
            if status == DeliveryStatus.DELIVERED:
                rec.delivered_at = datetime.utcnow()
                rec.error_message = None
            elif error_message:
                rec.error_message = error_message
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("[tracker] error updating notification %s", notification_id)
        finally:
            db.close()

    def increment_retry_count(self, notification_id: int) -> Optional[int]:
        """
        Bump ``retry_count`` (capped at ``max_retries``) and return it.
        Returns None if the row is missing or the write fails.
        """
        db: Session = self._session_factory()
        try:
            rec = db.get(NotificationRecord, notification_id)
            if rec is None:
                logger.warning("[tracker] notification %s not found", notification_id)
                return None
            rec.retry_count = min((rec.retry_count or 0) + 1, self.max_retries)
            db.commit()
            return rec.retry_count
        except SQLAlchemyError:
            db.rollback()
            logger.exception("[tracker] error incrementing retry count for %s", notification_id)
            return None
        finally:
            db.close()

    def get_retry_count(self, notification_id: int) -> Optional[int]:
        db: Session = self._session_factory()
        try:
            rec = db.get(NotificationRecord, notification_id)
            return None if rec is None else (rec.retry_count or 0)
        except SQLAlchemyError:
            logger.exception("[tracker] error reading retry count for %s", notification_id)
            return None
        finally:
            db.close()

    def get_failed_notifications(self) -> List[NotificationRecord]:
        """Failed rows still worth retrying: recent, below the cap, and not
        stopped by a configuration or permission error."""
        since = datetime.utcnow() - timedelta(hours=self.lookback_hours)
        db: Session = self._session_factory()
        try:
            return (
                db.query(NotificationRecord)
                .filter(
                    NotificationRecord.delivery_status == DeliveryStatus.FAILED.value,
                    NotificationRecord.retry_count < self.max_retries,
                    NotificationRecord.created_at >= since,
                    or_(
                        NotificationRecord.error_message.is_(None),
                        NotificationRecord.error_message.notin_(sorted(NON_RETRYABLE)),
                    ),
                )
                .order_by(NotificationRecord.created_at.asc())
                .all()
            )
        finally:
            db.close()

    # ---------- Delivery ----------

    async def track_notification_delivery(
        self,
        data: NotificationData,
        send_fn: SendFunction,
    ) -> NotificationResult:
        """
        Record, send once, and mark the outcome.
        Raises NotificationRecordError if the record cannot be created.
        """
        notification_id = self.create_notification_record(data)

        result = await _attempt(send_fn)
        if result.success:
            self.update_delivery_status(notification_id, DeliveryStatus.DELIVERED)
            return NotificationResult(
                success=True,
                notification_id=notification_id,
                delivery_status=DeliveryStatus.DELIVERED,
            )

        error = result.error or "Send function returned failure"
        self.update_delivery_status(notification_id, DeliveryStatus.FAILED, error)
        if result.retryable:
            self.schedule_retry(notification_id, send_fn)
        else:
            logger.info("[tracker] notification %s not retryable: %s", notification_id, error)

        return NotificationResult(
            success=False,
            notification_id=notification_id,
            delivery_status=DeliveryStatus.FAILED,
            error=error,
        )

    def schedule_retry(self, notification_id: int, send_fn: SendFunction) -> bool:
        current = self.get_retry_count(notification_id)
        if current is None:
            return False
        if current >= self.max_retries:
            logger.info("[tracker] max retry attempts reached for notification %s", notification_id)
            return False

        delay = self.retry_delays[min(current, len(self.retry_delays) - 1)]

        async def _fire() -> None:
            await self._run_retry(notification_id, send_fn)

        self._scheduler.schedule(notification_id, delay, _fire, attempt_number=current + 1)
        logger.info("[tracker] scheduled retry for notification %s in %.1fs", notification_id, delay)
        return True

    async def _run_retry(self, notification_id: int, send_fn: SendFunction) -> None:
        current = self.get_retry_count(notification_id)
        if current is None or current >= self.max_retries:
            return

        attempt = self.increment_retry_count(notification_id)
        if attempt is None:
            # row stays failed below the cap; the recovery sweep can pick it up
            logger.warning("[tracker] abandoning retry for notification %s", notification_id)
            return
        logger.info("[tracker] retrying notification %s (attempt %d)", notification_id, attempt)

        result = await _attempt(send_fn)
        if result.success:
            self.update_delivery_status(notification_id, DeliveryStatus.DELIVERED)
            logger.info("[tracker] notification %s delivered on retry %d", notification_id, attempt)
            return

        self.update_delivery_status(
            notification_id, DeliveryStatus.FAILED, result.error or "Retry failed"
        )
        if attempt < self.max_retries and result.retryable:
            self.schedule_retry(notification_id, send_fn)
        else:
            logger.warning(
                "[tracker] notification %s failed after %d retries", notification_id, attempt
            )

    def retry_failed_notifications(self, send_factory: SendFactory) -> int:
        """
        Reschedule failed notifications whose timers were lost (e.g. restart).
        Returns the number of retries scheduled.
        """
        failed = self.get_failed_notifications()
        logger.info("[tracker] found %d failed notifications to retry", len(failed))

        scheduled = 0
        for rec in failed:
            if self.schedule_retry(rec.id, send_factory(rec)):
                scheduled += 1
        return scheduled

    # ---------- Observability ----------

    def get_retry_queue_status(self) -> list[dict]:
        return [
            {
                "notification_id": task.key,
                "attempt_number": task.attempt_number,
                "scheduled_at": task.scheduled_at,
                "scheduled": True,
            }
            for task in self._scheduler.pending()
        ]

    def clear_all_retries(self) -> int:
        count = self._scheduler.cancel_all()
        logger.info("[tracker] cleared %d pending notification retries", count)
        return count

    def get_notification_history(self, user_id: str, limit: int = 50) -> List[NotificationRecord]:
        db: Session = self._session_factory()
        try:
            return (
                db.query(NotificationRecord)
                .filter(NotificationRecord.user_id == user_id)
                .order_by(NotificationRecord.created_at.desc(), NotificationRecord.id.desc())
                .limit(limit)
                .all()
            )
        finally:
            db.close()

    def get_notification_stats(
        self,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> dict:
        db: Session = self._session_factory()
        try:
            q = db.query(NotificationRecord.delivery_status, func.count(NotificationRecord.id))
            if start_date is not None:
                q = q.filter(NotificationRecord.created_at >= start_date)
            if end_date is not None:
                q = q.filter(NotificationRecord.created_at <= end_date)
            counts = dict(q.group_by(NotificationRecord.delivery_status).all())
        finally:
            db.close()

        total = sum(counts.values())
        delivered = counts.get(DeliveryStatus.DELIVERED.value, 0)
        return {
            "total": total,
            "delivered": delivered,
            "failed": counts.get(DeliveryStatus.FAILED.value, 0),
            "pending": counts.get(DeliveryStatus.PENDING.value, 0),
            "delivery_rate": round(delivered / total * 100) if total else 0,
        }

    def cleanup_old_records(self, retention_days: int = 30) -> int:
        """Delete delivered/failed records older than ``retention_days``."""
        cutoff = datetime.utcnow() - timedelta(days=retention_days)
        db: Session = self._session_factory()
        try:
            deleted = (
                db.query(NotificationRecord)
                .filter(
                    NotificationRecord.created_at < cutoff,
                    NotificationRecord.delivery_status.in_(
                        (DeliveryStatus.DELIVERED.value, DeliveryStatus.FAILED.value)
                    ),
                )
                .delete(synchronize_session=False)
            )
            db.commit()
        finally:
            db.close()
        if deleted:
            logger.info("[tracker] cleaned up %d old notification records", deleted)
        return deleted


async def retention_cleanup_loop(
    tracker: NotificationTracker,
    retention_days: int = 30,
    interval_seconds: int = 24 * 60 * 60,
) -> None:
    """
    Background loop that purges old delivered/failed history once per interval.
    """
    while True:
        try:
            tracker.cleanup_old_records(retention_days)
        except SQLAlchemyError:
            logger.exception("[tracker] error during notification cleanup")

        await asyncio.sleep(interval_seconds)
