from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from .notification_types import (
    GuaranteeResult,
    NotificationPayload,
    NotificationRequest,
    Priority,
    RoleTarget,
    UserTarget,
)
from .service import NotificationService

logger = logging.getLogger(__name__)

ADJUSTMENT_LABELS = {"word_count": "word count", "deadline": "deadline"}


class WorkflowNotifier:
    """Notifications for the client -> agent -> worker project workflow."""

    def __init__(self, service: NotificationService) -> None:
        self._service = service

    async def _notify_users(
        self,
        title: str,
        body: str,
        user_ids: Iterable[Optional[str]],
        project_id: Optional[int] = None,
        exclude_user_id: Optional[str] = None,
        priority: Priority = Priority.NORMAL,
    ) -> Optional[GuaranteeResult]:
        targets: List[str] = []
        for uid in user_ids:
            if uid and uid != exclude_user_id and uid not in targets:
                targets.append(uid)

        if not targets:
            logger.debug("[workflow] no recipients for %r", title)
            return None

        return await self._service.send_notification_with_guarantee(
            NotificationRequest(
                target=UserTarget(tuple(targets)),
                payload=NotificationPayload(title, body),
                priority=priority,
                project_id=project_id,
            )
        )

    async def _notify_roles(
        self,
        title: str,
        body: str,
        roles: Sequence[str],
        project_id: Optional[int] = None,
        priority: Priority = Priority.NORMAL,
    ) -> List[GuaranteeResult]:
        results = []
        for role in dict.fromkeys(roles):
            results.append(
                await self._service.send_notification_with_guarantee(
                    NotificationRequest(
                        target=RoleTarget(role),
                        payload=NotificationPayload(title, body),
                        priority=priority,
                        project_id=project_id,
                    )
                )
            )
        return results

    # ---------- Client -> Agent ----------

    async def notify_new_project_submission(self, project_id: int, project_title: str):
        return await self._notify_roles(
            "📋 New Project Submitted",
            f'A new project "{project_title}" has been submitted and is pending payment approval.',
            ["agent"],
            project_id,
        )

    # ---------- Agent -> Worker ----------

    async def notify_project_assigned_to_worker(
        self, project_id: int, worker_id: str, agent_id: str, project_title: str
    ):
        return await self._notify_users(
            "🎯 New Project Assignment",
            f'You have been assigned to work on "{project_title}". The project is now in progress.',
            [worker_id],
            project_id,
            exclude_user_id=agent_id,
            priority=Priority.HIGH,
        )

    # ---------- Worker -> Agent / Client ----------

    async def notify_project_completed_by_worker(self, project_id: int, project_title: str):
        return await self._notify_roles(
            "✅ Project Completed",
            f'"{project_title}" has been completed by the worker and is pending final approval.',
            ["agent"],
            project_id,
        )

    async def notify_word_count_adjustment_request(
        self, project_id: int, client_id: str, worker_id: str, project_title: str, new_word_count: int
    ):
        return await self._notify_users(
            "📊 Word Count Adjustment Request",
            f'The worker has requested to adjust the word count for "{project_title}" '
            f"to {new_word_count} words. Please review and approve.",
            [client_id],
            project_id,
            exclude_user_id=worker_id,
            priority=Priority.HIGH,
        )

    async def notify_deadline_adjustment_request(
        self, project_id: int, client_id: str, worker_id: str, project_title: str, new_deadline: str
    ):
        return await self._notify_users(
            "📅 Deadline Adjustment Request",
            f'The worker has requested to adjust the deadline for "{project_title}" '
            f"to {new_deadline}. Please review and approve.",
            [client_id],
            project_id,
            exclude_user_id=worker_id,
            priority=Priority.HIGH,
        )

    # ---------- Client -> Worker ----------

    async def notify_adjustment_accepted(
        self, project_id: int, worker_id: str, client_id: str, project_title: str, adjustment_type: str
    ):
        label = ADJUSTMENT_LABELS[adjustment_type]
        return await self._notify_users(
            "✅ Adjustment Approved",
            f'Your {label} adjustment request for "{project_title}" has been approved. '
            "You can continue working on the project.",
            [worker_id],
            project_id,
            exclude_user_id=client_id,
        )

    async def notify_adjustment_rejected(
        self, project_id: int, worker_id: str, client_id: str, project_title: str, adjustment_type: str
    ):
        """The rejection cancels the project, so agents hear about it too."""
        label = ADJUSTMENT_LABELS[adjustment_type]
        worker_result = await self._notify_users(
            "❌ Adjustment Rejected",
            f'Your {label} adjustment request for "{project_title}" has been rejected. '
            "The project has been cancelled.",
            [worker_id],
            project_id,
            exclude_user_id=client_id,
        )
        agent_results = await self._notify_roles(
            "🚫 Project Cancelled",
            f'"{project_title}" has been cancelled due to rejected {label} adjustment.',
            ["agent"],
            project_id,
        )
        return worker_result, agent_results

    async def notify_changes_requested(
        self, project_id: int, worker_id: str, client_id: str, project_title: str
    ):
        return await self._notify_users(
            "🔄 Changes Requested",
            f'The client has requested changes to "{project_title}". '
            "Please review the feedback and make the necessary modifications.",
            [worker_id],
            project_id,
            exclude_user_id=client_id,
        )

    # ---------- Agent -> everyone involved ----------

    async def notify_project_refund(
        self,
        project_id: int,
        agent_id: str,
        project_title: str,
        client_id: str,
        worker_id: Optional[str] = None,
    ):
        return await self._notify_users(
            "💰 Refund Processed",
            f'"{project_title}" has been set for refund processing. You will receive your refund shortly.',
            [client_id, worker_id],
            project_id,
            exclude_user_id=agent_id,
        )

    async def notify_project_completed(
        self,
        project_id: int,
        agent_id: str,
        project_title: str,
        client_id: str,
        worker_id: Optional[str] = None,
    ):
        client_result = await self._notify_users(
            "🎉 Project Completed",
            f'"{project_title}" has been successfully completed! Thank you for choosing our services.',
            [client_id],
            project_id,
            exclude_user_id=agent_id,
        )
        worker_result = None
        if worker_id:
            worker_result = await self._notify_users(
                "🎉 Project Completed",
                f'Great job! "{project_title}" has been marked as completed.',
                [worker_id],
                project_id,
                exclude_user_id=agent_id,
            )
        return client_result, worker_result

    async def send_broadcast(self, title: str, body: str, target_roles: Sequence[str]):
        return await self._notify_roles(f"📢 {title}", body, target_roles)
