from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Union


class Priority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"

    @property
    def rank(self) -> int:
        """Sort key for the queue: lower drains first."""
        return {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}[self]


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


@dataclass(frozen=True)
class RoleTarget:
    """Every user holding ``role`` (``"all"`` for everyone)."""

    role: str
    kind: str = field(default="role", init=False)

    def to_wire(self) -> Dict[str, Any]:
        return {"role": self.role}


@dataclass(frozen=True)
class UserTarget:
    """An explicit list of user identifiers."""

    user_ids: Tuple[str, ...]
    kind: str = field(default="users", init=False)

    def __post_init__(self) -> None:
        # accept any iterable but keep the dataclass hashable
        object.__setattr__(self, "user_ids", tuple(self.user_ids))

    def to_wire(self) -> Dict[str, Any]:
        return {"userIds": list(self.user_ids)}


Target = Union[RoleTarget, UserTarget]


def target_from_wire(data: Dict[str, Any]) -> Target:
    """Build a target from ``{"role": ...}`` or ``{"userIds": [...]}``."""
    if data.get("userIds"):
        return UserTarget(tuple(str(u) for u in data["userIds"]))
    if data.get("role"):
        return RoleTarget(str(data["role"]))
    raise ValueError("target must carry either 'role' or a non-empty 'userIds'")


@dataclass(frozen=True)
class NotificationPayload:
    title: str
    body: str

    def to_wire(self) -> Dict[str, str]:
        return {"title": self.title, "body": self.body}


@dataclass(frozen=True)
class NotificationRequest:
    target: Target
    payload: NotificationPayload
    priority: Priority = Priority.NORMAL
    project_id: Optional[int] = None


@dataclass(frozen=True)
class NotificationData:
    """What the tracker persists for a single recipient."""

    title: str
    body: str
    user_id: Optional[str] = None
    role: Optional[str] = None
    project_id: Optional[int] = None

    def target(self) -> Target:
        if self.user_id is not None:
            return UserTarget((self.user_id,))
        return RoleTarget(self.role or "all")


@dataclass
class SendResult:
    success: bool
    error: Optional[str] = None
    retryable: bool = True
    data: Any = None


@dataclass
class NotificationResult:
    success: bool
    notification_id: Optional[int]  # None when the record could not be written
    delivery_status: DeliveryStatus
    error: Optional[str] = None


@dataclass
class TrackedSendResult:
    success: bool
    results: list[NotificationResult] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class GuaranteeResult:
    success: bool
    immediate: bool
    queue_id: Optional[str] = None
    error: Optional[str] = None


SendFunction = Callable[[], Awaitable[SendResult]]
