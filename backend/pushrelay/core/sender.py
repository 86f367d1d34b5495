from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from .notification_types import NotificationPayload, SendResult, Target

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "Push notifications are not configured. Please contact support."
UNABLE_TO_CONNECT = (
    "Unable to connect to notification service. Please check your internet connection."
)
PERMISSIONS_REQUIRED = (
    "Notification permissions are required. "
    "Please enable notifications in your browser settings."
)
GENERIC_FAILURE = "Unable to send notification right now. It will be retried automatically."
NETWORK_FAILURE = "Network connection failed. Your notification will be retried automatically."

# Checked in order, first match wins.
ERROR_CATEGORIES: list[tuple[str, str]] = [
    ("VAPID", NOT_CONFIGURED),
    ("Failed to send a request", UNABLE_TO_CONNECT),
    ("Permission denied", PERMISSIONS_REQUIRED),
]

# Retrying will not fix these.
NON_RETRYABLE = {NOT_CONFIGURED, PERMISSIONS_REQUIRED}


def categorize_error(error: str) -> str:
    """Map raw backend error text to a user-facing message."""
    lowered = (error or "").lower()
    for needle, message in ERROR_CATEGORIES:
        if needle.lower() in lowered:
            return message
    return GENERIC_FAILURE


def _failure(message: str) -> SendResult:
    return SendResult(success=False, error=message, retryable=message not in NON_RETRYABLE)


def _extract_error(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:500] or f"HTTP {resp.status_code}"
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {resp.status_code}"


class PushSender:
    """Performs exactly one delivery attempt against the push backend."""

    def __init__(
        self,
        endpoint_url: Optional[str],
        api_key: Optional[str] = None,
        timeout_sec: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self.api_key = api_key
        self.timeout_sec = timeout_sec
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["apikey"] = self.api_key
        return headers

    async def send(self, target: Target, payload: NotificationPayload) -> SendResult:
        if not self.endpoint_url:
            logger.warning("[sender] push endpoint not configured, skipping send")
            return _failure(NOT_CONFIGURED)

        body: dict[str, Any] = {"target": target.to_wire(), "payload": payload.to_wire()}
        logger.debug("[sender] sending %s to %s", payload.title, body["target"])

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout_sec, transport=self._transport
            ) as client:
                resp = await client.post(self.endpoint_url, json=body, headers=self._headers())
        except httpx.HTTPError as exc:
            logger.error("[sender] request error (%s): %s", type(exc).__name__, exc)
            return _failure(NETWORK_FAILURE)
        except Exception:
            logger.exception("[sender] unexpected error sending notification")
            return _failure(NETWORK_FAILURE)

        if resp.status_code >= 400:
            raw = _extract_error(resp)
            logger.error("[sender] push backend HTTP %s: %s", resp.status_code, raw)
            return _failure(categorize_error(raw))

        try:
            data = resp.json()
        except ValueError:
            data = None
        return SendResult(success=True, data=data)
