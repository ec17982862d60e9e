"""Fire-and-forget notification delivery.

Lifecycle managers publish events only after their state change is
committed. Delivery runs in a background task: a failing sink is logged and
never turns a successful transition into a failure, and nothing is retried.

Sinks:
- LoggingNotificationSink: writes events to the log (default, dev)
- WebhookNotificationSink: POSTs JSON to an HTTP endpoint, optionally
  signed with HMAC-SHA256
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

import httpx

if TYPE_CHECKING:
    from uuid import UUID

    from wastewarden.core.clock import Clock
    from wastewarden.core.config import NotificationSettings

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Events pushed to users."""

    NEW_DONATION = "new_donation"
    NEW_REQUEST = "new_request"
    DONATION_ASSIGNED = "donation_assigned"
    DONATION_CANCELLED = "donation_cancelled"
    REQUEST_ACCEPTED = "request_accepted"
    REQUEST_EXPIRED = "request_expired"
    REQUEST_CANCELLED = "request_cancelled"
    DELIVERY_CREATED = "delivery_created"
    PICKUP_STARTED = "pickup_started"
    PICKUP_COMPLETED = "pickup_completed"
    DELIVERY_STARTED = "delivery_started"
    DELIVERY_COMPLETED = "delivery_completed"
    DELIVERY_CANCELLED = "delivery_cancelled"
    DELIVERY_ISSUE_REPORTED = "delivery_issue_reported"
    LOCATION_UPDATE = "location_update"
    RECEIPT_CONFIRMED = "receipt_confirmed"
    RATED = "rated"
    NGO_APPROVED = "ngo_approved"


@dataclass(frozen=True, slots=True)
class Notification:
    """A single event addressed to one user."""

    event: NotificationEvent
    target_user_id: UUID
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": self.event.value,
            "target_user_id": str(self.target_user_id),
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
        }


class NotificationSink(Protocol):
    async def send(self, notification: Notification) -> None: ...


class NotificationDeliveryError(Exception):
    """Raised by a sink when an event could not be handed over."""


class LoggingNotificationSink:
    """Sink that only logs events."""

    async def send(self, notification: Notification) -> None:
        logger.info(
            "Notification: event=%s, target=%s",
            notification.event.value,
            notification.target_user_id,
            extra={"payload": notification.payload},
        )


class WebhookNotificationSink:
    """Sink POSTing each event as JSON to a webhook endpoint.

    When a secret is configured the body is signed and the signature sent
    in the ``X-Signature-SHA256`` header as ``sha256=<hex>``.
    """

    def __init__(
        self,
        url: str,
        *,
        secret: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._secret = secret
        self._timeout = timeout
        self._http_client = client

    async def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    @staticmethod
    def compute_signature(body: str, secret: str) -> str:
        """Compute HMAC-SHA256 signature for a webhook body."""
        signature = hmac.new(
            secret.encode("utf-8"),
            body.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()
        return f"sha256={signature}"

    async def send(self, notification: Notification) -> None:
        body = json.dumps(notification.to_dict(), default=str)
        headers = {
            "Content-Type": "application/json",
            "X-Event-Type": notification.event.value,
        }
        if self._secret:
            headers["X-Signature-SHA256"] = self.compute_signature(body, self._secret)

        client = await self._get_http_client()
        try:
            response = await client.post(self._url, content=body, headers=headers)
        except httpx.RequestError as e:
            msg = f"Webhook request failed: {e}"
            raise NotificationDeliveryError(msg) from e

        if not 200 <= response.status_code < 300:
            msg = f"Webhook returned status {response.status_code}"
            raise NotificationDeliveryError(msg)

        logger.debug(
            "Webhook notification delivered: event=%s, status=%d",
            notification.event.value,
            response.status_code,
        )


def create_sink(settings: NotificationSettings) -> NotificationSink:
    """Build the sink described by the notification settings."""
    if settings.webhook_url is None:
        return LoggingNotificationSink()
    secret = settings.webhook_secret.get_secret_value() if settings.webhook_secret else None
    return WebhookNotificationSink(
        str(settings.webhook_url),
        secret=secret,
        timeout=settings.timeout_seconds,
    )


class NotificationDispatcher:
    """Schedules notification delivery in the background.

    Example:
        dispatcher = NotificationDispatcher(LoggingNotificationSink())
        dispatcher.publish(NotificationEvent.REQUEST_EXPIRED, requester_id, {...})
        ...
        await dispatcher.drain()
    """

    def __init__(self, sink: NotificationSink, *, clock: Clock | None = None) -> None:
        self._sink = sink
        self._clock = clock
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def publish(
        self,
        event: NotificationEvent,
        target_user_id: UUID,
        payload: dict[str, Any] | None = None,
    ) -> Notification:
        """Queue one event for delivery and return immediately.

        Must be called from a running event loop.
        """
        notification = Notification(
            event=event,
            target_user_id=target_user_id,
            payload=payload or {},
            created_at=self._clock() if self._clock else datetime.now(UTC),
        )
        task = asyncio.get_running_loop().create_task(self._deliver(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return notification

    def publish_many(
        self,
        event: NotificationEvent,
        target_user_ids: list[UUID],
        payload: dict[str, Any] | None = None,
    ) -> None:
        for user_id in target_user_ids:
            self.publish(event, user_id, payload)

    async def _deliver(self, notification: Notification) -> None:
        try:
            await self._sink.send(notification)
        except NotificationDeliveryError as e:
            logger.warning(
                "Notification delivery failed: event=%s, target=%s, error=%s",
                notification.event.value,
                notification.target_user_id,
                e,
            )
        except Exception:
            # A sink bug must not surface as an unretrieved task exception
            logger.exception(
                "Notification sink raised unexpectedly: event=%s, target=%s",
                notification.event.value,
                notification.target_user_id,
            )

    async def drain(self) -> None:
        """Wait for every in-flight delivery to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
