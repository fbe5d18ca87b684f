"""Outbound calls to the notification/entitlement collaborator.

The reconciliation core only requests work from the collaborator: it never
delivers email or refreshes caches itself. ``build_gateway`` picks the HTTP
gateway when ``BILLING_COLLABORATOR_URL`` is configured and a log-only
gateway otherwise.
"""

from __future__ import annotations

import enum
import logging
from typing import Any, Protocol

import httpx

from app.config import settings

logger = logging.getLogger(__name__)


class NotificationKind(enum.Enum):
    payment_failed = "payment_failed"
    refund_issued = "refund_issued"
    invoice_ready = "invoice_ready"
    cancel_immediate = "cancel_immediate"
    cancel_scheduled = "cancel_scheduled"


class CollaboratorGateway(Protocol):
    def send_notification(self, kind: NotificationKind, payload: dict[str, Any]) -> None: ...

    def request_entitlement_sync(self, user_id: str) -> None: ...

    def emit_billing_event(self, event: dict[str, Any]) -> None: ...


class LoggingCollaboratorGateway:
    def send_notification(self, kind: NotificationKind, payload: dict[str, Any]) -> None:
        logger.info("Notification requested: %s user=%s", kind.value, payload.get("user_id"))

    def request_entitlement_sync(self, user_id: str) -> None:
        logger.info("Entitlement sync requested for user %s", user_id)

    def emit_billing_event(self, event: dict[str, Any]) -> None:
        logger.info("Billing event %s (%s)", event.get("event_type"), event.get("event_id"))


class HttpCollaboratorGateway:
    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.Client(timeout=timeout)

    def _post(self, path: str, body: dict[str, Any]) -> None:
        response = self._client.post(f"{self.base_url}{path}", json=body)
        response.raise_for_status()

    def send_notification(self, kind: NotificationKind, payload: dict[str, Any]) -> None:
        self._post(f"/notifications/{kind.value}", payload)

    def request_entitlement_sync(self, user_id: str) -> None:
        self._post("/entitlements/sync", {"user_id": user_id})

    def emit_billing_event(self, event: dict[str, Any]) -> None:
        self._post("/billing-events", event)


def build_gateway() -> CollaboratorGateway:
    if settings.billing_collaborator_url:
        return HttpCollaboratorGateway(
            settings.billing_collaborator_url,
            timeout=settings.billing_collaborator_timeout,
        )
    return LoggingCollaboratorGateway()
