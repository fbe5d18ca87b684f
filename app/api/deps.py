from uuid import UUID

from fastapi import Header, HTTPException, Request

from app.db import get_db
from app.schemas.admin_billing import AdminActor
from app.services.events import BillingEventDispatcher


def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_email: str | None = Header(default=None),
    x_actor_roles: str | None = Header(default=None),
) -> AdminActor | None:
    """Operator identity forwarded by the auth gateway.

    Returns None when no actor is present; the admin workflows report that as
    an authentication failure in their own result shape.
    """
    if not x_actor_id:
        return None
    try:
        actor_id = UUID(x_actor_id)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="Invalid actor id") from exc
    roles = [role.strip() for role in (x_actor_roles or "").split(",") if role.strip()]
    return AdminActor(id=actor_id, email=x_actor_email, roles=roles)


def get_billing_events(request: Request) -> BillingEventDispatcher:
    return request.app.state.billing_events


__all__ = [
    "get_actor",
    "get_billing_events",
    "get_db",
]
