"""Forwards every billing event to listeners outside this service."""

from sqlalchemy.orm import Session

from app.services.collaborator import CollaboratorGateway
from app.services.events.types import BillingEvent


class BillingEventForwarder:
    def __init__(self, gateway: CollaboratorGateway):
        self.gateway = gateway

    def handle(self, db: Session, event: BillingEvent) -> None:
        self.gateway.emit_billing_event(event.to_dict())
