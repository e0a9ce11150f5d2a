from fastapi import Depends, Request
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.events import SubscriptionEventBus
from app.services.assignment_service import AssignmentService
from app.services.billing_service import BillingService
from app.services.paypal_service import PayPalService
from app.services.subscription_service import SubscriptionManager
from app.services.subscription_store import SubscriptionStore


def get_event_bus(request: Request) -> SubscriptionEventBus:
    """Event bus created at application startup"""
    return request.app.state.subscription_events


def get_subscription_manager(
    db: Session = Depends(get_db),
    events: SubscriptionEventBus = Depends(get_event_bus),
) -> SubscriptionManager:
    """Request-scoped manager bound to the request's database session"""
    return SubscriptionManager(SubscriptionStore(db), events=events)


def get_assignment_service(
    manager: SubscriptionManager = Depends(get_subscription_manager),
) -> AssignmentService:
    return AssignmentService(manager)


def get_paypal_service() -> PayPalService:
    return PayPalService()


def get_billing_service(
    manager: SubscriptionManager = Depends(get_subscription_manager),
    paypal: PayPalService = Depends(get_paypal_service),
) -> BillingService:
    return BillingService(manager, paypal)
