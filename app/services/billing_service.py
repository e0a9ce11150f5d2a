import logging

from app.core.exceptions import PaymentProviderError
from app.models.subscription import SubscriptionStatus
from app.services.paypal_service import ACTIVE_PAYPAL_STATUSES, PayPalService
from app.services.subscription_service import SubscriptionManager, SubscriptionRecord

logger = logging.getLogger(__name__)

EVENT_ACTIVATED = "BILLING.SUBSCRIPTION.ACTIVATED"
EVENT_CANCELLED = "BILLING.SUBSCRIPTION.CANCELLED"
EVENT_EXPIRED = "BILLING.SUBSCRIPTION.EXPIRED"


class WebhookRejected(Exception):
    """Webhook delivery failed signature verification"""


class BillingService:
    """
    Translates PayPal subscription callbacks into subscription manager
    transitions. Plan changes are only applied to state confirmed by PayPal.
    """

    def __init__(self, manager: SubscriptionManager, paypal: PayPalService):
        self.manager = manager
        self.paypal = paypal
        self.logger = logging.getLogger(__name__)

    async def confirm_subscription(self, user_id: str, subscription_id: str) -> SubscriptionRecord:
        """
        Called after the user approved a PayPal checkout. The subscription is
        looked up server-side; the client's word is never enough.
        """
        self.logger.info(f"confirm_subscription: Entry - user: {user_id}, subscription: {subscription_id}")

        if not subscription_id:
            raise ValueError("subscription_id is required")

        resource = await self.paypal.get_subscription(subscription_id)

        paypal_status = resource.get("status")
        if paypal_status not in ACTIVE_PAYPAL_STATUSES:
            raise ValueError(f"PayPal subscription is not active (status: {paypal_status})")

        custom_id = resource.get("custom_id")
        if custom_id != user_id:
            self.logger.warning(
                f"confirm_subscription: Subscription belongs to another user - caller: {user_id}, owner: {custom_id}")
            raise ValueError("PayPal subscription does not belong to this account")

        plan_tier = self.paypal.resolve_plan_tier(resource.get("plan_id"))
        if plan_tier is None:
            raise PaymentProviderError(f"Unknown PayPal plan: {resource.get('plan_id')}")

        record = self.manager.apply_plan_upgrade(user_id, plan_tier.value, resource.get("id") or subscription_id)
        self.logger.info(f"confirm_subscription: Success - user: {user_id}, plan: {record.plan_id.value}")
        return record

    async def cancel_subscription(self, user_id: str, reason: str = None) -> SubscriptionRecord:
        """
        User-initiated cancellation. PayPal stops billing first; the paid plan
        stays until PayPal reports the subscription expired.
        """
        self.logger.info(f"cancel_subscription: Entry - user: {user_id}")

        current = self.manager.get_or_create_subscription(user_id)
        if (not current.is_paid
                or current.status != SubscriptionStatus.ACTIVE
                or not current.provider_subscription_id):
            raise ValueError("No active subscription to cancel")

        await self.paypal.cancel_subscription(
            current.provider_subscription_id,
            reason or "User requested cancellation",
        )
        record = self.manager.apply_provider_cancellation(user_id, current.provider_subscription_id)
        self.logger.info(f"cancel_subscription: Success - user: {user_id}, status: {record.status.value}")
        return record

    async def handle_webhook(self, headers: dict, event: dict) -> dict:
        """Verify and apply a PayPal webhook event; unknown event types are acknowledged"""
        event_type = event.get("event_type")
        self.logger.info(f"handle_webhook: Entry - event: {event.get('id')}, type: {event_type}")

        if not await self.paypal.verify_webhook_signature(headers, event):
            raise WebhookRejected(f"Signature verification failed for event {event.get('id')}")

        if event_type not in (EVENT_ACTIVATED, EVENT_CANCELLED, EVENT_EXPIRED):
            return {"status": "ignored", "event_type": event_type}

        resource = event.get("resource") or {}
        user_id = resource.get("custom_id")
        subscription_id = resource.get("id")
        if not user_id or not subscription_id:
            self.logger.warning(f"handle_webhook: Event without user or subscription id - event: {event.get('id')}")
            return {"status": "ignored", "event_type": event_type}

        if event_type == EVENT_ACTIVATED:
            plan_tier = self.paypal.resolve_plan_tier(resource.get("plan_id"))
            if plan_tier is None:
                self.logger.error(f"handle_webhook: Unknown PayPal plan - {resource.get('plan_id')}")
                return {"status": "ignored", "event_type": event_type}
            record = self.manager.apply_plan_upgrade(user_id, plan_tier.value, subscription_id)
        elif event_type == EVENT_CANCELLED:
            record = self.manager.apply_provider_cancellation(user_id, subscription_id)
        else:
            record = self.manager.apply_provider_expiry(user_id, subscription_id)

        self.logger.info(f"handle_webhook: Success - user: {user_id}, type: {event_type}, status: {record.status.value}")
        return {
            "status": "processed",
            "event_type": event_type,
            "plan_id": record.plan_id.value,
            "subscription_status": record.status.value,
        }
