import enum
import json
import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy import and_, func, not_

from app.core.config import settings
from app.core.events import SubscriptionEvent, SubscriptionEventBus
from app.core.exceptions import DuplicateRecord, RecordNotFound, StoreUnavailable
from app.models.subscription import (UNLIMITED, PlanTier, Subscription,
                                     SubscriptionStatus)
from app.models.subscription_history import SubscriptionHistory
from app.services.analytics_service import AnalyticsService
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

PAID_TIERS = (PlanTier.BASIC, PlanTier.PRO)
ENDED_STATUSES = (SubscriptionStatus.CANCELLED, SubscriptionStatus.EXPIRED)

# History actions for provider events that arrived before the activation
CANCELLED_BEFORE_ACTIVATION = 'cancelled_before_activation'
EXPIRED_BEFORE_ACTIVATION = 'expired_before_activation'


class PlanResponse(BaseModel):
    """Pydantic model for plan API response"""
    tier: PlanTier
    name: str
    price_monthly: float
    currency: str = "USD"
    assignment_limit: int
    has_calendar_access: bool
    features: list[str]
    recommended: bool = False


class PlanConfiguration:
    """Code-defined plan catalog; the free cap comes from settings"""

    @classmethod
    def get_all_plans(cls) -> list[PlanResponse]:
        return [
            PlanResponse(
                tier=PlanTier.FREE,
                name='Free Plan',
                price_monthly=0.00,
                assignment_limit=settings.free_assignment_limit,
                has_calendar_access=False,
                features=[
                    f'{settings.free_assignment_limit} assignments',
                    'AI-powered content creation',
                    'Basic formatting options',
                    'Email support',
                ],
            ),
            PlanResponse(
                tier=PlanTier.BASIC,
                name='Basic Plan',
                price_monthly=14.99,
                assignment_limit=UNLIMITED,
                has_calendar_access=True,
                features=[
                    'Unlimited assignments',
                    'Full calendar access',
                    'Priority AI processing',
                    'PDF & DOCX export',
                    'Priority email/chat support',
                    'Version history',
                    'Custom templates',
                ],
                recommended=True,
            ),
            PlanResponse(
                tier=PlanTier.PRO,
                name='Pro Plan',
                price_monthly=29.99,
                assignment_limit=UNLIMITED,
                has_calendar_access=True,
                features=[
                    'Everything in Basic Plan',
                    'AI-powered charts and graphs',
                    'Advanced export (PDF, DOCX, TXT + more)',
                    'University-level academic standards',
                    '24/7 premium support',
                    'Advanced performance analytics',
                    'Highest priority AI processing',
                ],
            ),
        ]

    @classmethod
    def get_plan(cls, plan_tier: str) -> Optional[PlanResponse]:
        for plan in cls.get_all_plans():
            if plan.tier.value == str(plan_tier).lower():
                return plan
        return None


def format_price(price: float, currency: str = "USD") -> str:
    """Display price, e.g. 14.99 -> '$14.99'"""
    symbols = {'USD': '$', 'EUR': '€', 'GBP': '£'}
    symbol = symbols.get(currency.upper())
    if symbol:
        return f"{symbol}{price:,.2f}"
    return f"{price:,.2f} {currency.upper()}"


class Feature(str, enum.Enum):
    CALENDAR = "calendar"
    UNLIMITED_ASSIGNMENTS = "unlimited_assignments"
    ADVANCED_EXPORT = "advanced_export"
    PRO_FEATURES = "pro_features"
    BASIC_FEATURES = "basic_features"


class FeatureAccess(str, enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNKNOWN = "unknown"  # store unreachable; callers must treat as locked

    @property
    def allowed(self) -> bool:
        return self is FeatureAccess.GRANTED


class SubscriptionRecord(BaseModel):
    """Immutable snapshot of a subscriptions row"""
    user_id: str
    plan_id: PlanTier
    status: SubscriptionStatus
    assignments_used: int
    assignment_limit: int
    has_calendar_access: bool
    trial_end_date: Optional[datetime] = None
    provider_subscription_id: Optional[str] = None
    upgraded_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        frozen = True

    @property
    def is_unlimited(self) -> bool:
        return self.assignment_limit == UNLIMITED

    @property
    def is_paid(self) -> bool:
        return self.plan_id in PAID_TIERS


FEATURE_RULES: dict[Feature, Callable[[SubscriptionRecord], bool]] = {
    Feature.CALENDAR: lambda sub: sub.has_calendar_access,
    Feature.UNLIMITED_ASSIGNMENTS: lambda sub: sub.assignment_limit == UNLIMITED,
    Feature.ADVANCED_EXPORT: lambda sub: sub.plan_id in PAID_TIERS,
    Feature.PRO_FEATURES: lambda sub: sub.plan_id == PlanTier.PRO,
    Feature.BASIC_FEATURES: lambda sub: sub.plan_id in PAID_TIERS,
}


def assignment_usage(record: SubscriptionRecord) -> dict:
    if record.is_unlimited:
        remaining = UNLIMITED
    else:
        remaining = max(0, record.assignment_limit - record.assignments_used)
    return {
        'used': record.assignments_used,
        'limit': record.assignment_limit,
        'remaining': remaining,
        'unlimited': record.is_unlimited,
    }


def trial_days_remaining(record: SubscriptionRecord, now: datetime) -> int:
    if record.is_paid or record.trial_end_date is None:
        return 0
    seconds_left = (record.trial_end_date - now).total_seconds()
    if seconds_left <= 0:
        return 0
    return math.ceil(seconds_left / 86400)


def describe_subscription(record: SubscriptionRecord, now: datetime) -> dict:
    """Display view consumed by plan badges and the paywall"""
    plan = PlanConfiguration.get_plan(record.plan_id.value)
    days_left = trial_days_remaining(record, now)
    return {
        'user_id': record.user_id,
        'plan_id': record.plan_id.value,
        'plan_name': plan.name if plan else record.plan_id.value.title(),
        'badge': record.plan_id.value.title(),
        'status': record.status.value,
        'status_known': True,
        'usage': assignment_usage(record),
        'has_calendar_access': record.has_calendar_access,
        'trial_end_date': record.trial_end_date.isoformat() if record.trial_end_date and not record.is_paid else None,
        'trial_days_remaining': days_left,
        'trial_expired': not record.is_paid and record.trial_end_date is not None and days_left == 0,
        'requires_payment_method': (
            not record.is_paid
            and not record.is_unlimited
            and record.assignments_used >= record.assignment_limit
        ),
        'upgraded_at': record.upgraded_at.isoformat() if record.upgraded_at else None,
        'features': plan.features if plan else [],
    }


class SubscriptionManager:
    """
    Owns every read and write of a user's subscription record: lazy creation,
    usage counting, plan transitions from payment callbacks and feature gates.

    Construct one per request with the request's store; nothing else may write
    subscription fields.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        events: Optional[SubscriptionEventBus] = None,
        analytics: Optional[AnalyticsService] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.events = events
        self.analytics = analytics or AnalyticsService()
        self.clock = clock
        self.logger = logging.getLogger(__name__)

    def _history(self, user_id: str, action: str, now: datetime, from_plan: str = None,
                 to_plan: str = None, provider_subscription_id: str = None,
                 details: dict = None) -> SubscriptionHistory:
        return SubscriptionHistory(
            id=str(uuid.uuid4()),
            user_id=user_id,
            action=action,
            from_plan=from_plan,
            to_plan=to_plan,
            provider_subscription_id=provider_subscription_id,
            details=json.dumps(details) if details else None,
            created_at=now,
        )

    def _publish(self, record: SubscriptionRecord, action: str):
        if self.events is None:
            return
        self.events.publish(SubscriptionEvent(
            user_id=record.user_id,
            action=action,
            plan_id=record.plan_id.value,
            status=record.status.value,
            occurred_at=self.clock(),
        ))

    def _reload(self, user_id: str) -> SubscriptionRecord:
        row = self.store.get_by_key(user_id)
        if row is None:
            raise RecordNotFound(f"Subscription disappeared for user {user_id}")
        return SubscriptionRecord.model_validate(row)

    def _activation_status(
        self,
        current: SubscriptionRecord,
        provider_subscription_id: str
    ) -> Optional[SubscriptionStatus]:
        """
        Status an activation of provider_subscription_id should write, or None
        when the activation is stale and must be ignored.
        """
        actions = self.store.provider_actions(current.user_id, provider_subscription_id)
        if actions & {'cancelled', 'expired', EXPIRED_BEFORE_ACTIVATION}:
            self.logger.warning(
                f"apply_plan_upgrade: Ignoring activation of ended subscription - user: {current.user_id}, "
                f"provider_id: {provider_subscription_id}")
            return None
        if CANCELLED_BEFORE_ACTIVATION in actions:
            if current.status == SubscriptionStatus.ACTIVE and current.is_paid:
                self.logger.warning(
                    f"apply_plan_upgrade: Ignoring cancelled activation, another subscription is live - "
                    f"user: {current.user_id}, provider_id: {provider_subscription_id}")
                return None
            # Cancellation already arrived: paid until the provider reports expiry
            return SubscriptionStatus.CANCELLED
        return SubscriptionStatus.ACTIVE

    def _record_early_provider_event(
        self,
        current: SubscriptionRecord,
        action: str,
        provider_subscription_id: str
    ) -> None:
        """Remember a cancellation/expiry for a subscription this account does not hold yet"""
        if action in self.store.provider_actions(current.user_id, provider_subscription_id):
            return
        self.store.add_history(self._history(
            current.user_id, action, self.clock(),
            from_plan=current.plan_id.value,
            to_plan=current.plan_id.value,
            provider_subscription_id=provider_subscription_id,
        ))

    def get_or_create_subscription(self, user_id: str) -> SubscriptionRecord:
        """Current record for user_id, inserting the free-tier default when absent"""
        if not user_id:
            raise ValueError("user_id is required")

        row = self.store.get_by_key(user_id)
        if row is not None:
            return SubscriptionRecord.model_validate(row)

        self.logger.info(f"get_or_create_subscription: Creating free subscription - user: {user_id}")
        now = self.clock()
        subscription = Subscription(
            user_id=user_id,
            plan_id=PlanTier.FREE.value,
            status=SubscriptionStatus.FREE,
            assignments_used=0,
            assignment_limit=settings.free_assignment_limit,
            has_calendar_access=False,
            trial_end_date=now + timedelta(days=settings.trial_days),
            created_at=now,
            updated_at=now,
        )
        try:
            self.store.insert(
                subscription,
                history=self._history(user_id, 'created', now, to_plan=PlanTier.FREE.value),
            )
        except DuplicateRecord:
            # Another request created it between our read and insert
            self.logger.info(f"get_or_create_subscription: Lost creation race - user: {user_id}")
            return self._reload(user_id)

        record = self._reload(user_id)
        self.analytics.log_success(action='create_subscription', user_id=user_id)
        self._publish(record, 'created')
        return record

    def can_create_assignment(self, user_id: str) -> bool:
        subscription = self.get_or_create_subscription(user_id)
        if subscription.is_unlimited:
            return True
        return subscription.assignments_used < subscription.assignment_limit

    def record_assignment_created(self, user_id: str) -> None:
        """Count one durably saved assignment against the user's usage"""
        self.logger.info(f"record_assignment_created: Entry - user: {user_id}")

        try:
            self.get_or_create_subscription(user_id)
            rows = self.store.increment_usage(user_id, now=self.clock())
            if rows == 0:
                raise RecordNotFound(f"No subscription to count usage for user {user_id}")

            record = self._reload(user_id)
            self.analytics.log_success(
                action='record_assignment_created',
                user_id=user_id,
                parameters={'assignments_used': record.assignments_used}
            )
            self.logger.info(
                f"record_assignment_created: Success - user: {user_id}, used: {record.assignments_used}")
            self._publish(record, 'usage')
        except Exception as e:
            self.analytics.log_failure(
                action='record_assignment_created',
                error=str(e),
                user_id=user_id
            )
            self.logger.error(f"record_assignment_created: Failure - {e}")
            raise

    def apply_plan_upgrade(
        self,
        user_id: str,
        new_plan_id: str,
        provider_subscription_id: str
    ) -> SubscriptionRecord:
        """
        Move a user onto a paid plan after the payment provider confirmed the
        subscription. Replaying the same callback leaves the record untouched.
        """
        self.logger.info(
            f"apply_plan_upgrade: Entry - user: {user_id}, plan: {new_plan_id}, provider_id: {provider_subscription_id}")

        try:
            try:
                plan = PlanTier(str(new_plan_id).lower())
            except ValueError:
                raise ValueError(f"Invalid plan tier: {new_plan_id}") from None
            if plan not in PAID_TIERS:
                raise ValueError(f"Cannot upgrade to plan: {new_plan_id}")
            if not provider_subscription_id:
                raise ValueError("provider_subscription_id is required")

            current = self.get_or_create_subscription(user_id)

            if (current.provider_subscription_id == provider_subscription_id
                    and current.status in ENDED_STATUSES):
                self.logger.warning(
                    f"apply_plan_upgrade: Ignoring activation of ended subscription - user: {user_id}, "
                    f"provider_id: {provider_subscription_id}, status: {current.status.value}")
                return current

            owner = self.store.get_by_provider_id(provider_subscription_id)
            if owner is not None and owner.user_id != user_id:
                self.logger.warning(
                    f"apply_plan_upgrade: Provider subscription linked to another account - user: {user_id}, "
                    f"provider_id: {provider_subscription_id}")
                raise ValueError("PayPal subscription is already linked to another account")

            target_status = self._activation_status(current, provider_subscription_id)
            if target_status is None:
                return current

            now = self.clock()
            try:
                rows = self.store.update_by_key(user_id, {
                    Subscription.plan_id: plan.value,
                    Subscription.status: target_status,
                    Subscription.assignment_limit: UNLIMITED,
                    Subscription.has_calendar_access: True,
                    Subscription.provider_subscription_id: provider_subscription_id,
                    Subscription.upgraded_at: func.coalesce(Subscription.upgraded_at, now),
                    Subscription.updated_at: now,
                }, history=self._history(
                    user_id, 'upgraded', now,
                    from_plan=current.plan_id.value,
                    to_plan=plan.value,
                    provider_subscription_id=provider_subscription_id,
                ), conditions=[not_(and_(
                    Subscription.plan_id == plan.value,
                    Subscription.status == target_status,
                    func.coalesce(Subscription.provider_subscription_id, '') == provider_subscription_id,
                    Subscription.assignment_limit == UNLIMITED,
                    Subscription.has_calendar_access.is_(True),
                    Subscription.upgraded_at.isnot(None),
                ))])
            except DuplicateRecord:
                # Unique provider id: another account claimed it concurrently
                raise ValueError("PayPal subscription is already linked to another account") from None

            if rows == 0:
                self.logger.info(f"apply_plan_upgrade: Duplicate callback - user: {user_id}")
                return self._reload(user_id)

            record = self._reload(user_id)
            self.analytics.log_success(
                action='apply_plan_upgrade',
                user_id=user_id,
                parameters={'from_plan': current.plan_id.value, 'to_plan': plan.value}
            )
            self.logger.info(f"apply_plan_upgrade: Success - user: {user_id}, plan: {plan.value}")
            self._publish(record, 'upgraded')
            return record
        except Exception as e:
            self.analytics.log_failure(
                action='apply_plan_upgrade',
                error=str(e),
                user_id=user_id,
                parameters={'plan_tier': str(new_plan_id)}
            )
            self.logger.error(f"apply_plan_upgrade: Failure - {e}")
            raise

    def check_feature_access(self, user_id: str, feature_name: str) -> FeatureAccess:
        """Tri-state feature gate; never raises"""
        try:
            feature = Feature(feature_name)
        except ValueError:
            self.logger.info(f"check_feature_access: Unknown feature - {feature_name}")
            return FeatureAccess.DENIED

        if not user_id:
            return FeatureAccess.DENIED

        try:
            subscription = self.get_or_create_subscription(user_id)
        except StoreUnavailable as e:
            self.logger.warning(f"check_feature_access: Status unknown - user: {user_id}, feature: {feature_name}, error: {e}")
            return FeatureAccess.UNKNOWN

        if FEATURE_RULES[feature](subscription):
            return FeatureAccess.GRANTED
        return FeatureAccess.DENIED

    def get_assignment_usage(self, user_id: str) -> dict:
        return assignment_usage(self.get_or_create_subscription(user_id))

    def apply_provider_cancellation(self, user_id: str, provider_subscription_id: str) -> SubscriptionRecord:
        """
        Provider reported the subscription as cancelled. Paid access stays
        until the provider reports expiry.
        """
        self.logger.info(f"apply_provider_cancellation: Entry - user: {user_id}, provider_id: {provider_subscription_id}")

        current = self.get_or_create_subscription(user_id)
        if current.provider_subscription_id != provider_subscription_id:
            self.logger.info(f"apply_provider_cancellation: Not the current subscription - user: {user_id}")
            self._record_early_provider_event(current, CANCELLED_BEFORE_ACTIVATION, provider_subscription_id)
            return current
        if current.status in ENDED_STATUSES:
            return current

        now = self.clock()
        self.store.update_by_key(user_id, {
            Subscription.status: SubscriptionStatus.CANCELLED,
            Subscription.updated_at: now,
        }, history=self._history(
            user_id, 'cancelled', now,
            from_plan=current.plan_id.value,
            to_plan=current.plan_id.value,
            provider_subscription_id=provider_subscription_id,
        ))

        record = self._reload(user_id)
        self.analytics.log_success(action='apply_provider_cancellation', user_id=user_id)
        self.logger.info(f"apply_provider_cancellation: Success - user: {user_id}")
        self._publish(record, 'cancelled')
        return record

    def apply_provider_expiry(self, user_id: str, provider_subscription_id: str) -> SubscriptionRecord:
        """Provider reported the subscription as expired: revert to the free plan"""
        self.logger.info(f"apply_provider_expiry: Entry - user: {user_id}, provider_id: {provider_subscription_id}")

        current = self.get_or_create_subscription(user_id)
        if current.provider_subscription_id != provider_subscription_id:
            self.logger.info(f"apply_provider_expiry: Not the current subscription - user: {user_id}")
            self._record_early_provider_event(current, EXPIRED_BEFORE_ACTIVATION, provider_subscription_id)
            return current
        if current.status == SubscriptionStatus.EXPIRED:
            return current

        now = self.clock()
        self.store.update_by_key(user_id, {
            Subscription.plan_id: PlanTier.FREE.value,
            Subscription.status: SubscriptionStatus.EXPIRED,
            Subscription.assignment_limit: settings.free_assignment_limit,
            Subscription.has_calendar_access: False,
            Subscription.updated_at: now,
        }, history=self._history(
            user_id, 'expired', now,
            from_plan=current.plan_id.value,
            to_plan=PlanTier.FREE.value,
            provider_subscription_id=provider_subscription_id,
        ))

        record = self._reload(user_id)
        self.analytics.log_success(
            action='apply_provider_expiry',
            user_id=user_id,
            parameters={'from_plan': current.plan_id.value}
        )
        self.logger.info(f"apply_provider_expiry: Success - user: {user_id}")
        self._publish(record, 'expired')
        return record

    def reset_usage(self, user_id: str, reason: str = None) -> SubscriptionRecord:
        """Administrative reset of assignments_used to 0"""
        current = self.get_or_create_subscription(user_id)
        now = self.clock()
        self.store.reset_usage(user_id, history=self._history(
            user_id, 'usage_reset', now,
            from_plan=current.plan_id.value,
            to_plan=current.plan_id.value,
            details={'previous_used': current.assignments_used, 'reason': reason},
        ), now=now)
        record = self._reload(user_id)
        self.logger.info(f"reset_usage: Success - user: {user_id}, previous: {current.assignments_used}")
        self._publish(record, 'usage_reset')
        return record

    def get_subscription_history(self, user_id: str) -> list[dict]:
        return [
            {
                'id': entry.id,
                'action': entry.action,
                'from_plan': entry.from_plan,
                'to_plan': entry.to_plan,
                'provider_subscription_id': entry.provider_subscription_id,
                'created_at': entry.created_at.isoformat() if entry.created_at else None,
                'details': json.loads(entry.details) if entry.details else None,
            }
            for entry in self.store.list_history(user_id)
        ]
