from app.models.subscription import Subscription, SubscriptionStatus, PlanTier, UNLIMITED
from app.models.subscription_history import SubscriptionHistory
from app.models.assignment import Assignment

__all__ = ["Subscription", "SubscriptionStatus", "PlanTier", "UNLIMITED", "SubscriptionHistory", "Assignment"]
