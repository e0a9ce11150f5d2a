from sqlalchemy import Column, String, Integer, Boolean, DateTime, Enum
from app.core.database import Base
from datetime import datetime
import enum


class PlanTier(str, enum.Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"


class SubscriptionStatus(str, enum.Enum):
    FREE = "free"
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# assignment_limit value meaning "no cap"
UNLIMITED = -1


class Subscription(Base):
    __tablename__ = "subscriptions"

    user_id = Column(String, primary_key=True, index=True)  # Firebase UID
    plan_id = Column(String, nullable=False, default=PlanTier.FREE.value, index=True)  # 'free', 'basic', 'pro'
    status = Column(Enum(SubscriptionStatus), nullable=False, default=SubscriptionStatus.FREE, index=True)
    assignments_used = Column(Integer, nullable=False, default=0)
    assignment_limit = Column(Integer, nullable=False)  # -1 = unlimited
    has_calendar_access = Column(Boolean, nullable=False, default=False)
    trial_end_date = Column(DateTime, nullable=True)  # only meaningful while plan_id = 'free'
    provider_subscription_id = Column(String, nullable=True, unique=True, index=True)  # PayPal subscription id, one account each
    upgraded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
