from sqlalchemy import Column, String, DateTime, ForeignKey, Text
from app.core.database import Base
from datetime import datetime


class SubscriptionHistory(Base):
    __tablename__ = "subscription_history"

    id = Column(String, primary_key=True, index=True)
    user_id = Column(String, ForeignKey("subscriptions.user_id"), nullable=False, index=True)
    action = Column(String, nullable=False, index=True)  # created, upgraded, cancelled, expired, usage_reset, *_before_activation
    from_plan = Column(String, nullable=True)
    to_plan = Column(String, nullable=True)
    provider_subscription_id = Column(String, nullable=True)
    details = Column(Text, nullable=True)  # JSON
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
