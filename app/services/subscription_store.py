import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import (DisconnectionError, IntegrityError,
                            InterfaceError, OperationalError)
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from app.core.exceptions import DuplicateRecord, StoreUnavailable
from app.models.subscription import Subscription
from app.models.subscription_history import SubscriptionHistory

logger = logging.getLogger(__name__)


class SubscriptionStore:
    """
    Single-row access to the subscriptions table, always addressed by user id.

    Every write commits its own transaction. Counters are changed with relative
    UPDATE statements so concurrent requests for the same user are serialized
    by the database rather than by this process.
    """

    def __init__(self, db: Session):
        self.db = db
        self.logger = logging.getLogger(__name__)

    @contextmanager
    def _store_call(self, action: str, user_id: str):
        try:
            yield
        except IntegrityError as e:
            self.db.rollback()
            self.logger.info(f"{action}: Duplicate key - user: {user_id}")
            raise DuplicateRecord(f"Conflicting subscription row for user {user_id}") from e
        except (OperationalError, InterfaceError, DisconnectionError, PoolTimeoutError) as e:
            self.db.rollback()
            self.logger.error(f"{action}: Store unavailable - user: {user_id}, error: {e}")
            raise StoreUnavailable(f"Account store unavailable during {action}") from e

    def get_by_key(self, user_id: str) -> Optional[Subscription]:
        """Fetch the row for user_id, bypassing any stale copy held by the session"""
        with self._store_call("get_by_key", user_id):
            return self.db.query(Subscription).populate_existing().filter(
                Subscription.user_id == user_id
            ).first()

    def get_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        """Row currently linked to a PayPal subscription, if any"""
        with self._store_call("get_by_provider_id", provider_subscription_id):
            return self.db.query(Subscription).populate_existing().filter(
                Subscription.provider_subscription_id == provider_subscription_id
            ).first()

    def insert(self, subscription: Subscription, history: SubscriptionHistory = None) -> Subscription:
        with self._store_call("insert", subscription.user_id):
            self.db.add(subscription)
            if history is not None:
                # Flush the parent first so the history FK resolves
                self.db.flush()
                self.db.add(history)
            self.db.commit()
            self.db.refresh(subscription)
            return subscription

    def update_by_key(
        self,
        user_id: str,
        fields: dict,
        history: SubscriptionHistory = None,
        conditions: list = None
    ) -> int:
        """
        Apply a partial update to one row. Values may be SQL expressions
        (e.g. COALESCE) so conditional writes stay inside the statement;
        extra `conditions` narrow the WHERE clause.
        Returns the number of rows updated. History is only written when a
        row changed.
        """
        with self._store_call("update_by_key", user_id):
            rows = self.db.query(Subscription).filter(
                Subscription.user_id == user_id,
                *(conditions or [])
            ).update(fields, synchronize_session=False)
            if rows and history is not None:
                self.db.add(history)
            self.db.commit()
            return rows

    def increment_usage(self, user_id: str, now: datetime = None) -> int:
        """assignments_used = assignments_used + 1, as a single statement"""
        return self.update_by_key(user_id, {
            Subscription.assignments_used: Subscription.assignments_used + 1,
            Subscription.updated_at: now or datetime.utcnow(),
        })

    def reset_usage(self, user_id: str, history: SubscriptionHistory = None, now: datetime = None) -> int:
        """Administrative reset; the only path that lowers assignments_used"""
        return self.update_by_key(user_id, {
            Subscription.assignments_used: 0,
            Subscription.updated_at: now or datetime.utcnow(),
        }, history=history)

    def add_history(self, history: SubscriptionHistory) -> None:
        with self._store_call("add_history", history.user_id):
            self.db.add(history)
            self.db.commit()

    def provider_actions(self, user_id: str, provider_subscription_id: str) -> set[str]:
        """History actions recorded for one PayPal subscription of a user"""
        with self._store_call("provider_actions", user_id):
            rows = self.db.query(SubscriptionHistory.action).filter(
                SubscriptionHistory.user_id == user_id,
                SubscriptionHistory.provider_subscription_id == provider_subscription_id
            ).all()
            return {row.action for row in rows}

    def list_history(self, user_id: str) -> list[SubscriptionHistory]:
        with self._store_call("list_history", user_id):
            return self.db.query(SubscriptionHistory).filter(
                SubscriptionHistory.user_id == user_id
            ).order_by(SubscriptionHistory.created_at.desc()).all()
