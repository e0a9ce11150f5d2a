import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.core.exceptions import AssignmentLimitReached, StoreUnavailable
from app.models.assignment import Assignment
from app.services.analytics_service import AnalyticsService
from app.services.subscription_service import SubscriptionManager

logger = logging.getLogger(__name__)


def count_words(text: str) -> int:
    return len(text.split()) if text else 0


class AssignmentService:
    """Persists generated assignments and reports each save to the subscription manager"""

    def __init__(self, manager: SubscriptionManager, analytics: Optional[AnalyticsService] = None):
        self.manager = manager
        self.analytics = analytics or manager.analytics
        self.logger = logging.getLogger(__name__)

    def create_assignment(
        self,
        db: Session,
        user_id: str,
        title: str,
        content: str,
        subject: str = None,
        assignment_type: str = None,
        academic_level: str = None,
        requirements: str = None,
        due_date: datetime = None,
    ) -> Assignment:
        """
        Save an assignment if the user's plan allows another one.
        Usage is counted only after the row is committed.
        """
        self.logger.info(f"create_assignment: Entry - user: {user_id}, title: {title}")

        if not self.manager.can_create_assignment(user_id):
            usage = self.manager.get_assignment_usage(user_id)
            self.analytics.log_event(
                event_name='paywall_hit',
                user_id=user_id,
                parameters={'used': usage['used'], 'limit': usage['limit']}
            )
            self.logger.info(f"create_assignment: Limit reached - user: {user_id}, usage: {usage['used']}/{usage['limit']}")
            raise AssignmentLimitReached(user_id, usage['used'], usage['limit'])

        try:
            assignment = Assignment(
                id=str(uuid.uuid4()),
                user_id=user_id,
                title=title,
                subject=subject,
                assignment_type=assignment_type,
                academic_level=academic_level,
                content=content,
                requirements=requirements,
                word_count=count_words(content),
                due_date=due_date,
                created_at=datetime.utcnow(),
            )
            db.add(assignment)
            db.commit()
            db.refresh(assignment)
        except OperationalError as e:
            db.rollback()
            self.logger.error(f"create_assignment: Failure - {e}")
            raise StoreUnavailable("Assignment store unavailable") from e

        self.manager.record_assignment_created(user_id)

        self.analytics.log_success(
            action='create_assignment',
            user_id=user_id,
            parameters={'assignment_id': assignment.id, 'word_count': assignment.word_count}
        )
        self.logger.info(f"create_assignment: Success - user: {user_id}, assignment: {assignment.id}")
        return assignment

    def list_assignments(self, db: Session, user_id: str, limit: int = 50) -> list[Assignment]:
        return db.query(Assignment).filter(
            Assignment.user_id == user_id
        ).order_by(Assignment.created_at.desc()).limit(limit).all()
