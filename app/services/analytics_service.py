import logging
from datetime import datetime
from app.core.firebase import get_firestore_client

logger = logging.getLogger(__name__)


class AnalyticsService:
    def __init__(self):
        self.db = get_firestore_client()
        self.events_collection = 'analytics_events'
        self.errors_collection = 'error_events'
        self.logger = logging.getLogger(__name__)

    def log_event(
        self,
        event_name: str,
        user_id: str = None,
        parameters: dict = None,
    ):
        """
        Store a product analytics event in Firestore.
        Used for plan upgrades, usage and paywall hits.
        """
        logger.info(f"log_event: Entry - {event_name}, user: {user_id}")

        try:
            self.db.collection(self.events_collection).add({
                'event_name': event_name,
                'user_id': user_id,
                'parameters': parameters or {},
                'timestamp': datetime.utcnow()
            })
            logger.info(f"log_event: Success - {event_name}")
        except Exception as e:
            # Analytics failures should not break main functionality
            logger.error(f"log_event: Failure - {e}")

    def log_error(
        self,
        error: str,
        action: str,
        user_id: str = None,
        parameters: dict = None,
    ):
        """Store an error report for monitoring"""
        try:
            self.db.collection(self.errors_collection).add({
                'action': action,
                'user_id': user_id,
                'error_message': error,
                'parameters': parameters or {},
                'timestamp': datetime.utcnow()
            })
        except Exception as e:
            logger.error(f"log_error: Failure - {e}")

    def log_success(self, action: str, user_id: str = None, parameters: dict = None):
        self.log_event(
            event_name=f'{action}_success',
            user_id=user_id,
            parameters={'status': 'success', **(parameters or {})}
        )

    def log_failure(
        self,
        action: str,
        error: str,
        user_id: str = None,
        parameters: dict = None
    ):
        """
        Record a failed action both as an analytics event (failure rates)
        and as an error report (debugging).
        """
        self.log_event(
            event_name=f'{action}_failure',
            user_id=user_id,
            parameters={'status': 'failure', 'error': error, **(parameters or {})}
        )
        self.log_error(error=error, action=action, user_id=user_id, parameters=parameters)
