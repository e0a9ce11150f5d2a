"""
Error types shared by the subscription services and the API layer.

Only StoreUnavailable (and transport failures of the payment provider) are
meant to reach callers of the subscription manager; the remaining types are
normalized inside the services.
"""


class SubscriptionError(Exception):
    """Base class for subscription/usage errors"""


class StoreUnavailable(SubscriptionError):
    """The account store could not be reached or timed out"""


class RecordNotFound(SubscriptionError):
    """A subscription row was expected but is missing"""


class DuplicateRecord(SubscriptionError):
    """A concurrent request already inserted the row for this key"""


class AssignmentLimitReached(SubscriptionError):
    """The user's plan does not allow creating another assignment"""

    def __init__(self, user_id: str, used: int, limit: int):
        self.user_id = user_id
        self.used = used
        self.limit = limit
        super().__init__(
            f"Assignment limit reached for user {user_id}: {used}/{limit}"
        )


class PaymentProviderError(Exception):
    """The payment provider rejected a request or could not be reached"""

    def __init__(self, message: str, status_code: int = None):
        self.status_code = status_code
        super().__init__(message)


class PaymentProviderNotConfigured(PaymentProviderError):
    """Payment provider credentials are missing"""
