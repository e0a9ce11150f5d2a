from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp
from app.core.config import settings
from app.core.firebase import verify_firebase_token
from app.core.database import SessionLocal
from app.core.cache import get_cache
from app.core.exceptions import StoreUnavailable
from app.services.subscription_store import SubscriptionStore
from datetime import datetime
import logging

logger = logging.getLogger(__name__)

# Request budgets per plan tier
RATE_LIMITS = {
    'free': {
        'per_minute': 30,
        'per_hour': 500,
    },
    'basic': {
        'per_minute': 90,
        'per_hour': 3000,
    },
    'pro': {
        'per_minute': 180,
        'per_hour': -1,  # unlimited
    }
}

# Budgets for unauthenticated requests (IP-based)
DEFAULT_IP_LIMITS = {
    'per_minute': 20,
    'per_hour': 300,
}

EXEMPT_PATHS = {'/health', '/docs', '/openapi.json', '/redoc'}


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-plan request budgets for authenticated callers, per-IP budgets otherwise.
    Counters live in Redis; when Redis is down requests pass through.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.cache = get_cache()

    async def dispatch(self, request: Request, call_next):
        if not settings.rate_limit_enabled or request.url.path in EXEMPT_PATHS:
            return await call_next(request)

        # PayPal retries webhooks; signature checks protect that route
        if request.url.path.startswith(f"{settings.api_v1_str}/webhooks"):
            return await call_next(request)

        user_id = self._get_user_id(request)
        if user_id:
            user_plan = self._get_user_plan(user_id)
            limits = RATE_LIMITS.get(user_plan, RATE_LIMITS['free'])
            allowed, minute_count = self._check_limits(f"user:{user_id}", limits)
            if not allowed:
                logger.warning(f"Rate limit exceeded - user: {user_id}, plan: {user_plan}")
                return JSONResponse(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    content={
                        "detail": f"Rate limit exceeded. Your {user_plan} plan allows {limits['per_minute']} requests per minute. Please try again later.",
                        "retry_after": 60
                    },
                    headers={
                        "Retry-After": "60",
                        "X-RateLimit-Limit": str(limits['per_minute']),
                        "X-RateLimit-Remaining": "0",
                    }
                )

            response = await call_next(request)
            if minute_count is not None:
                response.headers["X-RateLimit-Limit"] = str(limits['per_minute'])
                response.headers["X-RateLimit-Remaining"] = str(max(0, limits['per_minute'] - minute_count))
            return response
        else:
            client_ip = self._get_client_ip(request)
            allowed, _ = self._check_limits(f"ip:{client_ip}", DEFAULT_IP_LIMITS)
            if not allowed:
                logger.warning(f"Rate limit exceeded - IP: {client_ip}")
                return JSONResponse(
                    status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                    content={
                        "detail": "Rate limit exceeded. Please authenticate or try again later.",
                        "retry_after": 60
                    },
                    headers={"Retry-After": "60"}
                )

        return await call_next(request)

    def _get_user_id(self, request: Request):
        auth_header = request.headers.get('Authorization')
        if not auth_header or not auth_header.startswith('Bearer '):
            return None
        try:
            decoded_token = verify_firebase_token(auth_header.split(' ', 1)[1])
            return decoded_token.get('uid')
        except Exception as e:
            # The auth dependency reports invalid tokens
            logger.debug(f"Rate limit middleware: Could not verify token: {e}")
            return None

    def _get_user_plan(self, user_id: str) -> str:
        """Plan tier for budgeting only; unknown users and outages get free budgets"""
        db = SessionLocal()
        try:
            subscription = SubscriptionStore(db).get_by_key(user_id)
            return subscription.plan_id if subscription else 'free'
        except StoreUnavailable:
            return 'free'
        finally:
            db.close()

    def _get_client_ip(self, request: Request) -> str:
        """Extract client IP address from request"""
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()

        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip

        if request.client:
            return request.client.host

        return "unknown"

    def _check_limits(self, subject: str, limits: dict):
        """
        Count this request against the subject's minute and hour windows.
        Returns (allowed, requests this minute); the count is None without Redis.
        """
        now = datetime.utcnow()
        minute_key = f"rate_limit:{subject}:minute:{now.strftime('%Y%m%d%H%M')}"
        minute_count = self.cache.incr(minute_key, ttl_seconds=60)
        if minute_count is not None and minute_count > limits['per_minute']:
            return False, minute_count

        if limits['per_hour'] > 0:
            hour_key = f"rate_limit:{subject}:hour:{now.strftime('%Y%m%d%H')}"
            hour_count = self.cache.incr(hour_key, ttl_seconds=3600)
            if hour_count is not None and hour_count > limits['per_hour']:
                return False, minute_count

        return True, minute_count
