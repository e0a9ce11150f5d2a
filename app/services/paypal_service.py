import logging
from typing import Optional

import httpx

from app.core.config import settings
from app.core.exceptions import PaymentProviderError, PaymentProviderNotConfigured
from app.models.subscription import PlanTier

logger = logging.getLogger(__name__)

# Subscription states in which PayPal has taken (or will take) payment
ACTIVE_PAYPAL_STATUSES = {"ACTIVE", "APPROVED"}

# Headers PayPal signs webhook deliveries with
WEBHOOK_SIGNATURE_HEADERS = {
    "auth_algo": "paypal-auth-algo",
    "cert_url": "paypal-cert-url",
    "transmission_id": "paypal-transmission-id",
    "transmission_sig": "paypal-transmission-sig",
    "transmission_time": "paypal-transmission-time",
}


class PayPalService:
    """Thin client over the PayPal REST API used to confirm subscription callbacks"""

    def __init__(
        self,
        client_id: str = None,
        secret: str = None,
        api_base: str = None,
        webhook_id: str = None,
        plan_tiers: Optional[dict[str, PlanTier]] = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id if client_id is not None else settings.paypal_client_id
        self.secret = secret if secret is not None else settings.paypal_secret
        self.api_base = (api_base or settings.paypal_api_base).rstrip("/")
        self.webhook_id = webhook_id if webhook_id is not None else settings.paypal_webhook_id
        self.timeout = timeout or settings.paypal_timeout_seconds
        self._transport = transport
        if plan_tiers is None:
            plan_tiers = {}
            if settings.paypal_basic_plan_id:
                plan_tiers[settings.paypal_basic_plan_id] = PlanTier.BASIC
            if settings.paypal_pro_plan_id:
                plan_tiers[settings.paypal_pro_plan_id] = PlanTier.PRO
        self.plan_tiers = plan_tiers
        self.logger = logging.getLogger(__name__)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.secret)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            timeout=self.timeout,
            follow_redirects=False,
            transport=self._transport,
        )

    def resolve_plan_tier(self, paypal_plan_id: str) -> Optional[PlanTier]:
        """Map a PayPal billing plan id onto basic/pro"""
        return self.plan_tiers.get(paypal_plan_id)

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        if not self.configured:
            raise PaymentProviderNotConfigured("PayPal credentials are not configured")

        response = await client.post(
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.client_id, self.secret),
            headers={"Accept": "application/json"},
        )
        response.raise_for_status()
        token = response.json().get("access_token")
        if not token:
            raise PaymentProviderError("PayPal did not return an access token")
        return token

    async def get_subscription(self, subscription_id: str) -> dict:
        """
        Fetch a subscription from PayPal.
        Returns the raw resource: {id, plan_id, status, custom_id, ...}
        """
        self.logger.info(f"get_subscription: Entry - subscription: {subscription_id}")

        try:
            async with self._client() as client:
                token = await self._get_access_token(client)
                response = await client.get(
                    f"/v1/billing/subscriptions/{subscription_id}",
                    headers={"Authorization": f"Bearer {token}"},
                )
                response.raise_for_status()
                result = response.json()

            self.logger.info(
                f"get_subscription: Success - subscription: {subscription_id}, status: {result.get('status')}")
            return result
        except httpx.HTTPStatusError as e:
            self.logger.error(f"get_subscription: HTTP Error - {e.response.status_code}")
            raise PaymentProviderError(
                f"PayPal returned {e.response.status_code} for subscription {subscription_id}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            self.logger.error(f"get_subscription: Network Error - {e}")
            raise PaymentProviderError(f"Could not reach PayPal: {e}") from e

    async def cancel_subscription(self, subscription_id: str, reason: str = "User requested cancellation") -> None:
        """Stop future billing for a subscription; PayPal answers 204 No Content"""
        self.logger.info(f"cancel_subscription: Entry - subscription: {subscription_id}")

        try:
            async with self._client() as client:
                token = await self._get_access_token(client)
                response = await client.post(
                    f"/v1/billing/subscriptions/{subscription_id}/cancel",
                    json={"reason": reason},
                    headers={"Authorization": f"Bearer {token}"},
                )
                response.raise_for_status()

            self.logger.info(f"cancel_subscription: Success - subscription: {subscription_id}")
        except httpx.HTTPStatusError as e:
            self.logger.error(f"cancel_subscription: HTTP Error - {e.response.status_code}")
            raise PaymentProviderError(
                f"PayPal returned {e.response.status_code} cancelling subscription {subscription_id}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            self.logger.error(f"cancel_subscription: Network Error - {e}")
            raise PaymentProviderError(f"Could not reach PayPal: {e}") from e

    async def verify_webhook_signature(self, headers: dict, event: dict) -> bool:
        """Ask PayPal whether a webhook delivery is authentic"""
        self.logger.info(f"verify_webhook_signature: Entry - event: {event.get('id')}")

        if not self.webhook_id:
            raise PaymentProviderNotConfigured("PayPal webhook id is not configured")

        lowered = {key.lower(): value for key, value in headers.items()}
        payload = {
            field: lowered.get(header)
            for field, header in WEBHOOK_SIGNATURE_HEADERS.items()
        }
        if not all(payload.values()):
            self.logger.warning("verify_webhook_signature: Missing signature headers")
            return False
        payload["webhook_id"] = self.webhook_id
        payload["webhook_event"] = event

        try:
            async with self._client() as client:
                token = await self._get_access_token(client)
                response = await client.post(
                    "/v1/notifications/verify-webhook-signature",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                )
                response.raise_for_status()
                verified = response.json().get("verification_status") == "SUCCESS"

            self.logger.info(f"verify_webhook_signature: Success - verified: {verified}")
            return verified
        except httpx.HTTPStatusError as e:
            self.logger.error(f"verify_webhook_signature: HTTP Error - {e.response.status_code}")
            raise PaymentProviderError(
                f"PayPal signature verification failed with {e.response.status_code}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            self.logger.error(f"verify_webhook_signature: Network Error - {e}")
            raise PaymentProviderError(f"Could not reach PayPal: {e}") from e
