import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from app.api.v1.dependencies import get_billing_service
from app.core.exceptions import (PaymentProviderError,
                                 PaymentProviderNotConfigured,
                                 StoreUnavailable)
from app.services.billing_service import BillingService, WebhookRejected

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("/paypal")
async def handle_paypal_webhook(
    request: Request,
    billing_service: BillingService = Depends(get_billing_service)
):
    """
    PayPal subscription webhook.

    Deliveries may repeat and arrive out of order; every transition applied
    here is idempotent. Non-2xx answers make PayPal retry, so only outages
    return 5xx.
    """
    try:
        event = json.loads(await request.body())
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event payload")

    logger.info(f"handle_paypal_webhook: Entry - event: {event.get('id')}, type: {event.get('event_type')}")

    try:
        result = await billing_service.handle_webhook(dict(request.headers), event)
        logger.info(f"handle_paypal_webhook: Success - event: {event.get('id')}, result: {result['status']}")
        return result
    except WebhookRejected as e:
        logger.warning(f"handle_paypal_webhook: Rejected - {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")
    except ValueError as e:
        logger.error(f"handle_paypal_webhook: ValueError - {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PaymentProviderNotConfigured as e:
        logger.error(f"handle_paypal_webhook: Not configured - {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Payment provider not configured")
    except PaymentProviderError as e:
        logger.error(f"handle_paypal_webhook: Provider error - {e}")
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    except StoreUnavailable as e:
        logger.error(f"handle_paypal_webhook: Store unavailable - {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Account store unavailable")
