import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from app.core.cache import get_cached_status, set_cached_status
from app.core.exceptions import (PaymentProviderError,
                                 PaymentProviderNotConfigured,
                                 StoreUnavailable)
from app.core.middleware import get_current_user
from app.api.v1.dependencies import get_billing_service, get_subscription_manager
from app.services.billing_service import BillingService
from app.services.subscription_service import (PlanConfiguration,
                                               SubscriptionManager,
                                               describe_subscription,
                                               format_price)

router = APIRouter()
logger = logging.getLogger(__name__)

STORE_UNAVAILABLE_DETAIL = "Subscription status is temporarily unavailable. Please try again shortly."


class ConfirmPayPalRequest(BaseModel):
    subscription_id: str  # PayPal subscription id returned by the checkout


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = None


@router.get("/plans")
async def get_plans():
    """
    Get all available subscription plans.
    Public endpoint - no authentication required.
    """
    plans = []
    for plan in PlanConfiguration.get_all_plans():
        plan_dict = plan.model_dump(mode="json")
        plan_dict['price_display'] = format_price(plan.price_monthly, plan.currency)
        plans.append(plan_dict)
    return {"plans": plans}


@router.get("/current")
async def get_current_subscription(
    current_user: dict = Depends(get_current_user),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Current user's subscription for display (plan badge, usage, trial).
    During a store outage the last cached snapshot is returned with
    status_known = false instead of failing the page.
    """
    user_id = current_user['uid']
    logger.info(f"get_current_subscription: Entry - user: {user_id}")

    try:
        record = manager.get_or_create_subscription(user_id)
        view = describe_subscription(record, datetime.utcnow())
        set_cached_status(user_id, view)
        logger.info(f"get_current_subscription: Success - user: {user_id}, plan: {view['plan_id']}")
        return view
    except StoreUnavailable as e:
        logger.warning(f"get_current_subscription: Store unavailable, serving advisory snapshot - {e}")
        cached = get_cached_status(user_id)
        if cached:
            return {**cached, 'status_known': False}
        return {'user_id': user_id, 'status': 'unknown', 'status_known': False}
    except Exception as e:
        logger.error(f"get_current_subscription: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.get("/usage")
async def get_assignment_usage(
    current_user: dict = Depends(get_current_user),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    user_id = current_user['uid']
    try:
        return manager.get_assignment_usage(user_id)
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=STORE_UNAVAILABLE_DETAIL
        )


@router.get("/features/{feature_name}")
async def check_feature_access(
    feature_name: str,
    current_user: dict = Depends(get_current_user),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Feature gate for the UI. `access` is one of granted/denied/unknown;
    only `granted` unlocks the feature.
    """
    access = manager.check_feature_access(current_user['uid'], feature_name)
    return {
        "feature": feature_name,
        "access": access.value,
        "allowed": access.allowed,
    }


@router.get("/history")
async def get_subscription_history(
    current_user: dict = Depends(get_current_user),
    manager: SubscriptionManager = Depends(get_subscription_manager)
):
    """
    Get subscription history for current user.
    Requires authentication.
    """
    user_id = current_user['uid']
    logger.info(f"get_subscription_history: Entry - user: {user_id}")

    try:
        history = manager.get_subscription_history(user_id)
        logger.info(f"get_subscription_history: Success - user: {user_id}, count: {len(history)}")
        return {"history": history}
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=STORE_UNAVAILABLE_DETAIL
        )
    except Exception as e:
        logger.error(f"get_subscription_history: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/paypal/confirm")
async def confirm_paypal_subscription(
    request: ConfirmPayPalRequest,
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service)
):
    """
    Activate a paid plan after the user approved a PayPal subscription.
    The subscription is verified with PayPal before any plan change.
    """
    user_id = current_user['uid']
    logger.info(f"confirm_paypal_subscription: Entry - user: {user_id}, subscription: {request.subscription_id}")

    try:
        record = await billing_service.confirm_subscription(user_id, request.subscription_id)
        logger.info(f"confirm_paypal_subscription: Success - user: {user_id}, plan: {record.plan_id.value}")
        return {
            "plan_id": record.plan_id.value,
            "status": record.status.value,
            "provider_subscription_id": record.provider_subscription_id,
            "upgraded_at": record.upgraded_at.isoformat() if record.upgraded_at else None,
            "message": "Subscription activated successfully"
        }
    except ValueError as e:
        logger.error(f"confirm_paypal_subscription: ValueError - {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e)
        )
    except PaymentProviderNotConfigured as e:
        logger.error(f"confirm_paypal_subscription: Not configured - {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments are not available right now."
        )
    except PaymentProviderError as e:
        logger.error(f"confirm_paypal_subscription: Provider error - {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"PayPal error: {e}"
        )
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=STORE_UNAVAILABLE_DETAIL
        )
    except Exception as e:
        logger.error(f"confirm_paypal_subscription: Failure - {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(e)
        )


@router.post("/cancel")
async def cancel_subscription(
    request: Optional[CancelSubscriptionRequest] = None,
    current_user: dict = Depends(get_current_user),
    billing_service: BillingService = Depends(get_billing_service)
):
    """
    Cancel the current PayPal subscription.
    The paid plan stays until PayPal reports the subscription expired.
    """
    user_id = current_user['uid']
    logger.info(f"cancel_subscription: Entry - user: {user_id}")

    try:
        record = await billing_service.cancel_subscription(user_id, request.reason if request else None)
        logger.info(f"cancel_subscription: Success - user: {user_id}, plan: {record.plan_id.value}")
        return {
            "plan_id": record.plan_id.value,
            "status": record.status.value,
            "provider_subscription_id": record.provider_subscription_id,
            "message": "Subscription cancelled. Access will continue until the billing period ends."
        }
    except ValueError as e:
        logger.error(f"cancel_subscription: ValueError - {e}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e)
        )
    except PaymentProviderNotConfigured as e:
        logger.error(f"cancel_subscription: Not configured - {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payments are not available right now."
        )
    except PaymentProviderError as e:
        logger.error(f"cancel_subscription: Provider error - {e}")
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"PayPal error: {e}"
        )
    except StoreUnavailable:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=STORE_UNAVAILABLE_DETAIL
        )
