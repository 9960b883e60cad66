"""Subscriptions API routes"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.security import require_auth
from app.db.session import get_db
from app.models.subscription import SubscriptionStatus
from app.schemas.subscriptions import (
    AccessLevelResponse, CancelRequest, CheckoutResponse, EntitlementResponse,
    PortalResponse, SubscriptionCreate, SubscriptionResponse
)
from app.services.access_control import access_level, has_entitlement
from app.services.billing_gateway import BillingGateway, get_billing_gateway
from app.services.subscription_service import (
    cancel_subscription, create_subscription, get_billing_portal_url,
    get_subscription, list_subscriptions, reactivate_subscription
)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.post("", response_model=CheckoutResponse, status_code=201)
def create_subscription_route(
    body: SubscriptionCreate,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway)
):
    """Start checkout for a plan"""
    return create_subscription(
        user_id,
        body.plan_id,
        db,
        gateway,
        payment_method_ref=body.payment_method_ref,
        trial_days=body.trial_days,
        coupon_code=body.coupon_code,
    )


@router.get("", response_model=List[SubscriptionResponse])
def list_subscriptions_route(
    status: Optional[SubscriptionStatus] = None,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """List the caller's subscriptions, newest first (``?status=active`` for the active ones)"""
    return list_subscriptions(user_id, db, status=status)


@router.get("/portal", response_model=PortalResponse)
def billing_portal_route(
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway)
):
    """Get the self-service billing portal URL"""
    return {"url": get_billing_portal_url(user_id, db, gateway)}


@router.get("/access", response_model=AccessLevelResponse)
def access_level_route(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return {"access_level": access_level(user_id, db).value}


@router.get("/access/{plan_id}", response_model=EntitlementResponse)
def entitlement_route(plan_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return {"plan_id": plan_id, "entitled": has_entitlement(user_id, plan_id, db)}


@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription_route(subscription_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return get_subscription(subscription_id, user_id, db)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription_route(
    subscription_id: int,
    body: CancelRequest = CancelRequest(),
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway)
):
    """Cancel at period end (default) or immediately"""
    return cancel_subscription(subscription_id, user_id, db, gateway, immediately=body.immediately)


@router.post("/{subscription_id}/reactivate", response_model=SubscriptionResponse)
def reactivate_subscription_route(
    subscription_id: int,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway)
):
    """Undo a scheduled cancellation"""
    return reactivate_subscription(subscription_id, user_id, db, gateway)
