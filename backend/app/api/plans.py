"""Subscription plan API routes"""
import logging
from typing import List, Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.security import require_auth
from app.db.session import get_db
from app.schemas.plans import PlanCreate, PlanDetailResponse, PlanResponse, PlanUpdate
from app.services.billing_gateway import BillingGateway, get_billing_gateway
from app.services.plan_service import (
    create_plan, deactivate_plan, delete_plan, get_plan_details, list_plans, update_plan
)

router = APIRouter(prefix="/api/plans", tags=["plans"])
logger = logging.getLogger(__name__)


@router.post("", response_model=PlanResponse, status_code=201)
def create_plan_route(
    body: PlanCreate,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway)
):
    """Create a plan owned by the caller"""
    return create_plan(
        user_id,
        body.name,
        body.description,
        body.price,
        body.features,
        db,
        gateway,
        currency=body.currency,
        external_price_id=body.external_price_id,
    )


@router.get("", response_model=List[PlanResponse])
def list_plans_route(creator_id: Optional[int] = Query(None), db: Session = Depends(get_db)):
    """Active plan catalogue, optionally for one creator"""
    return list_plans(db, creator_id=creator_id)


@router.get("/{plan_id}", response_model=PlanDetailResponse)
def get_plan_route(plan_id: int, db: Session = Depends(get_db)):
    details = get_plan_details(plan_id, db)
    response = PlanDetailResponse.model_validate(details["plan"])
    response.subscriber_count = details["subscriber_count"]
    response.monthly_revenue = details["monthly_revenue"]
    return response


@router.patch("/{plan_id}", response_model=PlanResponse)
def update_plan_route(
    plan_id: int,
    body: PlanUpdate,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    return update_plan(
        plan_id,
        user_id,
        db,
        name=body.name,
        description=body.description,
        features=body.features,
        is_active=body.is_active,
    )


@router.post("/{plan_id}/deactivate", response_model=PlanResponse)
def deactivate_plan_route(plan_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    return deactivate_plan(plan_id, user_id, db)


@router.delete("/{plan_id}", status_code=204)
def delete_plan_route(plan_id: int, user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Hard delete; only for plans no subscription has referenced"""
    delete_plan(plan_id, user_id, db)
