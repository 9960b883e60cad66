"""Revenue and churn API routes"""
import logging
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.core.security import require_admin, require_auth
from app.db.session import get_db
from app.schemas.analytics import ChurnResponse, RevenueResponse
from app.services.analytics_service import (
    average_revenue_per_user, churn_rate, monthly_recurring_revenue, subscription_stats
)

router = APIRouter(prefix="/api/analytics", tags=["analytics"])
logger = logging.getLogger(__name__)


@router.get("/revenue", response_model=RevenueResponse)
def revenue_route(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """MRR, ARPU and subscription counts for the caller's plans"""
    return {
        "creator_id": user_id,
        "monthly_recurring_revenue": monthly_recurring_revenue(user_id, db),
        "average_revenue_per_user": average_revenue_per_user(user_id, db),
        "stats": subscription_stats(db, creator_id=user_id),
    }


@router.get("/churn", response_model=ChurnResponse)
def churn_route(
    window_days: int = Query(30, ge=1, le=365),
    user_id: int = Depends(require_admin),
    db: Session = Depends(get_db)
):
    """Platform-wide churn over a trailing window"""
    return {"window_days": window_days, "churn_rate": churn_rate(window_days, db)}
