"""Plan service - creator-owned plan catalogue"""
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import UnauthorizedError, ValidationError
from app.models.plan import Plan
from app.services.analytics_service import plan_monthly_revenue, plan_subscriber_count
from app.services.billing_gateway import BillingGateway
from app.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500
MAX_FEATURES = 20
MAX_FEATURE_LENGTH = 200


def validate_plan_fields(
    name: Optional[str] = None,
    description: Optional[str] = None,
    price: Optional[int] = None,
    currency: Optional[str] = None,
    features: Optional[List[str]] = None
) -> None:
    """Validate whichever plan fields are given

    Raises:
        ValidationError: First offending field
    """
    if name is not None and not 1 <= len(name.strip()) <= MAX_NAME_LENGTH:
        raise ValidationError(f"Plan name must be 1-{MAX_NAME_LENGTH} characters")
    if description is not None and not 1 <= len(description.strip()) <= MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Plan description must be 1-{MAX_DESCRIPTION_LENGTH} characters")
    if price is not None and not 0 < price <= settings.MAX_PLAN_PRICE:
        raise ValidationError(f"Plan price must be between 1 and {settings.MAX_PLAN_PRICE} minor units")
    if currency is not None and currency.upper() not in settings.SUPPORTED_CURRENCIES:
        raise ValidationError(f"Currency must be one of {', '.join(settings.SUPPORTED_CURRENCIES)}")
    if features is not None:
        if not 1 <= len(features) <= MAX_FEATURES:
            raise ValidationError(f"A plan needs 1-{MAX_FEATURES} features")
        for feature in features:
            if not 1 <= len(feature.strip()) <= MAX_FEATURE_LENGTH:
                raise ValidationError(f"Each feature must be 1-{MAX_FEATURE_LENGTH} characters")


def _owned_plan(plan_id: int, requester_id: int, store: SubscriptionStore) -> Plan:
    plan = store.get_plan(plan_id)
    if plan.creator_id != requester_id and not store.get_user(requester_id).is_admin:
        raise UnauthorizedError(f"User {requester_id} does not own plan {plan_id}")
    return plan


def create_plan(
    creator_id: int,
    name: str,
    description: str,
    price: int,
    features: List[str],
    db: Session,
    gateway: BillingGateway,
    currency: str = "USD",
    external_price_id: Optional[str] = None
) -> Plan:
    """Create a plan, registering a monthly price with the provider when none is given

    Raises:
        ValidationError: Invalid field
        NotFoundError: Creator missing
        ExternalGatewayError: Provider price creation failed
    """
    validate_plan_fields(name, description, price, currency, features)
    store = SubscriptionStore(db)
    store.get_user(creator_id)

    currency = currency.upper()
    if not external_price_id:
        external_price_id = gateway.create_price(name.strip(), description.strip(), price, currency)

    plan = store.add_plan(Plan(
        creator_id=creator_id,
        name=name.strip(),
        description=description.strip(),
        price=price,
        currency=currency,
        features=[f.strip() for f in features],
        is_active=True,
        external_price_id=external_price_id,
    ))
    db.commit()
    db.refresh(plan)
    logger.info(f"Created plan {plan.id} for creator {creator_id} ({price} {currency}, price {external_price_id})")
    return plan


def update_plan(
    plan_id: int,
    requester_id: int,
    db: Session,
    name: Optional[str] = None,
    description: Optional[str] = None,
    features: Optional[List[str]] = None,
    is_active: Optional[bool] = None
) -> Plan:
    """Update descriptive fields; price and currency are fixed once the provider price exists"""
    store = SubscriptionStore(db)
    plan = _owned_plan(plan_id, requester_id, store)
    validate_plan_fields(name=name, description=description, features=features)

    changes = {}
    if name is not None:
        changes["name"] = name.strip()
    if description is not None:
        changes["description"] = description.strip()
    if features is not None:
        changes["features"] = [f.strip() for f in features]
    if is_active is not None:
        changes["is_active"] = is_active

    store.update_plan(plan, changes)
    db.commit()
    db.refresh(plan)
    return plan


def deactivate_plan(plan_id: int, requester_id: int, db: Session) -> Plan:
    """Withdraw a plan from sale; existing subscriptions keep running"""
    store = SubscriptionStore(db)
    plan = _owned_plan(plan_id, requester_id, store)
    store.update_plan(plan, {"is_active": False})
    db.commit()
    db.refresh(plan)
    logger.info(f"Deactivated plan {plan_id}")
    return plan


def delete_plan(plan_id: int, requester_id: int, db: Session) -> None:
    """Hard delete a plan that no subscription has referenced

    Raises:
        ConflictError: Plan has subscriptions (deactivate it instead)
    """
    store = SubscriptionStore(db)
    plan = _owned_plan(plan_id, requester_id, store)
    store.delete_plan(plan)
    db.commit()
    logger.info(f"Deleted plan {plan_id}")


def list_plans(db: Session, creator_id: Optional[int] = None, include_inactive: bool = False) -> List[Plan]:
    return SubscriptionStore(db).list_plans(creator_id=creator_id, active_only=not include_inactive)


def get_plan_details(plan_id: int, db: Session) -> Dict:
    plan = SubscriptionStore(db).get_plan(plan_id)
    return {
        "plan": plan,
        "subscriber_count": plan_subscriber_count(plan_id, db),
        "monthly_revenue": plan_monthly_revenue(plan_id, db),
    }


def sync_missing_prices(db: Session, gateway: BillingGateway) -> List[Plan]:
    """Create provider prices for active plans that lack one"""
    store = SubscriptionStore(db)
    synced = []
    for plan in store.plans_missing_price():
        external_price_id = gateway.create_price(plan.name, plan.description, plan.price, plan.currency)
        store.set_plan_price(plan, external_price_id)
        db.commit()
        synced.append(plan)
        logger.info(f"Plan {plan.id} now sells through price {plan.external_price_id}")
    return synced
