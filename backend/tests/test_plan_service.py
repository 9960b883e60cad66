"""
Tests for the creator plan catalogue.
Uses in-memory SQLite and the fake billing gateway.
"""
import pytest

from app.core.exceptions import ConflictError, ExternalGatewayError, NotFoundError, UnauthorizedError, ValidationError
from app.models.plan import Plan
from app.models.subscription import SubscriptionStatus
from app.services.plan_service import (
    create_plan, deactivate_plan, delete_plan, get_plan_details, list_plans, sync_missing_prices, update_plan
)
from app.services.subscription_store import SubscriptionStore


@pytest.mark.high
class TestCreatePlan:
    """Plan creation"""

    def test_creates_provider_price(self, db_session, gateway, creator):
        """A plan without a price id gets one from the provider"""
        plan = create_plan(creator.id, " Gold ", "All articles", 900, ["Everything"], db_session, gateway, currency="eur")

        assert plan.id is not None
        assert plan.name == "Gold"
        assert plan.currency == "EUR"
        assert plan.external_price_id == "price_fake_1"
        assert plan.is_active is True
        assert gateway.calls_for("create_price") == [
            {"name": "Gold", "description": "All articles", "price": 900, "currency": "EUR"}
        ]

    def test_existing_price_id_skips_provider(self, db_session, gateway, creator):
        plan = create_plan(creator.id, "Gold", "All articles", 900, ["Everything"], db_session, gateway,
                           external_price_id="price_existing")

        assert plan.external_price_id == "price_existing"
        assert gateway.calls == []

    @pytest.mark.parametrize("kwargs", [
        {"name": ""},
        {"name": "x" * 101},
        {"description": "   "},
        {"price": 0},
        {"price": -100},
        {"currency": "XYZ"},
        {"features": []},
        {"features": [""]},
    ])
    def test_rejects_invalid_fields(self, db_session, gateway, creator, kwargs):
        """Invalid fields are rejected before the provider is called"""
        fields = {"name": "Gold", "description": "All articles", "price": 900, "features": ["Everything"]}
        currency = kwargs.pop("currency", "USD")
        fields.update(kwargs)

        with pytest.raises(ValidationError):
            create_plan(creator.id, fields["name"], fields["description"], fields["price"], fields["features"],
                        db_session, gateway, currency=currency)
        assert gateway.calls == []

    def test_unknown_creator(self, db_session, gateway):
        with pytest.raises(NotFoundError):
            create_plan(999, "Gold", "All articles", 900, ["Everything"], db_session, gateway)

    def test_provider_failure_creates_nothing(self, db_session, gateway, creator):
        gateway.failures = [ValueError("invalid currency")]

        with pytest.raises(ExternalGatewayError):
            create_plan(creator.id, "Gold", "All articles", 900, ["Everything"], db_session, gateway)
        assert db_session.query(Plan).count() == 0


@pytest.mark.high
class TestManagePlan:
    """Update, deactivate and delete"""

    def test_owner_updates_descriptive_fields(self, db_session, plan, creator):
        updated = update_plan(plan.id, creator.id, db_session, name="Premium+", features=["All", "Archive"])

        assert updated.name == "Premium+"
        assert updated.features == ["All", "Archive"]
        assert updated.price == 1500

    def test_non_owner_cannot_update(self, db_session, plan, other_user):
        with pytest.raises(UnauthorizedError):
            update_plan(plan.id, other_user.id, db_session, name="Hijacked")

    def test_admin_can_update(self, db_session, plan, admin_user):
        assert update_plan(plan.id, admin_user.id, db_session, description="Edited").description == "Edited"

    def test_deactivate_keeps_subscriptions(self, db_session, plan, creator, subscriber, make_subscription):
        """Withdrawn plans stop selling; existing subscriptions are untouched"""
        subscription = make_subscription(subscriber, plan, SubscriptionStatus.ACTIVE)

        deactivate_plan(plan.id, creator.id, db_session)

        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.ACTIVE.value
        assert list_plans(db_session) == []
        assert [p.id for p in list_plans(db_session, include_inactive=True)] == [plan.id]

    def test_delete_unused_plan(self, db_session, plan, creator):
        delete_plan(plan.id, creator.id, db_session)
        assert db_session.query(Plan).count() == 0

    def test_delete_referenced_plan_conflicts(self, db_session, plan, creator, subscriber, make_subscription):
        """Subscription history must keep its plan"""
        make_subscription(subscriber, plan, SubscriptionStatus.CANCELED)

        with pytest.raises(ConflictError):
            delete_plan(plan.id, creator.id, db_session)


@pytest.mark.medium
class TestPlanQueries:
    """Listing, details and price sync"""

    def test_list_sorted_by_price_and_filtered(self, db_session, gateway, creator, other_user):
        cheap = create_plan(creator.id, "Basic", "Some", 300, ["Some"], db_session, gateway)
        pricey = create_plan(creator.id, "Pro", "All", 3000, ["All"], db_session, gateway)
        create_plan(other_user.id, "Theirs", "Other", 100, ["Other"], db_session, gateway)

        assert [p.id for p in list_plans(db_session, creator_id=creator.id)] == [cheap.id, pricey.id]
        assert len(list_plans(db_session)) == 3

    def test_details_count_active_only(self, db_session, plan, subscriber, other_user, make_subscription):
        make_subscription(subscriber, plan, SubscriptionStatus.ACTIVE)
        make_subscription(other_user, plan, SubscriptionStatus.PAST_DUE)

        details = get_plan_details(plan.id, db_session)

        assert details["plan"].id == plan.id
        assert details["subscriber_count"] == 1
        assert details["monthly_revenue"] == 1500

    def test_sync_missing_prices(self, db_session, gateway, plan):
        plan.external_price_id = None
        db_session.commit()

        synced = sync_missing_prices(db_session, gateway)

        assert [p.id for p in synced] == [plan.id]
        db_session.refresh(plan)
        assert plan.external_price_id == "price_fake_1"

    def test_sync_skips_inactive_plans(self, db_session, gateway, plan):
        plan.external_price_id = None
        plan.is_active = False
        db_session.commit()

        assert sync_missing_prices(db_session, gateway) == []
        assert gateway.calls_for("create_price") == []


@pytest.mark.medium
class TestPlanStoreWrites:
    """Plan rows change only through the store"""

    def test_price_fields_not_editable(self, db_session, plan):
        with pytest.raises(ValidationError):
            SubscriptionStore(db_session).update_plan(plan, {"price": 1})

        db_session.rollback()
        db_session.refresh(plan)
        assert plan.price == 1500

    def test_price_binding_happens_once(self, db_session, plan):
        """A plan that already sells through a provider price keeps it"""
        with pytest.raises(ConflictError):
            SubscriptionStore(db_session).set_plan_price(plan, "price_other")

        db_session.rollback()
        db_session.refresh(plan)
        assert plan.external_price_id == "price_premium"
