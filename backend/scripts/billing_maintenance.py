#!/usr/bin/env python3
"""
Maintenance tasks for the plan catalogue and subscriptions.

Usage:
    # Create provider prices for active plans that have none
    python billing_maintenance.py --sync-prices

    # List active subscriptions whose period ends within N days
    python billing_maintenance.py --expiring 7

    # Show the ledger history for one provider subscription
    python billing_maintenance.py --ledger sub_123
"""

import argparse
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.core.exceptions import ExternalGatewayError
from app.core.logging import setup_logging
from app.db.session import SessionLocal
from app.services.billing_gateway import get_billing_gateway
from app.services.plan_service import sync_missing_prices
from app.services.subscription_store import SubscriptionStore
from app.services.webhook_ledger import WebhookLedger


def sync_prices() -> bool:
    """Create provider prices for plans missing external_price_id"""
    db = SessionLocal()
    try:
        synced = sync_missing_prices(db, get_billing_gateway())
        if not synced:
            print("✅ All active plans already have a provider price")
        for plan in synced:
            print(f"✅ Plan {plan.id} ({plan.name}) → {plan.external_price_id}")
        return True
    except ExternalGatewayError as e:
        print(f"❌ Provider error: {e.message} (retryable: {e.retryable})")
        db.rollback()
        return False
    finally:
        db.close()


def list_expiring(days: int) -> bool:
    db = SessionLocal()
    try:
        expiring = SubscriptionStore(db).find_expiring(days)
        print(f"{len(expiring)} active subscription(s) ending within {days} day(s)")
        for sub in expiring:
            flag = " (cancels at period end)" if sub.cancel_at_period_end else ""
            print(f"   #{sub.id} user={sub.subscriber_id} plan={sub.plan_id} ends={sub.current_period_end}{flag}")
        return True
    finally:
        db.close()


def show_ledger(external_subscription_id: str) -> bool:
    db = SessionLocal()
    try:
        entries = WebhookLedger(db).list_for_subscription(external_subscription_id)
        if not entries:
            print(f"❌ No ledger entries for {external_subscription_id}")
            return False
        for entry in entries:
            print(
                f"   {entry.occurred_at} {entry.event_type:<24} {entry.external_event_id} "
                f"→ {entry.processing_outcome or 'pending'}"
                + (f" ({entry.error_message})" if entry.error_message else "")
            )
        return True
    finally:
        db.close()


def main():
    parser = argparse.ArgumentParser(description="Plan and subscription maintenance")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--sync-prices", action="store_true", help="Create missing provider prices")
    group.add_argument("--expiring", type=int, metavar="DAYS", help="List subscriptions ending within DAYS")
    group.add_argument("--ledger", metavar="EXTERNAL_SUBSCRIPTION_ID", help="Show webhook history")
    args = parser.parse_args()

    setup_logging()

    if args.sync_prices:
        ok = sync_prices()
    elif args.expiring is not None:
        ok = list_expiring(args.expiring)
    else:
        ok = show_ledger(args.ledger)

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
