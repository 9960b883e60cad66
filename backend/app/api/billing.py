"""Billing provider webhook route"""
import logging
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.schemas.billing import WebhookAck
from app.services.billing_gateway import BillingGateway, get_billing_gateway
from app.services.subscription_service import process_billing_webhook

router = APIRouter(prefix="/billing", tags=["billing"])
logger = logging.getLogger(__name__)


@router.post("/webhook", response_model=WebhookAck)
async def billing_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: BillingGateway = Depends(get_billing_gateway)
):
    """Receive a billing provider event

    The body is read as raw bytes so the signature can be checked against
    exactly what the provider sent. Bad signatures get a 400 without any
    ledger write; duplicate, stale and unusable events get a 200 so the
    provider stops retrying; unexpected errors surface as 500 so it retries.
    """
    payload = await request.body()
    signature = request.headers.get(gateway.signature_header)
    return process_billing_webhook(payload, signature, db, gateway)
