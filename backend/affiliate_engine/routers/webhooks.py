"""
Webhooks Router - Billing payment events

Two ways for posted payments to reach commission accrual:
- POST /webhooks/billing/payment-posted: the billing collaborator posts a
  PaymentPostedEvent; the commission is accrued before responding
- POST /webhooks/stripe: Stripe invoice.paid events are converted to
  billing/payment.posted and queued on Inngest

Both paths are replay-safe because a commission is unique per
(referral, billing_month). Failures return 5xx so the sender retries.
"""

import os
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from fastapi import APIRouter, Request, HTTPException, Header
import stripe

from affiliate_engine.inngest.events import send_payment_posted
from affiliate_engine.models.affiliate import PaymentPostedEvent
from affiliate_engine.services.commission_service import get_commission_service
from affiliate_engine.utils.errors import handle_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
BILLING_WEBHOOK_SECRET = os.getenv("BILLING_WEBHOOK_SECRET")


# =============================================================================
# BILLING COLLABORATOR
# =============================================================================

@router.post("/billing/payment-posted")
async def payment_posted_webhook(
    event: PaymentPostedEvent,
    billing_secret: Optional[str] = Header(None, alias="X-Billing-Secret")
):
    """
    Accrue the affiliate commission for one posted payment.

    Responses:
    - 200 {"status": "accrued" | "skipped"}
    - 401 bad shared secret
    - 503 store unavailable, retry the event
    """
    if not BILLING_WEBHOOK_SECRET:
        logger.warning("BILLING_WEBHOOK_SECRET not configured, skipping secret verification")
    elif not billing_secret or not hmac.compare_digest(billing_secret, BILLING_WEBHOOK_SECRET):
        logger.warning(f"Rejected payment-posted webhook for org {event.organization_id}: bad secret")
        raise HTTPException(status_code=401, detail="Invalid webhook secret")

    logger.info(
        f"Received payment-posted: org={event.organization_id}, month={event.billing_month}, "
        f"amount={event.amount_cents}c, ref={event.payment_reference}"
    )

    try:
        commission = await get_commission_service().accrue(event)
    except Exception as e:
        raise handle_exception(
            e,
            "commission_accrual",
            organization_id=event.organization_id,
            resource_id=event.payment_reference,
        )

    if commission is None:
        return {"status": "skipped"}

    return {
        "status": "accrued",
        "commission_id": commission.id,
        "commission_amount_cents": commission.commission_amount_cents,
    }


# =============================================================================
# STRIPE
# =============================================================================

@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature")
):
    """
    Handle Stripe webhook events.

    Events handled:
    - invoice.paid: queued as billing/payment.posted
    """
    payload = await request.body()

    # Verify webhook signature
    if not STRIPE_WEBHOOK_SECRET:
        logger.warning("STRIPE_WEBHOOK_SECRET not configured, skipping signature verification")
    else:
        try:
            stripe.Webhook.construct_event(payload, stripe_signature, STRIPE_WEBHOOK_SECRET)
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise HTTPException(status_code=400, detail="Invalid signature")
        except Exception as e:
            logger.error(f"Error verifying webhook: {e}")
            raise HTTPException(status_code=400, detail="Invalid payload")

    try:
        event = json.loads(payload)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_id = event.get("id")
    event_type = event.get("type")
    logger.info(f"Received Stripe webhook: {event_type} ({event_id})")

    if event_type != "invoice.paid":
        logger.info(f"Unhandled event type: {event_type}")
        return {"status": "ignored"}

    payment = payment_event_from_invoice(event["data"]["object"])
    if payment is None:
        return {"status": "skipped"}

    try:
        await send_payment_posted(payment)
    except Exception as e:
        logger.error(f"Error queueing payment event for {event_id}: {e}")
        # Stripe retries on 5xx
        raise HTTPException(status_code=500, detail="Processing error")

    return {"status": "queued"}


def payment_event_from_invoice(invoice: Dict[str, Any]) -> Optional[PaymentPostedEvent]:
    """
    Map a paid Stripe invoice to a PaymentPostedEvent.

    The organization comes from invoice or subscription metadata
    (organization_id). The billing month is the UTC month the first line
    item's service period starts in, falling back to the invoice creation
    time. The invoice-level period_start looks back one period on renewals
    and is not used. Zero-amount invoices (trials) and invoices without an
    organization are skipped.
    """
    amount_paid = invoice.get("amount_paid") or 0
    if amount_paid <= 0:
        return None

    organization_id = _organization_from_invoice(invoice)
    if not organization_id:
        logger.info(f"Invoice {invoice.get('id')} has no organization_id metadata, skipping")
        return None

    period_start = _line_period_start(invoice) or invoice.get("created")
    if not period_start:
        logger.warning(f"Invoice {invoice.get('id')} has no period, skipping")
        return None

    billing_month = datetime.fromtimestamp(period_start, tz=timezone.utc).strftime("%Y-%m")

    return PaymentPostedEvent(
        organization_id=organization_id,
        amount_cents=amount_paid,
        billing_month=billing_month,
        payment_reference=invoice.get("id"),
    )


def _line_period_start(invoice: Dict[str, Any]) -> Optional[int]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    return (lines[0].get("period") or {}).get("start")


def _organization_from_invoice(invoice: Dict[str, Any]) -> Optional[str]:
    candidates = [
        invoice.get("metadata"),
        (invoice.get("subscription_details") or {}).get("metadata"),
        ((invoice.get("parent") or {}).get("subscription_details") or {}).get("metadata"),
    ]
    for metadata in candidates:
        if metadata and metadata.get("organization_id"):
            return metadata["organization_id"]
    return None
