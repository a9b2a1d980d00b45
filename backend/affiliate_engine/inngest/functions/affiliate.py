"""
Affiliate Commission Accrual Job

Consumes billing/payment.posted events and accrues affiliate commissions.

Retry policy:
- Transient store failures raise, so Inngest retries the whole event
- Replays are safe: a commission is unique per (referral, billing_month)
- Malformed payloads and integrity violations are not retried; the latter
  need manual reconciliation
"""

import logging
from typing import Any, Dict, Optional

import inngest
from inngest import TriggerEvent
from pydantic import ValidationError

from affiliate_engine.inngest.client import inngest_client
from affiliate_engine.inngest.events import PAYMENT_POSTED
from affiliate_engine.models.affiliate import PaymentPostedEvent
from affiliate_engine.services.commission_service import CommissionService, get_commission_service
from affiliate_engine.utils.errors import IntegrityViolationError

logger = logging.getLogger(__name__)


async def accrue_from_event_data(
    data: Dict[str, Any],
    service: Optional[CommissionService] = None,
) -> Dict[str, Any]:
    """
    Accrue the commission for one payment-posted payload.

    Returns a JSON-serializable summary for the step output.
    """
    try:
        event = PaymentPostedEvent(**data)
    except ValidationError as e:
        logger.error(f"Invalid {PAYMENT_POSTED} payload: {e}")
        raise inngest.NonRetriableError(f"Invalid payment event: {e}") from e

    service = service or get_commission_service()

    try:
        commission = await service.accrue(event)
    except IntegrityViolationError as e:
        logger.critical(f"Integrity violation accruing commission for org {event.organization_id}: {e}")
        raise inngest.NonRetriableError(str(e)) from e

    if commission is None:
        return {"status": "skipped", "organization_id": event.organization_id}

    return {
        "status": "accrued",
        "commission_id": commission.id,
        "affiliate_id": commission.affiliate_id,
        "commission_amount_cents": commission.commission_amount_cents,
    }


# =============================================================================
# EVENT: PAYMENT POSTED
# =============================================================================

@inngest_client.create_function(
    fn_id="affiliate-accrue-commission",
    trigger=TriggerEvent(event=PAYMENT_POSTED),
    retries=5,
)
async def accrue_commission_fn(ctx, step):
    """
    Accrue the affiliate commission for a posted payment.

    Event data: organization_id, amount_cents, billing_month (YYYY-MM),
    payment_reference (optional).
    """
    event_data = dict(ctx.event.data)
    logger.info(
        f"Processing {PAYMENT_POSTED}: org={event_data.get('organization_id')}, "
        f"month={event_data.get('billing_month')}"
    )

    result = await step.run(
        "accrue-commission",
        lambda: accrue_from_event_data(event_data),
    )

    logger.info(f"Commission accrual result: {result}")
    return result

