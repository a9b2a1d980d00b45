"""
Event names and senders for the affiliate engine.

The billing collaborator emits PAYMENT_POSTED for every posted payment; the
payload matches PaymentPostedEvent.
"""

import logging

import inngest

from affiliate_engine.inngest.client import inngest_client
from affiliate_engine.models.affiliate import PaymentPostedEvent

logger = logging.getLogger(__name__)

PAYMENT_POSTED = "billing/payment.posted"


async def send_payment_posted(event: PaymentPostedEvent) -> None:
    """Queue a posted payment for commission accrual."""
    await inngest_client.send(
        inngest.Event(name=PAYMENT_POSTED, data=event.model_dump())
    )
    logger.info(
        f"Queued {PAYMENT_POSTED}: org={event.organization_id}, "
        f"month={event.billing_month}, amount={event.amount_cents}c"
    )
