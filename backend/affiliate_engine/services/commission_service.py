"""
Commission Service

Accrues commissions from billing "payment posted" events.

Flow for one event:
1. Load program settings (rate, type and cap are snapshotted per payment)
2. Find the converted referral that created the paying organization
3. Evaluate eligibility (one-time, recurring cap, billing-month idempotency)
4. Call accrue_affiliate_commission, which records the first payment and,
   under a lock on the affiliate row, re-checks the same rules, inserts the
   commission and increments the affiliate totals in one transaction

Errors propagate so the event source can retry the whole event. Retrying is
safe: a commission is unique per (referral, billing_month).
"""

import logging
from typing import Optional, List, Callable
from datetime import datetime

from supabase import Client

from affiliate_engine.database import get_supabase_service, first_row
from affiliate_engine.models.affiliate import (
    Commission,
    CommissionStatus,
    PaymentPostedEvent,
    utcnow,
)
from affiliate_engine.services.commission_rules import (
    compute_commission_cents,
    evaluate_accrual,
)
from affiliate_engine.services.program_settings import ProgramSettingsService
from affiliate_engine.utils.errors import translate_store_error

logger = logging.getLogger(__name__)


class CommissionService:
    """Commission accrual and ledger queries."""

    def __init__(
        self,
        supabase: Optional[Client] = None,
        settings_service: Optional[ProgramSettingsService] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.supabase = supabase or get_supabase_service()
        self.settings_service = settings_service or ProgramSettingsService(self.supabase)
        self.clock = clock

    # =========================================================================
    # ACCRUAL
    # =========================================================================

    async def accrue(self, event: PaymentPostedEvent) -> Optional[Commission]:
        """
        Process one posted payment.

        Returns:
            The new commission, or None when the payment earns nothing
            (no attributed referral, program paused, rule not met, replay)

        Raises:
            TransientStoreError: store unreachable, retry the event
            AppError: other store failures
        """
        settings = await self.settings_service.get_settings()
        if not settings.program_active:
            logger.info(f"Affiliate program inactive, skipping payment for org {event.organization_id}")
            return None

        try:
            referral = first_row(
                self.supabase.table("affiliate_referrals").select(
                    "id, affiliate_id"
                ).eq(
                    "referred_organization_id", event.organization_id
                ).eq(
                    "converted", True
                ).maybe_single().execute()
            )
            if not referral:
                logger.debug(f"No affiliate referral for org {event.organization_id}")
                return None

            prior = self.supabase.table("affiliate_commissions").select(
                "id, billing_month"
            ).eq(
                "referral_id", referral["id"]
            ).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        prior_rows = prior.data or []
        month_already_charged = any(
            row.get("billing_month") == event.billing_month for row in prior_rows
        )

        rate_bps = settings.commission_rate_bps
        amount_cents = compute_commission_cents(event.amount_cents, rate_bps)

        decision = evaluate_accrual(
            commission_type=settings.commission_type,
            recurring_months=settings.recurring_months,
            prior_commission_count=len(prior_rows),
            month_already_charged=month_already_charged,
            commission_amount_cents=amount_cents,
        )

        try:
            response = self.supabase.rpc("accrue_affiliate_commission", {
                "p_organization_id": event.organization_id,
                "p_billing_month": event.billing_month,
                "p_payment_amount_cents": event.amount_cents,
                "p_payment_at": self.clock().isoformat(),
                "p_commission_type": settings.commission_type.value,
                "p_commission_rate_bps": rate_bps,
                "p_commission_amount_cents": amount_cents,
                "p_recurring_months": settings.recurring_months,
                "p_create_commission": decision.eligible,
            }).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        outcome = response.data or {}
        if outcome.get("first_payment_recorded"):
            logger.info(f"First payment recorded for referral {referral['id']}")

        commission_row = outcome.get("commission")
        if not commission_row:
            logger.info(
                f"No commission for referral {referral['id']} month {event.billing_month}: "
                f"{decision.reason if not decision.eligible else 'rejected on re-check'}"
            )
            return None

        commission = Commission.from_row(commission_row)
        logger.info(
            f"Commission accrued: affiliate={commission.affiliate_id}, "
            f"month={commission.billing_month}, amount={commission.commission_amount_cents}c"
        )
        return commission

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_commissions(
        self,
        affiliate_id: str,
        limit: int = 50,
        offset: int = 0,
        status: Optional[CommissionStatus] = None,
    ) -> List[Commission]:
        """Commission history for an affiliate, newest first."""
        try:
            query = self.supabase.table("affiliate_commissions").select("*").eq(
                "affiliate_id", affiliate_id
            )
            if status:
                query = query.eq("status", status.value)

            response = query.order(
                "created_at", desc=True
            ).range(offset, offset + limit - 1).execute()
        except Exception as e:
            raise translate_store_error(e) from e

        return [Commission.from_row(row) for row in response.data or []]


# =============================================================================
# SINGLETON FACTORY
# =============================================================================

_commission_service: Optional[CommissionService] = None


def get_commission_service() -> CommissionService:
    """Get singleton CommissionService instance."""
    global _commission_service
    if _commission_service is None:
        _commission_service = CommissionService()
    return _commission_service
