"""
Commission rules.

Pure functions deciding whether a payment earns a commission and how much.
The server-side accrual procedure re-checks the same guards under a row lock;
these functions give the service a typed decision and a single rounding rule.

Rounding: commission = payment_cents * rate_bps / 10000, rounded half-up to
the nearest cent (12.5 cents -> 13 cents).
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from affiliate_engine.models.affiliate import BASIS_POINTS_DENOMINATOR, CommissionType


# Reasons a payment does not produce a commission
REASON_ELIGIBLE = "eligible"
REASON_ONE_TIME_ALREADY_EARNED = "one_time_already_earned"
REASON_RECURRING_CAP_REACHED = "recurring_cap_reached"
REASON_MONTH_ALREADY_CHARGED = "billing_month_already_charged"
REASON_ZERO_AMOUNT = "zero_commission"


@dataclass(frozen=True)
class AccrualDecision:
    """Outcome of evaluating one payment against the program rules."""
    eligible: bool
    reason: str


def compute_commission_cents(payment_amount_cents: int, rate_bps: int) -> int:
    """
    Commission for a payment at a basis-point rate, rounded half-up.

    >>> compute_commission_cents(10000, 2000)
    2000
    >>> compute_commission_cents(125, 1000)
    13
    """
    if payment_amount_cents < 0:
        raise ValueError("payment_amount_cents must be >= 0")
    if not 0 <= rate_bps <= BASIS_POINTS_DENOMINATOR:
        raise ValueError("rate_bps must be between 0 and 10000")

    raw = Decimal(payment_amount_cents) * Decimal(rate_bps) / Decimal(BASIS_POINTS_DENOMINATOR)
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def evaluate_accrual(
    commission_type: CommissionType,
    recurring_months: Optional[int],
    prior_commission_count: int,
    month_already_charged: bool,
    commission_amount_cents: int = 1,
) -> AccrualDecision:
    """
    Decide whether a payment on a converted referral earns a commission.

    Args:
        commission_type: one_time or recurring (program setting)
        recurring_months: cap on recurring commissions, None = unlimited
        prior_commission_count: commissions already recorded for the referral
        month_already_charged: a commission exists for this billing month
        commission_amount_cents: computed amount; zero never creates a row
    """
    if month_already_charged:
        return AccrualDecision(False, REASON_MONTH_ALREADY_CHARGED)

    if commission_type == CommissionType.ONE_TIME:
        if prior_commission_count >= 1:
            return AccrualDecision(False, REASON_ONE_TIME_ALREADY_EARNED)
    elif recurring_months is not None and prior_commission_count >= recurring_months:
        return AccrualDecision(False, REASON_RECURRING_CAP_REACHED)

    if commission_amount_cents <= 0:
        return AccrualDecision(False, REASON_ZERO_AMOUNT)

    return AccrualDecision(True, REASON_ELIGIBLE)
